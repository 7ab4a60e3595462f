# =============================================================================
# Catalog Schemas — Argument & Result Models for Data Functions
# =============================================================================
#
# Every data function declares:
#   - an argument model: validates resolver output (rule-based or LLM) and
#     doubles as the JSON schema shown to the LLM resolver
#   - a result model: the payload shape placed in FunctionResult.payload
#
# Argument models forbid unknown fields so a hallucinated parameter is
# rejected instead of silently ignored.
# =============================================================================

from __future__ import annotations

from datetime import date
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from finquery.services.timeframes import DEFAULT_TIMEFRAME

TIMEFRAME_DESCRIPTION = (
    "Natural language time period, e.g. 'last month', 'this year', "
    "'last 3 months', 'july', or 'YYYY-MM-DD to YYYY-MM-DD'"
)


class _Arguments(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------


class CategorySpendingArgs(_Arguments):
    category: str = Field(
        ..., min_length=1,
        description="Spending category, e.g. 'Food & Dining', 'Groceries'",
    )
    timeframe: str = Field(DEFAULT_TIMEFRAME, description=TIMEFRAME_DESCRIPTION)


class TimeSpendingArgs(_Arguments):
    timeframe: str = Field(DEFAULT_TIMEFRAME, description=TIMEFRAME_DESCRIPTION)


class VendorSpendingArgs(_Arguments):
    vendor: str = Field(
        ..., min_length=1,
        description="Merchant name, e.g. 'Starbucks', 'Amazon'",
    )
    timeframe: str = Field(DEFAULT_TIMEFRAME, description=TIMEFRAME_DESCRIPTION)


class CustomPeriodArgs(_Arguments):
    start_date: date = Field(..., description="Start date (YYYY-MM-DD)")
    end_date: date = Field(..., description="End date (YYYY-MM-DD)")

    @model_validator(mode="after")
    def _ordered(self) -> CustomPeriodArgs:
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class ComparisonArgs(_Arguments):
    period_a: str = Field(..., description="Earlier period, " + TIMEFRAME_DESCRIPTION)
    period_b: str = Field(..., description="Later period, " + TIMEFRAME_DESCRIPTION)
    category: str | None = Field(None, description="Optional category filter")
    vendor: str | None = Field(None, description="Optional merchant filter")


class AnomalyArgs(_Arguments):
    timeframe: str = Field(DEFAULT_TIMEFRAME, description=TIMEFRAME_DESCRIPTION)
    category: str | None = Field(None, description="Optional category filter")
    vendor: str | None = Field(None, description="Optional merchant filter")


class TrendArgs(_Arguments):
    timeframe: str = Field(DEFAULT_TIMEFRAME, description=TIMEFRAME_DESCRIPTION)
    interval: Literal["day", "week", "month"] = Field(
        "month", description="Bucket size for the series",
    )
    category: str | None = Field(None, description="Optional category filter")
    vendor: str | None = Field(None, description="Optional merchant filter")


class TopVendorsArgs(_Arguments):
    timeframe: str = Field(DEFAULT_TIMEFRAME, description=TIMEFRAME_DESCRIPTION)
    limit: int = Field(10, ge=1, le=50, description="Number of merchants to return")


class TopCategoriesArgs(_Arguments):
    timeframe: str = Field(DEFAULT_TIMEFRAME, description=TIMEFRAME_DESCRIPTION)
    limit: int = Field(10, ge=1, le=50, description="Number of categories to return")


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class Window(BaseModel):
    start: date
    end: date
    label: str


class CategorySpendingResult(BaseModel):
    category: str
    total: float
    count: int
    window: Window


class TimeSpendingResult(BaseModel):
    total: float
    count: int
    window: Window


class VendorSpendingResult(BaseModel):
    vendor: str
    total: float
    count: int
    window: Window


class CategoryTotal(BaseModel):
    category: str
    total: float
    count: int


class CustomPeriodResult(BaseModel):
    total: float
    count: int
    window: Window
    breakdown: list[CategoryTotal]


class PeriodTotal(BaseModel):
    window: Window
    total: float
    count: int


class ComparisonResult(BaseModel):
    period_a: PeriodTotal
    period_b: PeriodTotal
    difference: float = Field(..., description="period_b total minus period_a total")
    percent_change: float | None = Field(
        None, description="Change relative to period_a; null when period_a is 0",
    )
    category: str | None = None
    vendor: str | None = None


class Anomaly(BaseModel):
    type: Literal["high_amount", "new_vendor"]
    amount: float
    merchant: str
    purchase_date: date
    reason: str


class AnomalyResult(BaseModel):
    window: Window
    baseline: Window
    historical_average: float
    anomalies: list[Anomaly]


class TrendPoint(BaseModel):
    period: str
    total: float
    count: int


class TrendResult(BaseModel):
    window: Window
    interval: Literal["day", "week", "month"]
    points: list[TrendPoint]
    category: str | None = None
    vendor: str | None = None


class VendorShare(BaseModel):
    vendor: str
    total: float
    count: int
    share: float = Field(..., description="Percent of total spending, 1dp")


class TopVendorsResult(BaseModel):
    window: Window
    total: float
    items: list[VendorShare]


class CategoryShare(BaseModel):
    category: str
    total: float
    count: int
    share: float = Field(..., description="Percent of total spending, 1dp")


class TopCategoriesResult(BaseModel):
    window: Window
    total: float
    items: list[CategoryShare]
