# =============================================================================
# Data Function Catalog — Typed Read Operations over Receipts
# =============================================================================
#
# The fixed set of operations the resolver may select from. Each one:
#   - takes (store, user_id, validated args, today)
#   - reads only through the ReceiptStore protocol
#   - returns its declared result model
#
# Functions raise on store failures; the execution engine turns that into
# a failed FunctionResult so one broken call never aborts the batch.
#
# CATALOG maps function name → CatalogEntry. `tool_schemas()` exports the
# argument models as JSON schema for the LLM resolver.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date

from pydantic import BaseModel

from finquery.catalog.schemas import (
    Anomaly,
    AnomalyArgs,
    AnomalyResult,
    CategorySpendingArgs,
    CategorySpendingResult,
    CategoryShare,
    CategoryTotal,
    ComparisonArgs,
    ComparisonResult,
    CustomPeriodArgs,
    CustomPeriodResult,
    PeriodTotal,
    TimeSpendingArgs,
    TimeSpendingResult,
    TopCategoriesArgs,
    TopCategoriesResult,
    TopVendorsArgs,
    TopVendorsResult,
    TrendArgs,
    TrendPoint,
    TrendResult,
    VendorShare,
    VendorSpendingArgs,
    VendorSpendingResult,
    Window,
)
from finquery.services.receipt_store import ReceiptStore
from finquery.services.timeframes import DateWindow, parse_timeframe

logger = logging.getLogger(__name__)

# Anomaly detection parameters
BASELINE_MONTHS = 3
HIGH_AMOUNT_MULTIPLIER = 2.0
ANOMALY_CANDIDATES = 10


def _window(window: DateWindow) -> Window:
    return Window(start=window.start, end=window.end, label=window.label)


def _share(part: float, whole: float) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


# ---------------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------------


async def get_spending_by_category(
    store: ReceiptStore, user_id: str, args: CategorySpendingArgs, today: date,
) -> CategorySpendingResult:
    window = parse_timeframe(args.timeframe, today)
    spent = await store.total_spent(user_id, window, category=args.category)
    return CategorySpendingResult(
        category=args.category, total=spent.total, count=spent.count,
        window=_window(window),
    )


async def get_spending_by_time(
    store: ReceiptStore, user_id: str, args: TimeSpendingArgs, today: date,
) -> TimeSpendingResult:
    window = parse_timeframe(args.timeframe, today)
    spent = await store.total_spent(user_id, window)
    return TimeSpendingResult(total=spent.total, count=spent.count, window=_window(window))


async def get_spending_by_vendor(
    store: ReceiptStore, user_id: str, args: VendorSpendingArgs, today: date,
) -> VendorSpendingResult:
    window = parse_timeframe(args.timeframe, today)
    spent = await store.total_spent(user_id, window, merchant=args.vendor)
    return VendorSpendingResult(
        vendor=args.vendor, total=spent.total, count=spent.count,
        window=_window(window),
    )


async def get_spending_for_custom_period(
    store: ReceiptStore, user_id: str, args: CustomPeriodArgs, today: date,
) -> CustomPeriodResult:
    window = DateWindow(
        args.start_date, args.end_date,
        f"{args.start_date.isoformat()} to {args.end_date.isoformat()}",
    )
    spent = await store.total_spent(user_id, window)
    groups = await store.totals_by(user_id, window, "category")
    return CustomPeriodResult(
        total=spent.total,
        count=spent.count,
        window=_window(window),
        breakdown=[
            CategoryTotal(category=g.key, total=g.total, count=g.count)
            for g in groups
        ],
    )


async def get_spending_comparison(
    store: ReceiptStore, user_id: str, args: ComparisonArgs, today: date,
) -> ComparisonResult:
    window_a = parse_timeframe(args.period_a, today)
    window_b = parse_timeframe(args.period_b, today)
    spent_a = await store.total_spent(
        user_id, window_a, category=args.category, merchant=args.vendor,
    )
    spent_b = await store.total_spent(
        user_id, window_b, category=args.category, merchant=args.vendor,
    )
    difference = round(spent_b.total - spent_a.total, 2)
    percent_change = (
        round(difference / spent_a.total * 100, 1) if spent_a.total else None
    )
    return ComparisonResult(
        period_a=PeriodTotal(window=_window(window_a), total=spent_a.total, count=spent_a.count),
        period_b=PeriodTotal(window=_window(window_b), total=spent_b.total, count=spent_b.count),
        difference=difference,
        percent_change=percent_change,
        category=args.category,
        vendor=args.vendor,
    )


async def detect_spending_anomalies(
    store: ReceiptStore, user_id: str, args: AnomalyArgs, today: date,
) -> AnomalyResult:
    """
    Flag unusual receipts in the window.

    Baseline is the BASELINE_MONTHS before the window. Of the
    ANOMALY_CANDIDATES largest receipts in the window:
      - above HIGH_AMOUNT_MULTIPLIER × baseline average → high_amount
      - merchant never seen in the baseline → new_vendor
        (only when the baseline has receipts at all)
    """
    window = parse_timeframe(args.timeframe, today)
    baseline = window.preceding_months(BASELINE_MONTHS)

    historical = await store.total_spent(
        user_id, baseline, category=args.category, merchant=args.vendor,
    )
    average = await store.average_amount(
        user_id, baseline, category=args.category, merchant=args.vendor,
    )
    candidates = await store.largest_receipts(
        user_id, window, ANOMALY_CANDIDATES,
        category=args.category, merchant=args.vendor,
    )

    anomalies: list[Anomaly] = []
    if average > 0:
        threshold = average * HIGH_AMOUNT_MULTIPLIER
        for receipt in candidates:
            if receipt.total > threshold:
                anomalies.append(Anomaly(
                    type="high_amount",
                    amount=receipt.total,
                    merchant=receipt.merchant,
                    purchase_date=receipt.purchase_date,
                    reason=(
                        f"Unusually high amount (${receipt.total:,.2f}) compared "
                        f"to your average of ${average:,.2f}"
                    ),
                ))

    if historical.count > 0:
        known = await store.merchants_seen(user_id, baseline)
        flagged: set[str] = set()
        for receipt in candidates:
            key = receipt.merchant.lower()
            if key in known or key in flagged:
                continue
            flagged.add(key)
            anomalies.append(Anomaly(
                type="new_vendor",
                amount=receipt.total,
                merchant=receipt.merchant,
                purchase_date=receipt.purchase_date,
                reason=f"New vendor detected: {receipt.merchant}",
            ))

    return AnomalyResult(
        window=_window(window),
        baseline=_window(baseline),
        historical_average=average,
        anomalies=anomalies,
    )


async def get_spending_trends(
    store: ReceiptStore, user_id: str, args: TrendArgs, today: date,
) -> TrendResult:
    window = parse_timeframe(args.timeframe, today)
    groups = await store.totals_by(
        user_id, window, args.interval, category=args.category, merchant=args.vendor,
    )
    return TrendResult(
        window=_window(window),
        interval=args.interval,
        points=[TrendPoint(period=g.key, total=g.total, count=g.count) for g in groups],
        category=args.category,
        vendor=args.vendor,
    )


async def summarize_top_vendors(
    store: ReceiptStore, user_id: str, args: TopVendorsArgs, today: date,
) -> TopVendorsResult:
    window = parse_timeframe(args.timeframe, today)
    groups = await store.totals_by(user_id, window, "merchant")
    grand_total = round(sum(g.total for g in groups), 2)
    return TopVendorsResult(
        window=_window(window),
        total=grand_total,
        items=[
            VendorShare(vendor=g.key, total=g.total, count=g.count, share=_share(g.total, grand_total))
            for g in groups[: args.limit]
        ],
    )


async def summarize_top_categories(
    store: ReceiptStore, user_id: str, args: TopCategoriesArgs, today: date,
) -> TopCategoriesResult:
    window = parse_timeframe(args.timeframe, today)
    groups = await store.totals_by(user_id, window, "category")
    grand_total = round(sum(g.total for g in groups), 2)
    return TopCategoriesResult(
        window=_window(window),
        total=grand_total,
        items=[
            CategoryShare(category=g.key, total=g.total, count=g.count, share=_share(g.total, grand_total))
            for g in groups[: args.limit]
        ],
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CatalogEntry:
    """One data function: name, description, schemas and implementation."""

    name: str
    description: str
    args_model: type[BaseModel]
    result_model: type[BaseModel]
    handler: Callable[[ReceiptStore, str, BaseModel, date], Awaitable[BaseModel]]

    def tool_schema(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.args_model.model_json_schema(),
        }


CATALOG: dict[str, CatalogEntry] = {
    entry.name: entry
    for entry in (
        CatalogEntry(
            "get_spending_by_category",
            "Total spending in one category over a time period.",
            CategorySpendingArgs, CategorySpendingResult, get_spending_by_category,
        ),
        CatalogEntry(
            "get_spending_by_time",
            "Total spending across all categories over a time period.",
            TimeSpendingArgs, TimeSpendingResult, get_spending_by_time,
        ),
        CatalogEntry(
            "get_spending_by_vendor",
            "Total spending at one merchant over a time period.",
            VendorSpendingArgs, VendorSpendingResult, get_spending_by_vendor,
        ),
        CatalogEntry(
            "get_spending_for_custom_period",
            "Total spending between two explicit dates, broken down by category.",
            CustomPeriodArgs, CustomPeriodResult, get_spending_for_custom_period,
        ),
        CatalogEntry(
            "get_spending_comparison",
            "Compare spending between two periods, optionally for one category or merchant.",
            ComparisonArgs, ComparisonResult, get_spending_comparison,
        ),
        CatalogEntry(
            "detect_spending_anomalies",
            "Find unusually large purchases and new merchants compared to the prior 3 months.",
            AnomalyArgs, AnomalyResult, detect_spending_anomalies,
        ),
        CatalogEntry(
            "get_spending_trends",
            "Spending totals over time, bucketed by day, week or month.",
            TrendArgs, TrendResult, get_spending_trends,
        ),
        CatalogEntry(
            "summarize_top_vendors",
            "Merchants with the highest spending in a period and their share of the total.",
            TopVendorsArgs, TopVendorsResult, summarize_top_vendors,
        ),
        CatalogEntry(
            "summarize_top_categories",
            "Categories with the highest spending in a period and their share of the total.",
            TopCategoriesArgs, TopCategoriesResult, summarize_top_categories,
        ),
    )
}


def tool_schemas() -> list[dict]:
    """JSON schema for every catalog function, in catalog order."""
    return [entry.tool_schema() for entry in CATALOG.values()]
