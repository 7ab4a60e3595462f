# =============================================================================
# Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data going OUT of the API, camelCase on the wire
# (`executionTime`, `p95ResponseTime`, `requestId`) while Python code uses
# snake_case attributes.
#
#   SynthesizedResponse   answer body, also the unit stored in the cache
#   StreamEvent           tagged union of NDJSON streaming events
#   LoadTestResult        outcome of a synthetic load test
#   PerformanceDashboard  GET /monitoring/performance
#   CacheStatsResponse    GET /monitoring/cache-stats
# =============================================================================

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


# ---------------------------------------------------------------------------
# Query answers
# ---------------------------------------------------------------------------


class SynthesizedResponse(CamelModel):
    """
    The answer to one query.

    Immutable: a cache hit is served as a copy with `cached=True` and the
    caller's own execution time. `complete` is False when any data function
    failed; incomplete answers are never cached. It stays server-side.
    """

    message: str
    data: list[dict[str, Any]] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)
    cached: bool = False
    execution_time: float = Field(0.0, description="Milliseconds spent serving this request")
    complete: bool = Field(True, exclude=True)
    error: str | None = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        json_schema_extra={
            "examples": [
                {
                    "message": "You spent $412.30 on Food & Dining last month (38 purchases).",
                    "data": [],
                    "insights": ["Average purchase: $10.85"],
                    "cached": False,
                    "executionTime": 42.1,
                }
            ]
        },
    )

    def wire(self) -> dict[str, Any]:
        """JSON-ready body: camelCase, `error` omitted when unset."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ClearCacheResponse(BaseModel):
    """Response for DELETE /agent/query and action=clear-cache."""

    cleared: int = Field(description="Number of cached answers removed")


# ---------------------------------------------------------------------------
# Streaming events
# ---------------------------------------------------------------------------
# One JSON object per line. `seq` starts at 0 and increases by one per
# event; the last line is always `complete` or `error`.
# ---------------------------------------------------------------------------


class _Event(CamelModel):
    seq: int
    request_id: str


class StartEvent(_Event):
    type: Literal["start"] = "start"


class ContentDeltaEvent(_Event):
    type: Literal["content_delta"] = "content_delta"
    delta: str


class FunctionCallsEvent(_Event):
    type: Literal["function_calls"] = "function_calls"
    calls: list[dict[str, Any]]


class FunctionResultEvent(_Event):
    type: Literal["function_result"] = "function_result"
    result: dict[str, Any]


class CompleteEvent(_Event):
    type: Literal["complete"] = "complete"
    response: SynthesizedResponse


class StreamErrorDetail(BaseModel):
    code: str
    message: str


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    error: StreamErrorDetail


StreamEvent = Annotated[
    Union[
        StartEvent,
        ContentDeltaEvent,
        FunctionCallsEvent,
        FunctionResultEvent,
        CompleteEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Load testing
# ---------------------------------------------------------------------------


class LoadTestRequestResult(CamelModel):
    id: int
    duration: float = Field(description="Milliseconds")
    success: bool
    error: str | None = None
    timestamp: datetime


class LoadTestResult(CamelModel):
    """
    Outcome of POST /monitoring/load-test.

    Percentiles are nearest-rank over the sorted per-request durations.
    successful_requests + failed_requests == total_requests.
    """

    id: str
    test_name: str
    start_time: datetime
    end_time: datetime
    total_requests: int
    successful_requests: int
    failed_requests: int
    average_response_time: float
    p50_response_time: float
    p95_response_time: float
    p99_response_time: float
    throughput: float = Field(description="Completed requests per second")
    concurrency: int
    results: list[LoadTestRequestResult]


# ---------------------------------------------------------------------------
# Performance dashboard
# ---------------------------------------------------------------------------


class RealTimeMetrics(CamelModel):
    """Aggregates over the last minute."""

    request_count: int
    requests_per_second: float
    average_response_time: float
    p50_response_time: float
    p95_response_time: float
    p99_response_time: float
    error_rate: float = Field(description="Percent")
    cache_hit_rate: float = Field(description="Percent")
    active_users: int


class TrendPoint(CamelModel):
    timestamp: datetime
    value: float


class HistoricalMetrics(CamelModel):
    response_time: list[TrendPoint]
    throughput: list[TrendPoint]
    error_rate: list[TrendPoint]


class AlertRecord(CamelModel):
    type: Literal["response_time", "error_rate", "cache_hit_rate", "memory_usage"]
    severity: Literal["medium", "high", "critical"]
    message: str
    threshold: float
    current_value: float
    timestamp: datetime


class SlowOperation(CamelModel):
    operation: str
    average_duration: float
    count: int


class ResourceUsage(CamelModel):
    memory_mb: float
    memory_percent: float
    cpu_percent: float
    cache_entries: int
    in_flight_computations: int
    db_connections: int


class PerformanceDashboard(CamelModel):
    time_range: Literal["1h", "24h", "7d", "30d"]
    generated_at: datetime
    real_time: RealTimeMetrics
    historical: HistoricalMetrics
    alerts: list[AlertRecord]
    top_slow_operations: list[SlowOperation]
    resource_usage: ResourceUsage


class CacheStatsResponse(CamelModel):
    """Response for GET /monitoring/cache-stats."""

    hits: int
    misses: int
    hit_rate: float = Field(description="Percent")
    size: int
    in_flight: int
    coalesced: int
    evictions: int
    ttl_seconds: float
