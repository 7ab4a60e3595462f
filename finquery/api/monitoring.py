# =============================================================================
# Monitoring API — Performance Dashboard, Load Tests, Cache Statistics
# =============================================================================
#
# GET  /monitoring/performance?timeRange=1h|24h|7d|30d
# POST /monitoring/load-test
# GET  /monitoring/cache-stats
#
# Load tests call QueryService.answer directly, so they exercise the same
# cache, resolver and engine as real traffic and show up in the dashboard.
# =============================================================================

from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from finquery.agents.orchestrator import QueryService
from finquery.api.deps import (
    get_current_user,
    get_query_service,
    load_test_rate_limit,
    monitoring_rate_limit,
    rate_limit_headers,
)
from finquery.models.requests import LoadTestRequest, QueryRequest
from finquery.models.responses import (
    CacheStatsResponse,
    LoadTestResult,
    PerformanceDashboard,
)
from finquery.services.load_tester import run_load_test
from finquery.services.rate_limiter import RateLimitStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/monitoring", tags=["Monitoring"])


@router.get(
    "/performance",
    response_model=PerformanceDashboard,
    summary="Performance dashboard",
)
async def performance_dashboard(
    time_range: Literal["1h", "24h", "7d", "30d"] = Query("1h", alias="timeRange"),
    limit: RateLimitStatus | None = Depends(monitoring_rate_limit),
    service: QueryService = Depends(get_query_service),
):
    dashboard = service.monitor.dashboard(time_range)
    return JSONResponse(
        dashboard.model_dump(mode="json", by_alias=True),
        headers=rate_limit_headers(limit),
    )


@router.post(
    "/load-test",
    response_model=LoadTestResult,
    summary="Run a synthetic load test",
    description=(
        "Sends `requests` queries with at most `concurrency` in flight "
        "through the real query pipeline and reports latency percentiles."
    ),
)
async def load_test(
    config: LoadTestRequest,
    user_id: str = Depends(get_current_user),
    limit: RateLimitStatus | None = Depends(load_test_rate_limit),
    service: QueryService = Depends(get_query_service),
):
    async def send(index: int):
        return await service.answer(QueryRequest(user_id=user_id, query=config.query))

    result = await run_load_test(config, send)
    return JSONResponse(
        result.model_dump(mode="json", by_alias=True),
        headers=rate_limit_headers(limit),
    )


@router.get(
    "/cache-stats",
    response_model=CacheStatsResponse,
    summary="Response cache statistics",
)
async def cache_stats(
    user_id: str = Depends(get_current_user),
    service: QueryService = Depends(get_query_service),
) -> CacheStatsResponse:
    stats = service.cache.stats()
    return CacheStatsResponse(
        hits=stats.hits,
        misses=stats.misses,
        hit_rate=stats.hit_rate,
        size=stats.size,
        in_flight=stats.in_flight,
        coalesced=stats.coalesced,
        evictions=stats.evictions,
        ttl_seconds=stats.ttl_seconds,
    )
