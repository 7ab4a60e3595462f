# =============================================================================
# Load Tester — Synthetic Traffic Through the Real Entry Point
# =============================================================================
#
# Issues `requests` calls to `request_fn` with at most `concurrency` in
# flight (asyncio.Semaphore). The API passes a function that calls
# QueryService.answer, so measured latency includes cache, resolution,
# execution and synthesis exactly as real traffic sees them.
#
# A call that raises counts as failed; the run itself never raises.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from finquery.models.requests import LoadTestRequest
from finquery.models.responses import LoadTestRequestResult, LoadTestResult
from finquery.services.monitor import percentile

logger = logging.getLogger(__name__)


async def run_load_test(
    config: LoadTestRequest,
    request_fn: Callable[[int], Awaitable[Any]],
) -> LoadTestResult:
    """
    Run one load test and summarise it.

    Args:
        config: Test name, request count and concurrency.
        request_fn: Called with the request index; raising marks the
            request failed.
    """
    semaphore = asyncio.Semaphore(config.concurrency)
    test_id = uuid.uuid4().hex[:12]

    async def one(index: int) -> LoadTestRequestResult:
        async with semaphore:
            stamp = datetime.now(UTC)
            start = time.perf_counter()
            error = None
            try:
                await request_fn(index)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
            duration = round((time.perf_counter() - start) * 1000, 2)
            return LoadTestRequestResult(
                id=index,
                duration=duration,
                success=error is None,
                error=error,
                timestamp=stamp,
            )

    logger.info(
        "Load test %s (%s): %d requests, concurrency %d",
        test_id, config.test_name, config.requests, config.concurrency,
    )
    start_time = datetime.now(UTC)
    wall_start = time.perf_counter()
    results = await asyncio.gather(*(one(i) for i in range(config.requests)))
    elapsed = time.perf_counter() - wall_start
    end_time = datetime.now(UTC)

    durations = sorted(r.duration for r in results)
    successes = sum(1 for r in results if r.success)
    n = len(durations)

    result = LoadTestResult(
        id=test_id,
        test_name=config.test_name,
        start_time=start_time,
        end_time=end_time,
        total_requests=n,
        successful_requests=successes,
        failed_requests=n - successes,
        average_response_time=round(sum(durations) / n, 2) if n else 0.0,
        p50_response_time=percentile(durations, 0.50),
        p95_response_time=percentile(durations, 0.95),
        p99_response_time=percentile(durations, 0.99),
        throughput=round(n / elapsed, 2) if elapsed > 0 else 0.0,
        concurrency=config.concurrency,
        results=list(results),
    )
    logger.info(
        "Load test %s done: %d/%d ok, avg=%.1fms p95=%.1fms, %.1f req/s",
        test_id, successes, n, result.average_response_time,
        result.p95_response_time, result.throughput,
    )
    return result
