# =============================================================================
# Performance Monitor — Rolling Window of Request Samples
# =============================================================================
#
# Every pipeline outcome (cache hit, miss, error, timeout, cancel) records
# one PerformanceSample with operation "agent:query"; each data function
# call records one with operation "function:<name>".
#
# Window: deque guarded by a threading.Lock.
#   - count ceiling: monitor_window_max_samples (deque maxlen)
#   - age ceiling:   monitor_window_max_age_seconds (pruned on record)
#
# snapshot(window) aggregates request samples: rate, error rate, cache-hit
# rate, average and nearest-rank p50/p95/p99 latency.
# dashboard(range) adds historical buckets, alert records, the slowest
# operations and resource gauges (psutil + cache + DB pool).
#
# Alerts are plain records returned to the caller; nothing here raises.
# =============================================================================

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime

import psutil

from finquery.config import settings
from finquery.models.responses import (
    AlertRecord,
    HistoricalMetrics,
    PerformanceDashboard,
    RealTimeMetrics,
    ResourceUsage,
    SlowOperation,
    TrendPoint,
)
from finquery.services.cache import ResponseCache

logger = logging.getLogger(__name__)

REQUEST_OPERATION = "agent:query"
REAL_TIME_WINDOW_SECONDS = 60

# time range → (total seconds, bucket seconds)
TIME_RANGES: dict[str, tuple[int, int]] = {
    "1h": (3600, 300),
    "24h": (86400, 3600),
    "7d": (7 * 86400, 6 * 3600),
    "30d": (30 * 86400, 86400),
}


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PerformanceSample:
    timestamp: float  # unix seconds
    operation: str
    duration_ms: float
    success: bool
    cache_hit: bool = False
    user_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class PerformanceSnapshot:
    window_seconds: float
    count: int
    request_rate: float      # requests / second
    error_rate: float        # percent
    cache_hit_rate: float    # percent
    average_ms: float
    p50_ms: float
    p95_ms: float
    p99_ms: float
    active_users: int


def percentile(sorted_values: list[float], q: float) -> float:
    """Nearest-rank percentile of an ascending list (0.0 when empty)."""
    n = len(sorted_values)
    if n == 0:
        return 0.0
    return sorted_values[min(int(n * q), n - 1)]


def _snapshot(samples: list[PerformanceSample], window_seconds: float) -> PerformanceSnapshot:
    n = len(samples)
    durations = sorted(s.duration_ms for s in samples)
    errors = sum(1 for s in samples if not s.success)
    hits = sum(1 for s in samples if s.cache_hit)
    return PerformanceSnapshot(
        window_seconds=window_seconds,
        count=n,
        request_rate=round(n / window_seconds, 3) if window_seconds else 0.0,
        error_rate=round(errors / n * 100, 1) if n else 0.0,
        cache_hit_rate=round(hits / n * 100, 1) if n else 0.0,
        average_ms=round(sum(durations) / n, 1) if n else 0.0,
        p50_ms=round(percentile(durations, 0.50), 1),
        p95_ms=round(percentile(durations, 0.95), 1),
        p99_ms=round(percentile(durations, 0.99), 1),
        active_users=len({s.user_id for s in samples if s.user_id}),
    )


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


class PerformanceMonitor:
    """Thread-safe rolling window plus dashboard aggregation."""

    def __init__(
        self,
        max_samples: int | None = None,
        max_age_seconds: float | None = None,
        cache: ResponseCache | None = None,
        clock=time.time,
    ) -> None:
        self._samples: deque[PerformanceSample] = deque(
            maxlen=max_samples or settings.monitor_window_max_samples,
        )
        self._max_age = max_age_seconds or settings.monitor_window_max_age_seconds
        self._lock = threading.Lock()
        self._clock = clock
        self._cache = cache
        self._process = psutil.Process()

    def record(self, sample: PerformanceSample) -> None:
        with self._lock:
            self._samples.append(sample)
            cutoff = self._clock() - self._max_age
            while self._samples and self._samples[0].timestamp < cutoff:
                self._samples.popleft()

    def record_request(
        self,
        duration_ms: float,
        success: bool,
        cache_hit: bool = False,
        user_id: str | None = None,
        error: str | None = None,
        operation: str = REQUEST_OPERATION,
    ) -> PerformanceSample:
        sample = PerformanceSample(
            timestamp=self._clock(),
            operation=operation,
            duration_ms=duration_ms,
            success=success,
            cache_hit=cache_hit,
            user_id=user_id,
            error=error,
        )
        self.record(sample)
        return sample

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    def samples(
        self,
        window_seconds: float,
        operation: str | None = REQUEST_OPERATION,
    ) -> list[PerformanceSample]:
        """Samples newer than `window_seconds`, optionally for one operation."""
        cutoff = self._clock() - window_seconds
        with self._lock:
            return [
                s for s in self._samples
                if s.timestamp >= cutoff and (operation is None or s.operation == operation)
            ]

    def snapshot(self, window_seconds: float = REAL_TIME_WINDOW_SECONDS) -> PerformanceSnapshot:
        return _snapshot(self.samples(window_seconds), window_seconds)

    # --- resources & alerts -------------------------------------------------

    def resource_usage(self) -> ResourceUsage:
        from finquery.db.engine import pool_checked_out

        memory = self._process.memory_info()
        stats = self._cache.stats() if self._cache else None
        return ResourceUsage(
            memory_mb=round(memory.rss / 1024 / 1024, 1),
            memory_percent=round(self._process.memory_percent(), 1),
            cpu_percent=round(self._process.cpu_percent(interval=None), 1),
            cache_entries=stats.size if stats else 0,
            in_flight_computations=stats.in_flight if stats else 0,
            db_connections=pool_checked_out(),
        )

    def evaluate_alerts(
        self,
        snapshot: PerformanceSnapshot,
        resources: ResourceUsage | None = None,
    ) -> list[AlertRecord]:
        """Threshold crossings on a snapshot, most severe first."""
        now = datetime.fromtimestamp(self._clock(), UTC)
        alerts: list[AlertRecord] = []

        if snapshot.count:
            latency = snapshot.p95_ms
            if latency > settings.alert_response_time_critical_ms:
                alerts.append(AlertRecord(
                    type="response_time", severity="critical",
                    message=f"Critical response time: p95 {latency:.0f}ms",
                    threshold=settings.alert_response_time_critical_ms,
                    current_value=latency, timestamp=now,
                ))
            elif latency > settings.alert_response_time_warning_ms:
                alerts.append(AlertRecord(
                    type="response_time", severity="medium",
                    message=f"High response time: p95 {latency:.0f}ms",
                    threshold=settings.alert_response_time_warning_ms,
                    current_value=latency, timestamp=now,
                ))

        if snapshot.count >= settings.alert_min_samples:
            if snapshot.error_rate > settings.alert_error_rate_critical:
                alerts.append(AlertRecord(
                    type="error_rate", severity="critical",
                    message=f"Critical error rate: {snapshot.error_rate:.1f}%",
                    threshold=settings.alert_error_rate_critical,
                    current_value=snapshot.error_rate, timestamp=now,
                ))
            elif snapshot.error_rate > settings.alert_error_rate_warning:
                alerts.append(AlertRecord(
                    type="error_rate", severity="high",
                    message=f"High error rate: {snapshot.error_rate:.1f}%",
                    threshold=settings.alert_error_rate_warning,
                    current_value=snapshot.error_rate, timestamp=now,
                ))
            if snapshot.cache_hit_rate < settings.alert_cache_hit_rate_floor:
                alerts.append(AlertRecord(
                    type="cache_hit_rate", severity="medium",
                    message=f"Low cache hit rate: {snapshot.cache_hit_rate:.1f}%",
                    threshold=settings.alert_cache_hit_rate_floor,
                    current_value=snapshot.cache_hit_rate, timestamp=now,
                ))

        if resources and resources.memory_percent > settings.alert_memory_percent:
            alerts.append(AlertRecord(
                type="memory_usage", severity="high",
                message=f"High memory usage: {resources.memory_percent:.1f}%",
                threshold=settings.alert_memory_percent,
                current_value=resources.memory_percent, timestamp=now,
            ))

        rank = {"critical": 0, "high": 1, "medium": 2}
        alerts.sort(key=lambda a: rank[a.severity])
        return alerts

    # --- dashboard ----------------------------------------------------------

    def top_slow_operations(self, window_seconds: float, limit: int = 5) -> list[SlowOperation]:
        grouped: dict[str, list[float]] = {}
        for s in self.samples(window_seconds, operation=None):
            grouped.setdefault(s.operation, []).append(s.duration_ms)
        ranked = sorted(
            (
                SlowOperation(
                    operation=op,
                    average_duration=round(sum(d) / len(d), 1),
                    count=len(d),
                )
                for op, d in grouped.items()
            ),
            key=lambda o: (-o.average_duration, o.operation),
        )
        return ranked[:limit]

    def historical(self, time_range: str) -> HistoricalMetrics:
        total_seconds, bucket_seconds = TIME_RANGES[time_range]
        now = self._clock()
        start = now - total_seconds
        buckets: list[list[PerformanceSample]] = [
            [] for _ in range(total_seconds // bucket_seconds)
        ]
        for s in self.samples(total_seconds):
            index = min(int((s.timestamp - start) // bucket_seconds), len(buckets) - 1)
            buckets[index].append(s)

        response_time, throughput, error_rate = [], [], []
        for i, bucket in enumerate(buckets):
            at = datetime.fromtimestamp(start + i * bucket_seconds, UTC)
            snap = _snapshot(bucket, bucket_seconds)
            response_time.append(TrendPoint(timestamp=at, value=snap.average_ms))
            throughput.append(TrendPoint(timestamp=at, value=snap.request_rate))
            error_rate.append(TrendPoint(timestamp=at, value=snap.error_rate))
        return HistoricalMetrics(
            response_time=response_time,
            throughput=throughput,
            error_rate=error_rate,
        )

    def dashboard(self, time_range: str = "1h") -> PerformanceDashboard:
        total_seconds, _ = TIME_RANGES[time_range]
        live = self.snapshot(REAL_TIME_WINDOW_SECONDS)
        resources = self.resource_usage()
        alerts = self.evaluate_alerts(self.snapshot(total_seconds), resources)
        if alerts:
            logger.warning(
                "Performance alerts (%s): %s",
                time_range, ", ".join(f"{a.type}/{a.severity}" for a in alerts),
            )
        return PerformanceDashboard(
            time_range=time_range,
            generated_at=datetime.fromtimestamp(self._clock(), UTC),
            real_time=RealTimeMetrics(
                request_count=live.count,
                requests_per_second=live.request_rate,
                average_response_time=live.average_ms,
                p50_response_time=live.p50_ms,
                p95_response_time=live.p95_ms,
                p99_response_time=live.p99_ms,
                error_rate=live.error_rate,
                cache_hit_rate=live.cache_hit_rate,
                active_users=live.active_users,
            ),
            historical=self.historical(time_range),
            alerts=alerts,
            top_slow_operations=self.top_slow_operations(total_seconds),
            resource_usage=resources,
        )
