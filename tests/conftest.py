# =============================================================================
# Shared Test Fixtures
# =============================================================================
#
# Everything here runs without PostgreSQL, Redis or an LLM:
#   - a small seeded MemoryReceiptStore around a fixed TODAY
#   - CountingStore, which counts (and can delay or fail) store calls so
#     tests can assert how often the data store was hit
#   - a fresh QueryService per test with its own cache and monitor
# =============================================================================

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import date

import pytest

from finquery.agents.orchestrator import QueryService
from finquery.agents.resolver import RuleBasedResolver
from finquery.config import Settings
from finquery.services.cache import ResponseCache
from finquery.services.monitor import PerformanceMonitor
from finquery.services.receipt_store import MemoryReceiptStore, ReceiptRecord

TODAY = date(2025, 6, 15)  # a Sunday
USER = "user-1"
OTHER_USER = "user-2"


def _r(rid: str, merchant: str, category: str | None, total: float, day: str) -> ReceiptRecord:
    return ReceiptRecord(
        id=rid, merchant=merchant, category=category, total=total,
        purchase_date=date.fromisoformat(day),
    )


def seed_store() -> MemoryReceiptStore:
    """
    May 2025 food: 5.50 + 12.25 + 6.00 = 23.75 over 3 purchases.
    June 2025 (to the 15th): 6.25 + 90.00 + 480.00 = 576.25.
    """
    return MemoryReceiptStore({
        USER: [
            # March / April: anomaly baseline
            _r("r9", "Whole Foods", "Groceries", 75.00, "2025-03-08"),
            _r("r12", "Chipotle", "Food & Dining", 11.50, "2025-03-22"),
            _r("r10", "Starbucks", "Food & Dining", 5.75, "2025-04-04"),
            _r("r11", "Shell", "Transportation", 42.00, "2025-04-15"),
            # May
            _r("r1", "Starbucks", "Food & Dining", 5.50, "2025-05-03"),
            _r("r4", "Whole Foods", "Groceries", 80.00, "2025-05-05"),
            _r("r2", "Chipotle", "Food & Dining", 12.25, "2025-05-10"),
            _r("r5", "Shell", "Transportation", 40.00, "2025-05-12"),
            _r("r3", "Starbucks", "Food & Dining", 6.00, "2025-05-20"),
            # June
            _r("r6", "Starbucks", "Food & Dining", 6.25, "2025-06-02"),
            _r("r7", "Whole Foods", "Groceries", 90.00, "2025-06-07"),
            _r("r8", "Best Buy", "Shopping", 480.00, "2025-06-09"),
        ],
        OTHER_USER: [
            _r("o1", "Starbucks", "Food & Dining", 100.00, "2025-05-15"),
        ],
    })


class CountingStore:
    """
    ReceiptStore wrapper that counts calls per method.

    `delay` makes every call yield to the loop for a while so concurrent
    requests overlap; `fail_when(method, kwargs)` makes matching calls raise.
    """

    def __init__(self, inner, delay: float = 0.0, fail_when=None) -> None:
        self.inner = inner
        self.delay = delay
        self.fail_when = fail_when
        self.calls: Counter[str] = Counter()

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    async def _call(self, method: str, *args, **kwargs):
        self.calls[method] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_when is not None and self.fail_when(method, kwargs):
            raise ConnectionError(f"store unavailable for {method}")
        return await getattr(self.inner, method)(*args, **kwargs)

    async def total_spent(self, *args, **kwargs):
        return await self._call("total_spent", *args, **kwargs)

    async def totals_by(self, *args, **kwargs):
        return await self._call("totals_by", *args, **kwargs)

    async def largest_receipts(self, *args, **kwargs):
        return await self._call("largest_receipts", *args, **kwargs)

    async def average_amount(self, *args, **kwargs):
        return await self._call("average_amount", *args, **kwargs)

    async def merchants_seen(self, *args, **kwargs):
        return await self._call("merchants_seen", *args, **kwargs)


def make_service(store=None, **overrides) -> QueryService:
    test_settings = Settings(
        cache_enabled=True,
        cache_ttl_seconds=300,
        resolver_backend="rules",
        rate_limit_enabled=False,
        auth_enabled=False,
        **overrides,
    )
    cache = ResponseCache(ttl_seconds=test_settings.cache_ttl_seconds, enabled=True)
    return QueryService(
        store=store if store is not None else CountingStore(seed_store()),
        cache=cache,
        monitor=PerformanceMonitor(cache=cache),
        resolver=RuleBasedResolver(),
        settings=test_settings,
        today=lambda: TODAY,
    )


@pytest.fixture
def store() -> CountingStore:
    return CountingStore(seed_store())


@pytest.fixture
def service(store) -> QueryService:
    return make_service(store)
