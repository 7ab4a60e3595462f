# =============================================================================
# Unit Tests — Execution Engine
# =============================================================================
#
# Runs invocation batches against the seeded in-memory store:
#   - bounded concurrency and result ordering
#   - $ref dependencies between calls
#   - one failing call does not abort the batch
#   - batch timeout and caller cancellation
# =============================================================================

from __future__ import annotations

import asyncio

import pytest

from finquery.agents.engine import ExecutionEngine, lookup_path
from finquery.agents.resolver import REF_KEY, FunctionInvocation
from tests.conftest import TODAY, USER, CountingStore, seed_store


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _call(order: int, name: str, depends_on=(), **arguments) -> FunctionInvocation:
    return FunctionInvocation(name=name, arguments=arguments, order=order, depends_on=depends_on)


class TrackingStore(CountingStore):
    """Counts how many store calls are in flight at once."""

    def __init__(self, inner, delay: float = 0.02) -> None:
        super().__init__(inner, delay=delay)
        self.in_flight = 0
        self.max_in_flight = 0

    async def _call(self, method: str, *args, **kwargs):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            return await super()._call(method, *args, **kwargs)
        finally:
            self.in_flight -= 1


def _execute(store, invocations, **engine_kwargs):
    engine = ExecutionEngine(store, **engine_kwargs)
    return _run(engine.execute(invocations, USER, TODAY))


class TestExecution:
    def test_empty_batch(self):
        assert _execute(CountingStore(seed_store()), []) == []

    def test_category_total(self):
        results = _execute(CountingStore(seed_store()), [
            _call(0, "get_spending_by_category", category="Food & Dining", timeframe="last month"),
        ])
        assert results[0].success
        assert results[0].payload["total"] == 23.75
        assert results[0].payload["count"] == 3
        assert results[0].payload["window"]["start"] == "2025-05-01"

    def test_results_in_invocation_order(self):
        invocations = [
            _call(i, "get_spending_by_time", timeframe=tf)
            for i, tf in enumerate(["last month", "this month", "last 7 days", "this year"])
        ]
        results = _execute(CountingStore(seed_store()), invocations)
        assert [r.order for r in results] == [0, 1, 2, 3]
        assert all(r.success for r in results)

    def test_concurrency_is_bounded(self):
        store = TrackingStore(seed_store())
        invocations = [
            _call(i, "get_spending_by_time", timeframe=f"last {i + 1} days")
            for i in range(6)
        ]
        results = _execute(store, invocations, max_concurrency=2)
        assert all(r.success for r in results)
        assert store.max_in_flight == 2

    def test_arguments_are_normalized(self):
        results = _execute(CountingStore(seed_store()), [
            _call(0, "summarize_top_vendors", timeframe="this year"),
        ])
        assert results[0].arguments == {"timeframe": "this year", "limit": 10}

    def test_invalid_arguments_recorded(self):
        results = _execute(CountingStore(seed_store()), [
            _call(0, "summarize_top_vendors", timeframe="this year", limit=500),
        ])
        assert not results[0].success
        assert results[0].error.reason == "invalid_arguments"


class TestDependencies:
    def _plan(self):
        return [
            _call(0, "summarize_top_categories", timeframe="this year", limit=1),
            _call(
                1, "get_spending_trends", depends_on=(0,),
                timeframe="this year", interval="month",
                category={REF_KEY: "0.items.0.category"},
            ),
        ]

    def test_reference_filled_from_upstream(self):
        results = _execute(CountingStore(seed_store()), self._plan())
        assert results[0].payload["items"][0]["category"] == "Shopping"
        assert results[1].success
        assert results[1].arguments["category"] == "Shopping"
        assert results[1].payload["category"] == "Shopping"

    def test_failed_upstream_skips_dependent(self):
        store = CountingStore(seed_store(), fail_when=lambda method, kw: method == "totals_by")
        results = _execute(store, self._plan())
        assert results[0].error.reason == "error"
        assert results[1].error.reason == "dependency"
        # the dependent never reached the store
        assert store.calls["totals_by"] == 1

    def test_bad_reference_path(self):
        plan = self._plan()
        plan[1] = _call(
            1, "get_spending_trends", depends_on=(0,),
            timeframe="this year", category={REF_KEY: "0.items.7.category"},
        )
        results = _execute(CountingStore(seed_store()), plan)
        assert results[0].success
        assert results[1].error.reason == "dependency"


class TestFailureIsolation:
    def test_one_failure_does_not_abort_batch(self):
        store = CountingStore(
            seed_store(),
            fail_when=lambda method, kw: kw.get("category") == "Groceries",
        )
        results = _execute(store, [
            _call(0, "get_spending_by_category", category="Food & Dining", timeframe="last month"),
            _call(1, "get_spending_by_category", category="Groceries", timeframe="last month"),
        ])
        assert results[0].success
        assert not results[1].success
        assert results[1].error.reason == "error"
        assert results[1].payload is None
        # no internal detail leaks into the recorded message
        assert "store unavailable" not in results[1].error.message


class TestTimeoutAndCancellation:
    def test_timeout_marks_outstanding_calls(self):
        store = CountingStore(seed_store(), delay=1.0)
        results = _execute(store, [
            _call(0, "get_spending_by_time", timeframe="last month"),
            _call(1, "get_spending_by_time", timeframe="this month"),
        ], timeout_seconds=0.05)
        assert [r.error.reason for r in results] == ["timeout", "timeout"]

    def test_on_result_sees_every_result(self):
        seen = []

        async def on_result(result):
            seen.append(result.order)

        async def main():
            engine = ExecutionEngine(CountingStore(seed_store()))
            return await engine.execute(
                [_call(0, "get_spending_by_time", timeframe="last month"),
                 _call(1, "get_spending_by_time", timeframe="this month")],
                USER, TODAY, on_result=on_result,
            )

        _run(main())
        assert sorted(seen) == [0, 1]

    def test_caller_cancellation_propagates(self):
        store = CountingStore(seed_store(), delay=1.0)

        async def main():
            engine = ExecutionEngine(store)
            task = asyncio.create_task(engine.execute(
                [_call(0, "get_spending_by_time", timeframe="last month")], USER, TODAY,
            ))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        _run(main())
        assert store.calls["total_spent"] == 1


class TestLookupPath:
    def test_nested(self):
        payload = {"items": [{"category": "Travel"}]}
        assert lookup_path(payload, "items.0.category") == "Travel"

    def test_missing_key(self):
        with pytest.raises(KeyError):
            lookup_path({"items": []}, "total")
