# =============================================================================
# Execution Engine — Run Resolved Invocations Against the Receipt Store
# =============================================================================
#
# Takes the canonical invocation list and returns one FunctionResult per
# invocation, in invocation order.
#
#   - independent invocations run concurrently, at most
#     max_concurrent_functions at a time (asyncio.Semaphore)
#   - an invocation starts once everything in depends_on has finished;
#     {"$ref": "<order>.<path>"} arguments are filled from those payloads
#   - a failed dependency fails the dependent with reason "dependency"
#   - a failing call is recorded, the rest of the batch carries on
#   - the batch has a wall-clock budget; on expiry outstanding calls are
#     cancelled and recorded with reason "timeout"
#   - cancelling the caller cancels every in-flight call
#
# Results can be observed as they land through `on_result`, which the
# streaming pipeline uses to emit function_result events.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date
from typing import Any, Literal

from pydantic import ValidationError

from finquery.agents.resolver import REF_KEY, FunctionInvocation
from finquery.catalog import CATALOG
from finquery.config import settings
from finquery.errors import FunctionExecutionFailed
from finquery.services.receipt_store import ReceiptStore

logger = logging.getLogger(__name__)

FailureReason = Literal["error", "timeout", "cancelled", "dependency", "invalid_arguments"]


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FunctionError:
    reason: FailureReason
    message: str


@dataclass(frozen=True)
class FunctionResult:
    """Outcome of one invocation. `payload` is the result model as JSON."""

    name: str
    order: int
    arguments: dict[str, Any]
    success: bool
    payload: dict[str, Any] | None = None
    error: FunctionError | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "order": self.order,
            "arguments": self.arguments,
            "success": self.success,
            "payload": self.payload,
            "error": (
                {"reason": self.error.reason, "message": self.error.message}
                if self.error else None
            ),
            "duration_ms": round(self.duration_ms, 1),
        }


def _failed(
    inv: FunctionInvocation,
    reason: FailureReason,
    message: str,
    duration_ms: float = 0.0,
    arguments: dict[str, Any] | None = None,
) -> FunctionResult:
    return FunctionResult(
        name=inv.name,
        order=inv.order,
        arguments=inv.arguments if arguments is None else arguments,
        success=False,
        error=FunctionError(reason, message),
        duration_ms=duration_ms,
    )


# ---------------------------------------------------------------------------
# Reference resolution
# ---------------------------------------------------------------------------


def lookup_path(payload: Any, path: str) -> Any:
    """Follow a dotted path ("items.0.category") into a JSON payload."""
    value = payload
    for part in path.split(".") if path else ():
        if isinstance(value, list):
            value = value[int(part)]
        elif isinstance(value, dict):
            value = value[part]
        else:
            raise KeyError(part)
    return value


def resolve_refs(value: Any, results: dict[int, FunctionResult]) -> Any:
    """Replace every {"$ref": ...} in `value` with the referenced field."""
    if isinstance(value, dict):
        if set(value) == {REF_KEY}:
            head, _, path = str(value[REF_KEY]).partition(".")
            return lookup_path(results[int(head)].payload, path)
        return {k: resolve_refs(v, results) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_refs(v, results) for v in value]
    return value


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

ResultCallback = Callable[[FunctionResult], Awaitable[None]]


class ExecutionEngine:
    """Runs invocation batches for one store with shared limits."""

    def __init__(
        self,
        store: ReceiptStore,
        max_concurrency: int | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._store = store
        self._max_concurrency = max_concurrency or settings.max_concurrent_functions
        self._timeout = timeout_seconds or settings.execution_timeout_seconds

    async def execute(
        self,
        invocations: list[FunctionInvocation],
        user_id: str,
        today: date | None = None,
        on_result: ResultCallback | None = None,
    ) -> list[FunctionResult]:
        if not invocations:
            return []

        today = today or date.today()
        semaphore = asyncio.Semaphore(self._max_concurrency)
        pending = {inv.order: inv for inv in invocations}
        running: dict[asyncio.Task, int] = {}
        results: dict[int, FunctionResult] = {}
        started = time.perf_counter()

        async def land(result: FunctionResult) -> None:
            results[result.order] = result
            if on_result is not None:
                await on_result(result)

        try:
            async with asyncio.timeout(self._timeout):
                while pending or running:
                    progressed = False
                    for order, inv in list(pending.items()):
                        if any(d not in results for d in inv.depends_on):
                            continue
                        del pending[order]
                        progressed = True
                        failed = [d for d in inv.depends_on if not results[d].success]
                        if failed:
                            await land(_failed(
                                inv, "dependency",
                                f"Skipped: depends on failed call(s) {failed}",
                            ))
                            continue
                        task = asyncio.create_task(
                            self._run_one(inv, user_id, today, results, semaphore),
                        )
                        running[task] = order

                    if not running:
                        if pending and not progressed:
                            for inv in pending.values():
                                await land(_failed(inv, "dependency", "Missing dependency"))
                            pending.clear()
                        continue

                    done, _ = await asyncio.wait(
                        running, return_when=asyncio.FIRST_COMPLETED,
                    )
                    for task in done:
                        running.pop(task)
                        await land(task.result())

        except TimeoutError:
            elapsed = (time.perf_counter() - started) * 1000
            logger.warning(
                "Execution budget of %.1fs exceeded: cancelling %d running, "
                "%d not started",
                self._timeout, len(running), len(pending),
            )
            finished = [
                task for task in running
                if task.done() and not task.cancelled() and task.exception() is None
            ]
            for task in finished:
                running.pop(task)
            await _cancel_all(running)
            for task in finished:
                await land(task.result())
            by_order = {inv.order: inv for inv in invocations}
            for order in sorted([*running.values(), *pending]):
                inv = by_order[order]
                timed_out = _failed(
                    inv, "timeout",
                    f"{inv.name} did not finish within {self._timeout:g}s",
                    duration_ms=elapsed,
                )
                results[order] = timed_out
                if on_result is not None:
                    await on_result(timed_out)

        except asyncio.CancelledError:
            logger.info("Execution cancelled with %d calls in flight", len(running))
            await _cancel_all(running)
            raise

        return [results[inv.order] for inv in invocations]

    async def _run_one(
        self,
        inv: FunctionInvocation,
        user_id: str,
        today: date,
        results: dict[int, FunctionResult],
        semaphore: asyncio.Semaphore,
    ) -> FunctionResult:
        entry = CATALOG.get(inv.name)
        if entry is None:
            return _failed(inv, "invalid_arguments", f"Unknown function {inv.name}")

        try:
            arguments = resolve_refs(inv.arguments, results)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            return _failed(inv, "dependency", f"Could not resolve reference: {e}")

        try:
            args = entry.args_model.model_validate(arguments)
        except ValidationError as e:
            return _failed(
                inv, "invalid_arguments",
                f"Invalid arguments for {inv.name} ({e.error_count()} errors)",
                arguments=arguments,
            )
        arguments = args.model_dump(mode="json", exclude_none=True)

        async with semaphore:
            start = time.perf_counter()
            try:
                result = await entry.handler(self._store, user_id, args, today)
                payload = result.model_dump(mode="json")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                duration_ms = (time.perf_counter() - start) * 1000
                logger.warning(
                    "%s failed after %.1fms: %s", inv.name, duration_ms, e,
                )
                failure = FunctionExecutionFailed(inv.name)
                return _failed(
                    inv, "error", failure.detail,
                    duration_ms=duration_ms, arguments=arguments,
                )

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info("Executed %s in %.1fms", inv.name, duration_ms)
        return FunctionResult(
            name=inv.name,
            order=inv.order,
            arguments=arguments,
            success=True,
            payload=payload,
            duration_ms=duration_ms,
        )


async def _cancel_all(running: dict[asyncio.Task, int]) -> None:
    for task in running:
        task.cancel()
    await asyncio.gather(*running, return_exceptions=True)
