# =============================================================================
# LangGraph Orchestrator — Query Pipeline and QueryService Entry Point
# =============================================================================
#
# GRAPH TOPOLOGY:
#
#   START ──▶ resolve ──┬──▶ execute ──▶ synthesize ──▶ END
#                       └──────────────▶ synthesize          (no invocations)
#
#   resolve     request → canonical invocation list (or unresolvable)
#   execute     runs the plan under the plan-keyed single flight; the plan
#               computation executes the calls and composes the response
#   synthesize  composes the greeting / clarification answer when execute
#               was skipped
#
# QueryService wraps the graph with everything that surrounds one request:
#
#   encoder.start
#   └── query-keyed cache.get_or_compute (pipeline_timeout_seconds)
#       └── graph.ainvoke
#   encoder.content + encoder.complete
#   monitor.record_request                   (every outcome)
#
# The same pipeline serves both delivery modes: answer() runs it into a
# TerminalSink, stream() runs it as a task feeding a QueueSink.
#
# Graph compiled once at module level. Collaborators (resolver, engine,
# cache, encoder) travel in the state; no checkpointer is configured, so
# the state never needs to be serialisable.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable
from datetime import date

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from finquery.agents.engine import ExecutionEngine, FunctionResult
from finquery.agents.resolver import (
    FunctionInvocation,
    IntentResolver,
    get_intent_resolver,
    resolve,
)
from finquery.agents.streaming import (
    TERMINAL_TYPES,
    QueueSink,
    StreamEncoder,
    TerminalSink,
)
from finquery.agents.synthesizer import clarify, synthesize
from finquery.config import Settings, settings as default_settings
from finquery.errors import (
    InternalError,
    PipelineTimeout,
    QueryServiceError,
    StreamingTransportError,
    UnresolvableQuery,
)
from finquery.log_context import clip_text, request_context
from finquery.models.requests import QueryRequest
from finquery.models.responses import StreamEvent, SynthesizedResponse
from finquery.services.cache import ResponseCache, plan_fingerprint, query_fingerprint
from finquery.services.monitor import PerformanceMonitor
from finquery.services.receipt_store import ReceiptStore, get_receipt_store

logger = logging.getLogger(__name__)

PARTIAL_RESULTS = "partial_results"


# ---------------------------------------------------------------------------
# Pipeline State Schema
# ---------------------------------------------------------------------------


class PipelineState(TypedDict, total=False):
    """
    State that flows through the graph.

    total=False so nodes only return the keys they update.
    """

    # --- Input (set by QueryService) ---
    request: QueryRequest
    today: date

    # --- Collaborators ---
    resolver: IntentResolver
    engine: ExecutionEngine
    cache: ResponseCache
    monitor: PerformanceMonitor
    encoder: StreamEncoder

    # --- Intermediate ---
    invocations: list[FunctionInvocation]
    unresolvable: bool

    # --- Output ---
    response: SynthesizedResponse


def compose_response(results: list[FunctionResult], query: str) -> SynthesizedResponse:
    """Results → SynthesizedResponse (not yet timed, not cached)."""
    synthesis = synthesize(results, query=query)
    return SynthesizedResponse(
        message=synthesis.message,
        data=[r.to_dict() for r in results],
        insights=synthesis.insights,
        complete=synthesis.complete,
        error=None if synthesis.complete else PARTIAL_RESULTS,
    )


# ---------------------------------------------------------------------------
# Node Functions
# ---------------------------------------------------------------------------


async def resolve_node(state: PipelineState) -> dict:
    request = state["request"]
    try:
        invocations = await resolve(request, state["today"], state.get("resolver"))
    except UnresolvableQuery as e:
        logger.info("Unresolvable query: %s", e.detail)
        return {"invocations": [], "unresolvable": True}

    if invocations:
        await state["encoder"].function_calls([inv.to_dict() for inv in invocations])
    return {"invocations": invocations, "unresolvable": False}


def route_after_resolve(state: PipelineState) -> str:
    if state.get("unresolvable") or not state.get("invocations"):
        return "synthesize"
    return "execute"


async def execute_node(state: PipelineState) -> dict:
    request = state["request"]
    invocations = state["invocations"]
    encoder = state["encoder"]
    monitor = state["monitor"]

    async def forward(result: FunctionResult) -> None:
        monitor.record_request(
            result.duration_ms,
            success=result.success,
            user_id=request.user_id,
            error=result.error.reason if result.error else None,
            operation=f"function:{result.name}",
        )
        await encoder.function_result(result.to_dict())

    async def run_plan() -> SynthesizedResponse:
        results = await state["engine"].execute(
            invocations, request.user_id, today=state["today"], on_result=forward,
        )
        return compose_response(results, request.query)

    response, shared = await state["cache"].get_or_compute(
        plan_fingerprint(request.user_id, invocations), run_plan,
    )
    if shared:
        logger.info("Plan shared with an earlier identical plan")
        response = response.model_copy(update={"cached": True})
    return {"response": response}


async def synthesize_node(state: PipelineState) -> dict:
    if state.get("response") is not None:
        return {"response": state["response"]}
    if state.get("unresolvable"):
        synthesis = clarify()
    else:
        synthesis = synthesize([], query=state["request"].query)
    return {
        "response": SynthesizedResponse(
            message=synthesis.message,
            insights=synthesis.insights,
            complete=synthesis.complete,
        )
    }


# ---------------------------------------------------------------------------
# Graph Assembly
# ---------------------------------------------------------------------------

_builder = StateGraph(PipelineState)
_builder.add_node("resolve", resolve_node)
_builder.add_node("execute", execute_node)
_builder.add_node("synthesize", synthesize_node)

_builder.add_edge(START, "resolve")
_builder.add_conditional_edges(
    "resolve",
    route_after_resolve,
    {"execute": "execute", "synthesize": "synthesize"},
)
_builder.add_edge("execute", "synthesize")
_builder.add_edge("synthesize", END)

graph = _builder.compile()


# ---------------------------------------------------------------------------
# QueryService
# ---------------------------------------------------------------------------


def new_request_id() -> str:
    return uuid.uuid4().hex[:16]


def _consume_result(task: asyncio.Task) -> None:
    # Failures were already emitted as the terminal error event
    if not task.cancelled():
        task.exception()


class QueryService:
    """
    Entry point for answering spending questions.

    One instance per process (see finquery.api.deps.get_query_service);
    tests build their own with an in-memory store and a fixed `today`.
    """

    def __init__(
        self,
        store: ReceiptStore | None = None,
        cache: ResponseCache | None = None,
        monitor: PerformanceMonitor | None = None,
        resolver: IntentResolver | None = None,
        settings: Settings | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.settings = settings or default_settings
        self.store = store or get_receipt_store()
        self.cache = cache or ResponseCache(
            ttl_seconds=self.settings.cache_ttl_seconds,
            enabled=self.settings.cache_enabled,
        )
        self.monitor = monitor or PerformanceMonitor(cache=self.cache)
        self.resolver = resolver or get_intent_resolver(self.settings.resolver_backend)
        self.engine = ExecutionEngine(
            self.store,
            max_concurrency=self.settings.max_concurrent_functions,
            timeout_seconds=self.settings.execution_timeout_seconds,
        )
        self._today = today

    async def answer(
        self,
        request: QueryRequest,
        request_id: str | None = None,
    ) -> SynthesizedResponse:
        """Non-streaming delivery. Raises QueryServiceError on failure."""
        encoder = StreamEncoder(request_id or new_request_id(), TerminalSink())
        return await self._run(request, encoder)

    async def stream(
        self,
        request: QueryRequest,
        request_id: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Streaming delivery: yields events until complete/error.

        Closing the iterator early (client disconnect) cancels the pipeline
        task and with it every in-flight function call.
        """
        sink = QueueSink(self.settings.stream_buffer_size)
        encoder = StreamEncoder(
            request_id or new_request_id(), sink,
            chunk_words=self.settings.stream_chunk_words,
        )
        task = asyncio.create_task(self._run(request, encoder))
        task.add_done_callback(_consume_result)
        try:
            while True:
                event = await sink.get()
                yield event
                if event.type in TERMINAL_TYPES:
                    break
        finally:
            sink.close()
            if not task.done():
                logger.info("Stream %s closed early; cancelling pipeline", encoder.request_id)
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    def clear_cache(self, user_id: str) -> int:
        return self.cache.clear_user(user_id)

    # --- pipeline -----------------------------------------------------------

    async def _compute(self, request: QueryRequest, encoder: StreamEncoder) -> SynthesizedResponse:
        state: PipelineState = {
            "request": request,
            "today": self._today(),
            "resolver": self.resolver,
            "engine": self.engine,
            "cache": self.cache,
            "monitor": self.monitor,
            "encoder": encoder,
        }
        final = await graph.ainvoke(state)
        return final["response"]

    async def _run(self, request: QueryRequest, encoder: StreamEncoder) -> SynthesizedResponse:
        started = time.perf_counter()

        def elapsed_ms() -> float:
            return round((time.perf_counter() - started) * 1000, 1)

        with request_context(encoder.request_id):
            logger.info(
                "Query from %s: '%s' (streaming=%s)",
                request.user_id, clip_text(request.query), request.streaming,
            )
            try:
                await encoder.start()
                try:
                    async with asyncio.timeout(self.settings.pipeline_timeout_seconds):
                        response, shared = await self.cache.get_or_compute(
                            query_fingerprint(request),
                            lambda: self._compute(request, encoder),
                        )
                except TimeoutError as e:
                    raise PipelineTimeout(
                        f"Pipeline exceeded {self.settings.pipeline_timeout_seconds:g}s"
                    ) from e

                response = response.model_copy(update={
                    "cached": shared or response.cached,
                    "execution_time": elapsed_ms(),
                })
                await encoder.content(response.message)
                await encoder.complete(response)

            except asyncio.CancelledError:
                self.monitor.record_request(
                    elapsed_ms(), success=False, user_id=request.user_id, error="cancelled",
                )
                raise

            except QueryServiceError as e:
                logger.warning("Query failed with %s: %s", e.code, e.detail)
                self.monitor.record_request(
                    elapsed_ms(), success=False, user_id=request.user_id, error=e.code,
                )
                await self._fail(encoder, e)
                raise

            except Exception as e:
                logger.exception("Unexpected pipeline failure")
                error = InternalError(str(e))
                self.monitor.record_request(
                    elapsed_ms(), success=False, user_id=request.user_id, error=error.code,
                )
                await self._fail(encoder, error)
                raise error from e

            self.monitor.record_request(
                response.execution_time,
                success=True,
                cache_hit=response.cached,
                user_id=request.user_id,
            )
            logger.info(
                "Answered in %.1fms (cached=%s, complete=%s)",
                response.execution_time, response.cached, response.complete,
            )
            return response

    @staticmethod
    async def _fail(encoder: StreamEncoder, error: QueryServiceError) -> None:
        if isinstance(error, StreamingTransportError):
            return
        if not encoder.finished:
            await encoder.fail(error.code, error.public_message)
