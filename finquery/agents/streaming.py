# =============================================================================
# Streaming Encoder — Event State Machine and NDJSON Framing
# =============================================================================
#
# One StreamEncoder per request. It stamps every event with `seq` and
# `request_id` and enforces the event grammar:
#
#   IDLE ──start──▶ STARTED ──(content_delta | function_calls |
#                              function_result)*──▶ COMPLETE
#     │                │
#     └──── fail ──────┴──────────────────────────▶ ERROR
#
# COMPLETE and ERROR are terminal; anything after them raises
# StreamStateError.
#
# Sinks:
#   QueueSink     bounded asyncio.Queue; a full queue blocks the producer
#                 until the HTTP consumer catches up. Once closed, put()
#                 raises StreamingTransportError
#   TerminalSink  keeps only the terminal event; the non-streaming path
#                 runs the same encoder into one of these
# =============================================================================

from __future__ import annotations

import asyncio
import enum
import logging
import re
from typing import Any, Protocol

from pydantic import TypeAdapter

from finquery.config import settings
from finquery.errors import StreamingTransportError
from finquery.models.responses import (
    CompleteEvent,
    ContentDeltaEvent,
    ErrorEvent,
    FunctionCallsEvent,
    FunctionResultEvent,
    StartEvent,
    StreamErrorDetail,
    StreamEvent,
    SynthesizedResponse,
)

logger = logging.getLogger(__name__)

TERMINAL_TYPES = frozenset({"complete", "error"})

_TOKEN_RE = re.compile(r"\S+\s*|\s+")

stream_event_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


class StreamState(str, enum.Enum):
    IDLE = "idle"
    STARTED = "started"
    COMPLETE = "complete"
    ERROR = "error"


class StreamStateError(RuntimeError):
    """An event was emitted out of order."""


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class EventSink(Protocol):
    async def put(self, event: StreamEvent) -> None:
        ...


class QueueSink:
    """Bounded hand-off between the pipeline task and the HTTP response."""

    def __init__(self, maxsize: int | None = None) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize or settings.stream_buffer_size)
        self.closed = False

    async def put(self, event: StreamEvent) -> None:
        if self.closed:
            raise StreamingTransportError(f"Consumer gone before event {event.seq}")
        await self._queue.put(event)

    def close(self) -> None:
        """Called when the consumer stops reading."""
        self.closed = True

    async def get(self) -> StreamEvent:
        return await self._queue.get()

    def qsize(self) -> int:
        return self._queue.qsize()


class TerminalSink:
    """Discards everything but the final complete/error event."""

    def __init__(self) -> None:
        self.terminal: StreamEvent | None = None

    async def put(self, event: StreamEvent) -> None:
        if event.type in TERMINAL_TYPES:
            self.terminal = event


# ---------------------------------------------------------------------------
# Encoder
# ---------------------------------------------------------------------------


def chunk_message(message: str, words_per_chunk: int) -> list[str]:
    """Split into word-aligned chunks whose concatenation is `message`."""
    tokens = [m.group(0) for m in _TOKEN_RE.finditer(message)]
    size = max(1, words_per_chunk)
    return ["".join(tokens[i:i + size]) for i in range(0, len(tokens), size)]


class StreamEncoder:
    def __init__(
        self,
        request_id: str,
        sink: EventSink,
        chunk_words: int | None = None,
    ) -> None:
        self.request_id = request_id
        self._sink = sink
        self._chunk_words = chunk_words or settings.stream_chunk_words
        self._seq = 0
        self._state = StreamState.IDLE

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def finished(self) -> bool:
        return self._state in (StreamState.COMPLETE, StreamState.ERROR)

    def _require(self, *allowed: StreamState, event: str) -> None:
        if self._state not in allowed:
            raise StreamStateError(
                f"Cannot emit {event} in state {self._state.value}"
            )

    async def _emit(self, event_cls: type, **fields: Any) -> None:
        event = event_cls(seq=self._seq, request_id=self.request_id, **fields)
        self._seq += 1
        await self._sink.put(event)

    async def start(self) -> None:
        self._require(StreamState.IDLE, event="start")
        self._state = StreamState.STARTED
        await self._emit(StartEvent)

    async def function_calls(self, calls: list[dict[str, Any]]) -> None:
        self._require(StreamState.STARTED, event="function_calls")
        await self._emit(FunctionCallsEvent, calls=calls)

    async def function_result(self, result: dict[str, Any]) -> None:
        self._require(StreamState.STARTED, event="function_result")
        await self._emit(FunctionResultEvent, result=result)

    async def content(self, message: str) -> None:
        self._require(StreamState.STARTED, event="content_delta")
        for delta in chunk_message(message, self._chunk_words):
            await self._emit(ContentDeltaEvent, delta=delta)

    async def complete(self, response: SynthesizedResponse) -> None:
        self._require(StreamState.STARTED, event="complete")
        self._state = StreamState.COMPLETE
        await self._emit(CompleteEvent, response=response)

    async def fail(self, code: str, message: str) -> None:
        self._require(StreamState.IDLE, StreamState.STARTED, event="error")
        self._state = StreamState.ERROR
        logger.info("Stream %s ended with error %s", self.request_id, code)
        await self._emit(ErrorEvent, error=StreamErrorDetail(code=code, message=message))


def encode_ndjson(event: StreamEvent) -> bytes:
    """One event as a single JSON line."""
    return event.model_dump_json(by_alias=True, exclude_none=True).encode() + b"\n"


def decode_ndjson(line: bytes | str) -> StreamEvent:
    return stream_event_adapter.validate_json(line)
