# =============================================================================
# Unit Tests — Streaming Encoder
# =============================================================================
#
# Event grammar, sequence numbers, chunking, NDJSON framing and the
# bounded queue that applies backpressure to the producer.
# =============================================================================

from __future__ import annotations

import asyncio
import json

import pytest

from finquery.agents.streaming import (
    QueueSink,
    StreamEncoder,
    StreamState,
    StreamStateError,
    TerminalSink,
    chunk_message,
    decode_ndjson,
    encode_ndjson,
)
from finquery.errors import StreamingTransportError
from finquery.models.responses import SynthesizedResponse

MESSAGE = "You spent $23.75 on Food & Dining last month (3 purchases)."


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class ListSink:
    def __init__(self) -> None:
        self.events = []

    async def put(self, event) -> None:
        self.events.append(event)


class TestChunking:
    def test_concatenation_is_lossless(self):
        for size in (1, 2, 3, 50):
            assert "".join(chunk_message(MESSAGE, size)) == MESSAGE

    def test_word_aligned(self):
        assert chunk_message("one two three", 2) == ["one two ", "three"]

    def test_empty_message(self):
        assert chunk_message("", 3) == []


class TestEncoder:
    def test_happy_path_sequence(self):
        sink = ListSink()

        async def main():
            encoder = StreamEncoder("req-1", sink, chunk_words=4)
            await encoder.start()
            await encoder.function_calls([{"name": "get_spending_by_time"}])
            await encoder.function_result({"name": "get_spending_by_time", "success": True})
            await encoder.content(MESSAGE)
            await encoder.complete(SynthesizedResponse(message=MESSAGE))
            return encoder

        encoder = _run(main())
        types = [e.type for e in sink.events]
        assert types[0] == "start"
        assert types[1:3] == ["function_calls", "function_result"]
        assert types[-1] == "complete"
        assert [e.seq for e in sink.events] == list(range(len(sink.events)))
        assert all(e.request_id == "req-1" for e in sink.events)
        deltas = [e.delta for e in sink.events if e.type == "content_delta"]
        assert "".join(deltas) == MESSAGE
        assert encoder.state is StreamState.COMPLETE

    def test_content_before_start_rejected(self):
        encoder = StreamEncoder("req-1", ListSink())
        with pytest.raises(StreamStateError):
            _run(encoder.content("hi"))

    def test_nothing_after_complete(self):
        async def main():
            encoder = StreamEncoder("req-1", ListSink())
            await encoder.start()
            await encoder.complete(SynthesizedResponse(message="done"))
            await encoder.fail("timeout", "late")

        with pytest.raises(StreamStateError):
            _run(main())

    def test_fail_from_idle(self):
        sink = ListSink()

        async def main():
            encoder = StreamEncoder("req-1", sink)
            await encoder.fail("auth_required", "sign in")
            return encoder

        encoder = _run(main())
        assert encoder.finished
        assert sink.events[0].type == "error"
        assert sink.events[0].seq == 0

    def test_terminal_sink_keeps_last_event(self):
        sink = TerminalSink()

        async def main():
            encoder = StreamEncoder("req-1", sink)
            await encoder.start()
            await encoder.content(MESSAGE)
            await encoder.complete(SynthesizedResponse(message=MESSAGE))

        _run(main())
        assert sink.terminal.type == "complete"
        assert sink.terminal.response.message == MESSAGE


class TestNdjson:
    def test_one_camel_case_line(self):
        sink = ListSink()

        async def main():
            encoder = StreamEncoder("req-9", sink)
            await encoder.start()
            await encoder.complete(SynthesizedResponse(message="ok", execution_time=3.5))

        _run(main())
        line = encode_ndjson(sink.events[-1])
        assert line.endswith(b"\n")
        assert line.count(b"\n") == 1
        body = json.loads(line)
        assert body["requestId"] == "req-9"
        assert body["response"]["executionTime"] == 3.5
        assert "complete" not in body["response"]
        assert "error" not in body["response"]

    def test_decode_restores_event(self):
        sink = ListSink()

        async def main():
            encoder = StreamEncoder("req-9", sink)
            await encoder.start()
            await encoder.fail("timeout", "too slow")

        _run(main())
        decoded = decode_ndjson(encode_ndjson(sink.events[-1]))
        assert decoded.type == "error"
        assert decoded.error.code == "timeout"
        assert decoded.seq == 1


class TestQueueSink:
    def test_full_queue_blocks_producer(self):
        async def main():
            sink = QueueSink(maxsize=2)
            encoder = StreamEncoder("req-1", sink, chunk_words=1)
            producer = asyncio.create_task(encoder.start())
            await asyncio.sleep(0)
            await producer

            producer = asyncio.create_task(encoder.content("a b c d e"))
            await asyncio.sleep(0.01)
            blocked = not producer.done()
            size_while_blocked = sink.qsize()

            received = []
            while len(received) < 6:
                received.append(await sink.get())
            await producer
            return blocked, size_while_blocked, received

        blocked, size, received = _run(main())
        assert blocked
        assert size == 2
        assert [e.seq for e in received] == [0, 1, 2, 3, 4, 5]

    def test_closed_sink_raises_transport_error(self):
        async def main():
            sink = QueueSink(maxsize=4)
            encoder = StreamEncoder("req-1", sink)
            await encoder.start()
            sink.close()
            await encoder.content("more text")

        with pytest.raises(StreamingTransportError):
            _run(main())
