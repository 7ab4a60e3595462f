# =============================================================================
# Unit Tests — Logging Context & Error Headers
# =============================================================================

from __future__ import annotations

import logging

from finquery.errors import InternalError, PipelineTimeout, RateLimited
from finquery.log_context import RequestContextFilter, clip_text, request_context


def _record() -> logging.LogRecord:
    return logging.LogRecord("finquery.test", logging.INFO, __file__, 1, "msg", None, None)


class TestRequestContext:
    def test_filter_injects_bound_id(self):
        record = _record()
        with request_context("req-42"):
            assert RequestContextFilter().filter(record) is True
        assert record.request_id == "req-42"

    def test_id_reset_after_block(self):
        with request_context("outer"):
            with request_context("inner"):
                pass
            record = _record()
            RequestContextFilter().filter(record)
            assert record.request_id == "outer"

        record = _record()
        RequestContextFilter().filter(record)
        assert record.request_id == "-"


class TestClipText:
    def test_short_text_unchanged(self):
        assert clip_text("how much on food") == "how much on food"

    def test_newlines_flattened_and_clipped(self):
        assert clip_text("a\nb" + "c" * 100, max_len=10) == "a bcccc..."

    def test_none_is_empty(self):
        assert clip_text(None) == ""


class TestErrorHeaders:
    def test_plain_errors_have_no_headers(self):
        assert InternalError().headers() == {}
        assert PipelineTimeout().headers() == {}

    def test_rate_limited_headers(self):
        headers = RateLimited(retry_after=5, limit=60, reset_at=1_750_000_005).headers()
        assert headers["Retry-After"] == "5"
        assert headers["X-RateLimit-Limit"] == "60"
