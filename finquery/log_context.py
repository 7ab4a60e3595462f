# =============================================================================
# Logging Context — Request IDs on Every Log Line
# =============================================================================
#
# Carries the current request id through async code via a contextvar and
# injects it into every log record, so lines from concurrent requests can
# be told apart.
#
#   request_context()      binds an id for the current execution flow
#   RequestContextFilter   copies it onto each LogRecord as %(request_id)s
#   setup_logging()        root handler with LOG_FORMAT (idempotent)
#   clip_text()            single-line, length-capped previews for logs
# =============================================================================

from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from typing import Any

_request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "request_id", default="-",
)

LOG_FORMAT = (
    "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"
)


class RequestContextFilter(logging.Filter):
    """Inject the current request id into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id_var.get()
        return True


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger with request-id aware formatting."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers:
        if getattr(handler, "_finquery_handler", False):
            return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RequestContextFilter())
    handler._finquery_handler = True  # type: ignore[attr-defined]
    root_logger.addHandler(handler)


@contextmanager
def request_context(request_id: str):
    """Temporarily bind a request id for the current execution flow."""
    token = _request_id_var.set(request_id)
    try:
        yield
    finally:
        _request_id_var.reset(token)


def clip_text(value: Any, max_len: int = 80) -> str:
    """Stringify and clip text to keep logs readable."""
    if value is None:
        return ""
    text = str(value).replace("\n", " ").replace("\r", " ").strip()
    if len(text) <= max_len:
        return text
    if max_len <= 3:
        return text[:max_len]
    return text[: max_len - 3] + "..."
