# =============================================================================
# Request Context Middleware — Request IDs and Access Logging
# =============================================================================
#
# Assigns every request an id (reusing an incoming X-Request-ID), binds it
# to the logging context so all log lines for the request carry it, echoes
# it back in the response and logs method, path, status and elapsed time.
#
# Starlette middleware (not a FastAPI dependency) because it has to wrap
# the whole request lifecycle, including error responses.
# =============================================================================

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import (
    BaseHTTPMiddleware,
    RequestResponseEndpoint,
)
from starlette.requests import Request
from starlette.responses import Response

from finquery.log_context import request_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Endpoints to skip access logging (health check, docs)
_QUIET_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        incoming = request.headers.get(REQUEST_ID_HEADER, "").strip()
        request_id = incoming[:64] or uuid.uuid4().hex[:16]
        request.state.request_id = request_id

        with request_context(request_id):
            start_time = time.monotonic()
            response = await call_next(request)
            elapsed_ms = (time.monotonic() - start_time) * 1000

            response.headers[REQUEST_ID_HEADER] = request_id
            if request.url.path not in _QUIET_PATHS:
                logger.info(
                    "%s %s → %d (%.1fms)",
                    request.method, request.url.path,
                    response.status_code, elapsed_ms,
                )
        return response
