# =============================================================================
# Error Taxonomy — Query Pipeline Failures
# =============================================================================
#
# Every failure the pipeline can surface to a caller is a subclass of
# QueryServiceError carrying a stable `code`, an HTTP `status_code`, and a
# `public_message` that is safe to show (no internal detail).
#
#   AuthRequired             401  no/expired session, not retried
#   RateLimited              429  carries retry guidance
#   UnresolvableQuery        —    absorbed: 200 with a clarifying message
#   FunctionExecutionFailed  —    absorbed: recorded on the FunctionResult
#   PipelineTimeout          408  wall-clock budget exceeded
#   StreamingTransportError  —    consumer disconnected, nothing to send
#   InternalError            500  anything unexpected
#
# Handlers in finquery.main render these as the standard response body;
# the streaming path turns them into the terminal `error` event.
# =============================================================================

from __future__ import annotations


class QueryServiceError(Exception):
    """Base class for errors surfaced by the query service."""

    code: str = "internal_error"
    status_code: int = 500
    public_message: str = (
        "I encountered an error while processing your request. "
        "Please try again or rephrase your question."
    )

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message

    def headers(self) -> dict[str, str]:
        return {}


class AuthRequired(QueryServiceError):
    code = "auth_required"
    status_code = 401
    public_message = "Authentication required. Please sign in again."

    def headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class RateLimited(QueryServiceError):
    code = "rate_limited"
    status_code = 429
    public_message = "Rate limit exceeded. Please wait before retrying."

    def __init__(
        self,
        retry_after: int,
        limit: int,
        reset_at: int,
        detail: str | None = None,
    ) -> None:
        super().__init__(detail)
        self.retry_after = retry_after
        self.limit = limit
        self.reset_at = reset_at

    def headers(self) -> dict[str, str]:
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(self.reset_at),
        }


class UnresolvableQuery(QueryServiceError):
    code = "unresolvable_query"
    status_code = 200
    public_message = (
        "I couldn't match that to your spending data. Try asking about "
        "spending by category, merchant, or time period."
    )


class FunctionExecutionFailed(QueryServiceError):
    code = "function_execution_failed"
    status_code = 200

    def __init__(self, function_name: str, detail: str | None = None) -> None:
        super().__init__(detail or f"Failed to execute {function_name}")
        self.function_name = function_name


class PipelineTimeout(QueryServiceError):
    code = "timeout"
    status_code = 408
    public_message = (
        "Your request took too long to process. Please try a narrower "
        "question or try again shortly."
    )


class StreamingTransportError(QueryServiceError):
    code = "stream_disconnected"
    status_code = 499
    public_message = "The client disconnected before the response completed."


class InternalError(QueryServiceError):
    code = "internal_error"
    status_code = 500
