# =============================================================================
# API Dependencies — Session Auth, Rate Limits, Service Singleton
# =============================================================================
#
# 1. get_current_user()   — Bearer session token → user id
# 2. query_rate_limit / monitoring_rate_limit / load_test_rate_limit
#                         — sliding-window check per user and route scope
# 3. get_query_service()  — process-wide QueryService
#
# DESIGN DECISION: FastAPI dependencies (not middleware) for auth, so each
# endpoint opts in and tests can swap them with dependency_overrides.
#
# HTTPBearer(auto_error=False): with auth disabled a missing header is not
# an error, and with auth enabled we raise AuthRequired ourselves so the
# response uses the standard error body.
# =============================================================================

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from finquery.agents.orchestrator import QueryService
from finquery.config import settings
from finquery.db.engine import get_async_session
from finquery.db.models import UserSession
from finquery.errors import AuthRequired
from finquery.services.auth import hash_session_token, session_expired
from finquery.services.rate_limiter import RateLimitStatus, check_rate_limit

logger = logging.getLogger(__name__)

# Security scheme for OpenAPI docs (shows "Authorize" button in Swagger UI)
_bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    session: AsyncSession = Depends(get_async_session),
) -> str:
    """
    Resolve the requesting user from the session token.

    When auth_enabled=False every request runs as settings.dev_user_id.
    When auth_enabled=True the token is SHA-256 hashed and looked up in
    user_sessions; missing, unknown, inactive or expired → AuthRequired.
    """
    if not settings.auth_enabled:
        request.state.user_id = settings.dev_user_id
        return settings.dev_user_id

    if credentials is None:
        raise AuthRequired("Missing 'Authorization: Bearer <token>' header")

    token_hash = hash_session_token(credentials.credentials)
    result = await session.execute(
        select(UserSession).where(UserSession.token_hash == token_hash)
    )
    user_session = result.scalar_one_or_none()

    if user_session is None:
        raise AuthRequired("Unknown session token")
    if not user_session.is_active:
        raise AuthRequired(f"Session {user_session.token_prefix} is inactive")
    if session_expired(user_session.expires_at):
        raise AuthRequired(f"Session {user_session.token_prefix} has expired")

    user_session.last_used_at = datetime.now(UTC)
    request.state.user_id = user_session.user_id
    return user_session.user_id


# ---------------------------------------------------------------------------
# Rate limits
# ---------------------------------------------------------------------------
# The returned status carries the X-RateLimit-* headers; endpoints attach
# them to whatever response they build. Exceeding the limit raises
# RateLimited, rendered by the app's exception handler.
# ---------------------------------------------------------------------------


def _rate_limit(scope: str):
    async def dependency(
        user_id: str = Depends(get_current_user),
    ) -> RateLimitStatus | None:
        return await check_rate_limit(user_id, scope)

    dependency.__name__ = f"{scope}_rate_limit"
    return dependency


query_rate_limit = _rate_limit("query")
monitoring_rate_limit = _rate_limit("monitoring")
load_test_rate_limit = _rate_limit("load_test")


def rate_limit_headers(status: RateLimitStatus | None) -> dict[str, str]:
    return status.headers() if status else {}


# ---------------------------------------------------------------------------
# QueryService singleton
# ---------------------------------------------------------------------------

_query_service: QueryService | None = None


def get_query_service() -> QueryService:
    """Lazily build the process-wide QueryService (cache + monitor live here)."""
    global _query_service
    if _query_service is None:
        _query_service = QueryService()
        logger.info(
            "QueryService ready: store=%s resolver=%s cache_ttl=%ss",
            type(_query_service.store).__name__,
            type(_query_service.resolver).__name__,
            _query_service.cache.ttl_seconds,
        )
    return _query_service
