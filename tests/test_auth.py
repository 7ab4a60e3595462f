# =============================================================================
# Unit Tests — Session Auth & Rate Limiting
# =============================================================================
#
# Tests auth components without requiring Redis, PostgreSQL or a running API.
# Uses mocking for external dependencies (Redis pipeline, DB session).
#
# Test groups:
#   1. Session token generation & hashing (pure functions)
#   2. Auth dependency (get_current_user)
#   3. Rate limiter (check_rate_limit)
# =============================================================================

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from finquery.errors import AuthRequired, RateLimited
from finquery.services.auth import (
    generate_session_token,
    hash_session_token,
    session_expired,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# 1. Token Generation & Hashing
# ---------------------------------------------------------------------------


class TestSessionTokens:
    """Tests for session token generation and hashing."""

    def test_token_format(self):
        """Generated token is 'st-' + 64 hex chars."""
        raw_token, prefix, token_hash = generate_session_token()
        assert raw_token.startswith("st-")
        assert len(raw_token) == 67
        assert prefix == raw_token[:8]

    def test_hash_is_64_hex(self):
        _, _, token_hash = generate_session_token()
        assert len(token_hash) == 64
        int(token_hash, 16)

    def test_tokens_are_unique(self):
        raw1, _, hash1 = generate_session_token()
        raw2, _, hash2 = generate_session_token()
        assert raw1 != raw2
        assert hash1 != hash2

    def test_hash_is_deterministic(self):
        assert hash_session_token("st-abc") == hash_session_token("st-abc")
        assert hash_session_token("st-abc") != hash_session_token("st-abd")

    def test_expiry(self):
        now = datetime(2025, 6, 15, 12, 0, tzinfo=UTC)
        assert session_expired(None, now) is False
        assert session_expired(now - timedelta(seconds=1), now) is True
        assert session_expired(now + timedelta(hours=1), now) is False

    def test_naive_expiry_treated_as_utc(self):
        now = datetime(2025, 6, 15, 12, 0, tzinfo=UTC)
        assert session_expired(datetime(2025, 6, 15, 11, 0), now) is True


# ---------------------------------------------------------------------------
# Helpers — lightweight fakes for auth dependency tests
# ---------------------------------------------------------------------------


@dataclass
class FakeUserSession:
    """Lightweight stand-in for the UserSession ORM model."""

    user_id: str = "user-42"
    token_prefix: str = "st-test0"
    token_hash: str = ""
    is_active: bool = True
    expires_at: datetime | None = None
    last_used_at: datetime | None = None


@dataclass
class FakeCredentials:
    """Stand-in for HTTPAuthorizationCredentials."""

    credentials: str = "st-testtoken"


class FakeRequestState:
    """Writable request.state."""

    pass


class FakeRequest:
    """Minimal Request stand-in."""

    def __init__(self):
        self.state = FakeRequestState()


def _session_returning(user_session) -> AsyncMock:
    mock_session = AsyncMock()
    mock_result = MagicMock()
    mock_result.scalar_one_or_none.return_value = user_session
    mock_session.execute.return_value = mock_result
    return mock_session


# ---------------------------------------------------------------------------
# 2. Auth Dependency (get_current_user)
# ---------------------------------------------------------------------------


class TestGetCurrentUser:
    """Tests for the get_current_user dependency."""

    def test_auth_disabled_uses_dev_user(self):
        from finquery.api.deps import get_current_user

        request = FakeRequest()
        with patch("finquery.api.deps.settings") as mock_settings:
            mock_settings.auth_enabled = False
            mock_settings.dev_user_id = "dev-user"
            result = _run(get_current_user(
                request=request, credentials=None, session=AsyncMock(),
            ))
        assert result == "dev-user"
        assert request.state.user_id == "dev-user"

    def test_missing_credentials(self):
        from finquery.api.deps import get_current_user

        with patch("finquery.api.deps.settings") as mock_settings:
            mock_settings.auth_enabled = True
            with pytest.raises(AuthRequired):
                _run(get_current_user(
                    request=FakeRequest(), credentials=None, session=AsyncMock(),
                ))

    def test_unknown_token(self):
        from finquery.api.deps import get_current_user

        with patch("finquery.api.deps.settings") as mock_settings:
            mock_settings.auth_enabled = True
            with pytest.raises(AuthRequired) as exc_info:
                _run(get_current_user(
                    request=FakeRequest(),
                    credentials=FakeCredentials(),
                    session=_session_returning(None),
                ))
        assert exc_info.value.status_code == 401
        assert exc_info.value.headers() == {"WWW-Authenticate": "Bearer"}

    def test_inactive_session(self):
        from finquery.api.deps import get_current_user

        with patch("finquery.api.deps.settings") as mock_settings:
            mock_settings.auth_enabled = True
            with pytest.raises(AuthRequired) as exc_info:
                _run(get_current_user(
                    request=FakeRequest(),
                    credentials=FakeCredentials(),
                    session=_session_returning(FakeUserSession(is_active=False)),
                ))
        assert "inactive" in exc_info.value.detail

    def test_expired_session(self):
        from finquery.api.deps import get_current_user

        expired = FakeUserSession(expires_at=datetime.now(UTC) - timedelta(hours=1))
        with patch("finquery.api.deps.settings") as mock_settings:
            mock_settings.auth_enabled = True
            with pytest.raises(AuthRequired) as exc_info:
                _run(get_current_user(
                    request=FakeRequest(),
                    credentials=FakeCredentials(),
                    session=_session_returning(expired),
                ))
        assert "expired" in exc_info.value.detail

    def test_valid_session_returns_user(self):
        from finquery.api.deps import get_current_user

        user_session = FakeUserSession(expires_at=datetime.now(UTC) + timedelta(days=1))
        request = FakeRequest()
        with patch("finquery.api.deps.settings") as mock_settings:
            mock_settings.auth_enabled = True
            result = _run(get_current_user(
                request=request,
                credentials=FakeCredentials(),
                session=_session_returning(user_session),
            ))
        assert result == "user-42"
        assert request.state.user_id == "user-42"
        assert user_session.last_used_at is not None


# ---------------------------------------------------------------------------
# 3. Rate Limiter
# ---------------------------------------------------------------------------


def _redis_with_results(results: list) -> MagicMock:
    """Redis client whose pipeline returns `results` from execute()."""
    mock_pipe = MagicMock()
    mock_pipe.execute = AsyncMock(return_value=results)
    mock_redis = MagicMock()
    mock_redis.pipeline.return_value = mock_pipe
    return mock_redis


def _limiter_settings(mock_settings, rpm: int = 10) -> None:
    mock_settings.rate_limit_enabled = True
    mock_settings.rate_limit_rpm = rpm
    mock_settings.monitoring_rate_limit_rpm = 100
    mock_settings.load_test_rate_limit_rpm = 2


class TestRateLimiter:
    """Tests for the Redis-based rate limiter."""

    def test_disabled_skips(self):
        from finquery.services.rate_limiter import check_rate_limit

        with patch("finquery.services.rate_limiter.settings") as mock_settings:
            mock_settings.rate_limit_enabled = False
            assert _run(check_rate_limit("user-1")) is None

    def test_under_limit_returns_status(self):
        from finquery.services.rate_limiter import check_rate_limit

        oldest = 1_750_000_000.0
        redis = _redis_with_results([0, 5, 1, True, [("x", oldest)]])
        with (
            patch("finquery.services.rate_limiter.settings") as mock_settings,
            patch("finquery.services.rate_limiter._get_rate_limit_redis", return_value=redis),
        ):
            _limiter_settings(mock_settings)
            status = _run(check_rate_limit("user-1"))

        assert status.limit == 10
        assert status.remaining == 4
        assert status.reset_at == int(oldest + 60)
        assert status.headers()["X-RateLimit-Remaining"] == "4"

    def test_over_limit_raises(self):
        from finquery.services.rate_limiter import check_rate_limit

        redis = _redis_with_results([0, 10, 1, True, []])
        with (
            patch("finquery.services.rate_limiter.settings") as mock_settings,
            patch("finquery.services.rate_limiter._get_rate_limit_redis", return_value=redis),
        ):
            _limiter_settings(mock_settings)
            with pytest.raises(RateLimited) as exc_info:
                _run(check_rate_limit("user-1"))

        error = exc_info.value
        assert error.status_code == 429
        assert error.limit == 10
        assert error.retry_after >= 1
        assert error.headers()["Retry-After"] == str(error.retry_after)

    def test_scope_selects_limit(self):
        from finquery.services.rate_limiter import check_rate_limit

        redis = _redis_with_results([0, 2, 1, True, []])
        with (
            patch("finquery.services.rate_limiter.settings") as mock_settings,
            patch("finquery.services.rate_limiter._get_rate_limit_redis", return_value=redis),
        ):
            _limiter_settings(mock_settings)
            with pytest.raises(RateLimited):
                _run(check_rate_limit("user-1", scope="load_test"))
            assert _run(check_rate_limit("user-1", scope="monitoring")).limit == 100

    def test_redis_unavailable_allows_through(self):
        """When Redis is down, the request is allowed (graceful degradation)."""
        from finquery.services.rate_limiter import check_rate_limit

        with (
            patch("finquery.services.rate_limiter.settings") as mock_settings,
            patch(
                "finquery.services.rate_limiter._get_rate_limit_redis",
                side_effect=ConnectionError("Redis down"),
            ),
        ):
            _limiter_settings(mock_settings)
            assert _run(check_rate_limit("user-1")) is None
