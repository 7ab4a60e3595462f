# =============================================================================
# Rate Limiter — Redis-Based Sliding Window per Requester and Scope
# =============================================================================
#
# Implements a sliding window counter using Redis sorted sets (ZSET).
# Each request adds an entry with its timestamp as the score. On each
# check, entries older than the window are pruned and the remaining
# count is compared against the limit.
#
# Scopes carry separate limits:
#   query       → settings.rate_limit_rpm
#   monitoring  → settings.monitoring_rate_limit_rpm
#   load_test   → settings.load_test_rate_limit_rpm
#
# If Redis is unavailable the request is allowed and a warning is logged.
#
# Uses Redis db 2.
# =============================================================================

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from finquery.config import settings
from finquery.errors import RateLimited

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60

# Lazy Redis connection
_redis_client = None


def _get_rate_limit_redis():
    """Lazily create and cache the async Redis client for rate limiting."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        _redis_client = aioredis.from_url(
            settings.rate_limit_redis_url,
            decode_responses=True,
        )
    return _redis_client


def limit_for_scope(scope: str) -> int:
    if scope == "monitoring":
        return settings.monitoring_rate_limit_rpm
    if scope == "load_test":
        return settings.load_test_rate_limit_rpm
    return settings.rate_limit_rpm


@dataclass(frozen=True)
class RateLimitStatus:
    """Outcome of a rate limit check, rendered as X-RateLimit-* headers."""

    limit: int
    remaining: int
    reset_at: int  # unix seconds

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }


async def check_rate_limit(identity: str, scope: str = "query") -> RateLimitStatus | None:
    """
    Check whether the request should be rate-limited.

    Args:
        identity: The requester (user id, or client address when anonymous).
        scope: Route scope selecting the per-minute limit.

    Returns:
        RateLimitStatus for the response headers, or None when limiting is
        disabled or Redis is unavailable.

    Raises:
        RateLimited: The requester exhausted the window for this scope.
    """
    if not settings.rate_limit_enabled:
        return None

    limit = limit_for_scope(scope)
    redis_key = f"ratelimit:{scope}:{identity}"

    try:
        r = _get_rate_limit_redis()
        now = time.time()
        window_start = now - WINDOW_SECONDS

        pipe = r.pipeline()
        # Remove entries outside the window
        pipe.zremrangebyscore(redis_key, 0, window_start)
        # Count entries in the window
        pipe.zcard(redis_key)
        # Add current request
        pipe.zadd(redis_key, {f"{now:.6f}": now})
        # Set TTL to auto-cleanup
        pipe.expire(redis_key, WINDOW_SECONDS + 10)
        # Oldest surviving entry decides when a slot frees up
        pipe.zrange(redis_key, 0, 0, withscores=True)
        results = await pipe.execute()
    except Exception as e:
        # Redis unavailable: allow the request through
        logger.warning(
            "Rate limiter unavailable (Redis error): %s. "
            "Allowing request through.",
            e,
        )
        return None

    current_count = results[1]  # zcard result
    oldest = results[4]
    oldest_score = oldest[0][1] if oldest else now
    reset_at = int(oldest_score + WINDOW_SECONDS)

    if current_count >= limit:
        retry_after = max(1, reset_at - int(now))
        logger.info(
            "Rate limit hit: scope=%s identity=%s count=%d limit=%d",
            scope, identity, current_count, limit,
        )
        raise RateLimited(
            retry_after=retry_after,
            limit=limit,
            reset_at=reset_at,
            detail=f"Rate limit exceeded. Limit: {limit} requests/minute.",
        )

    return RateLimitStatus(
        limit=limit,
        remaining=max(0, limit - current_count - 1),
        reset_at=reset_at,
    )
