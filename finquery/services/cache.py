# =============================================================================
# Response Cache — TTL Memoization with At-Most-One Computation per Key
# =============================================================================
#
# Stores SynthesizedResponses under a Fingerprint:
#
#   Fingerprint(user_id, "query", sha256(normalized query + filters [+ context]))
#   Fingerprint(user_id, "plan",  sha256(canonical invocation list))
#
# The "query" key short-circuits before resolution; the "plan" key lets two
# differently worded questions that resolve to the same calls share one
# execution.
#
# get_or_compute(key, compute):
#   - fresh entry            → (entry, True)
#   - computation in flight  → wait on it (asyncio.shield), → (result, True)
#   - otherwise              → become the leader, run compute(), store,
#                              resolve the in-flight future → (result, False)
#   If the leader is cancelled its waiters loop and one becomes the new
#   leader. If compute() raises, every waiter gets the same exception.
#
# Only complete responses are stored. All state lives on one event loop,
# so no locks are needed; the in-flight futures are the synchronization.
# =============================================================================

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

from finquery.config import settings
from finquery.models.requests import ConversationTurn, QueryRequest
from finquery.models.responses import SynthesizedResponse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Fingerprints
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Fingerprint:
    user_id: str
    kind: Literal["query", "plan"]
    digest: str


def normalize_query(text: str) -> str:
    """Lower-case, collapse whitespace, drop trailing ?.! punctuation."""
    collapsed = " ".join(text.lower().split())
    return collapsed.rstrip("?.!").strip()


def _digest(value: Any) -> str:
    encoded = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()


def fingerprint_for(
    user_id: str,
    normalized_query: str,
    filters: dict[str, str],
    context: tuple[ConversationTurn, ...] = (),
) -> Fingerprint:
    material: dict[str, Any] = {"query": normalized_query, "filters": filters}
    if context:
        material["context"] = _digest(
            [[turn.role, normalize_query(turn.content)] for turn in context]
        )
    return Fingerprint(user_id, "query", _digest(material))


def query_fingerprint(request: QueryRequest) -> Fingerprint:
    return fingerprint_for(
        request.user_id,
        normalize_query(request.query),
        request.filters.canonical(),
        request.context,
    )


def plan_fingerprint(user_id: str, invocations: list) -> Fingerprint:
    """Key for a canonical invocation list (FunctionInvocation objects)."""
    return Fingerprint(user_id, "plan", _digest([inv.to_dict() for inv in invocations]))


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


@dataclass
class _Entry:
    response: SynthesizedResponse
    created_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    size: int
    in_flight: int
    coalesced: int
    evictions: int
    ttl_seconds: float

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total * 100, 1) if total else 0.0


def _consume_exception(fut: asyncio.Future) -> None:
    # Marks the exception retrieved when no waiter attached
    if not fut.cancelled():
        fut.exception()


class ResponseCache:
    """In-process response cache for one event loop."""

    def __init__(
        self,
        ttl_seconds: float | None = None,
        enabled: bool | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.cache_ttl_seconds
        self.enabled = settings.cache_enabled if enabled is None else enabled
        self._clock = clock
        self._entries: dict[Fingerprint, _Entry] = {}
        self._inflight: dict[Fingerprint, asyncio.Future] = {}
        self._hits = 0
        self._misses = 0
        self._coalesced = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    # --- basic operations -------------------------------------------------

    def lookup(self, key: Fingerprint) -> SynthesizedResponse | None:
        if not self.enabled:
            return None
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if entry.expired(self._clock()):
            del self._entries[key]
            self._evictions += 1
            self._misses += 1
            return None
        self._hits += 1
        return entry.response

    def store(
        self,
        key: Fingerprint,
        response: SynthesizedResponse,
        ttl: float | None = None,
    ) -> bool:
        """Store a complete response (last writer wins). Returns whether stored."""
        if not self.enabled:
            return False
        if not response.complete:
            logger.info("Not caching incomplete response for %s key", key.kind)
            return False
        self._entries[key] = _Entry(
            response=response,
            created_at=self._clock(),
            ttl=self.ttl_seconds if ttl is None else ttl,
        )
        return True

    def invalidate(self, target: Fingerprint | Callable[[Fingerprint], bool]) -> int:
        """Remove one key or every key matching a predicate. Missing keys are a no-op."""
        if isinstance(target, Fingerprint):
            return 1 if self._entries.pop(target, None) is not None else 0
        doomed = [key for key in self._entries if target(key)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear_user(self, user_id: str) -> int:
        cleared = self.invalidate(lambda key: key.user_id == user_id)
        logger.info("Cleared %d cached responses for user %s", cleared, user_id)
        return cleared

    def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expired(now)]
        for key in expired:
            del self._entries[key]
        self._evictions += len(expired)
        if expired:
            logger.debug("Cache sweep evicted %d entries", len(expired))
        return len(expired)

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            size=len(self._entries),
            in_flight=len(self._inflight),
            coalesced=self._coalesced,
            evictions=self._evictions,
            ttl_seconds=self.ttl_seconds,
        )

    # --- single-flight ----------------------------------------------------

    async def get_or_compute(
        self,
        key: Fingerprint,
        compute: Callable[[], Awaitable[SynthesizedResponse]],
        ttl: float | None = None,
    ) -> tuple[SynthesizedResponse, bool]:
        """
        Return (response, shared) for `key`, computing it at most once.

        `shared` is True when the response came from the cache or from
        another caller's in-flight computation.
        """
        while True:
            hit = self.lookup(key)
            if hit is not None:
                return hit, True

            pending = self._inflight.get(key)
            if pending is None:
                break

            self._coalesced += 1
            try:
                response = await asyncio.shield(pending)
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if pending.cancelled() and not (current and current.cancelling()):
                    logger.info("In-flight computation cancelled; retrying as leader")
                    continue
                raise
            return response, True

        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        self._inflight[key] = future
        try:
            response = await compute()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            self.store(key, response, ttl)
            future.set_result(response)
            return response, False
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]


async def sweep_periodically(cache: ResponseCache, interval_seconds: float) -> None:
    """Background task started by the app lifespan."""
    while True:
        await asyncio.sleep(interval_seconds)
        cache.sweep()
