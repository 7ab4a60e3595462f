# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Async SQLAlchemy engine over asyncpg. All DB access in this service is a
# read (receipts via SqlReceiptStore, sessions via the auth dependency), so
# there is a single async engine and no sync/worker engine.
#
# SESSION LIFECYCLE:
# 1. FastAPI request arrives
# 2. `get_async_session` dependency creates a new session
# 3. Route handler / auth dependency uses it
# 4. Session commits on exit (last_used_at updates), rolls back on error
#
# SqlReceiptStore opens its own short-lived sessions from
# `async_session_factory` because data functions run concurrently inside
# one request and an AsyncSession must not be shared between tasks.
# =============================================================================

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from finquery.config import settings

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# pool_size bounds concurrent data function calls hitting PostgreSQL; keep
# it >= max_concurrent_functions × expected concurrent requests.
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_size=10,
    max_overflow=20,
    pool_pre_ping=True,
)

# expire_on_commit=False: loaded objects stay readable after commit
# outside the session (async context cannot lazy-load).
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def pool_checked_out() -> int:
    """Connections currently checked out of the pool (resource gauge)."""
    pool = async_engine.pool
    checkedout = getattr(pool, "checkedout", None)
    return checkedout() if callable(checkedout) else 0


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    The session is committed when the request completes and rolled back
    if an exception escapes the handler.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
