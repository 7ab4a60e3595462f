# =============================================================================
# Auth Service — Session Token Generation & Hashing
# =============================================================================
#
# Pure functions for session token handling. No FastAPI dependency: used by
# the auth dependency (lookup), the demo seed script (issuance), and tests.
#
# Session tokens are 32-byte random values, so a plain SHA-256 digest is
# enough for storage and gives a deterministic value to look up by.
# =============================================================================

from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timezone


def generate_session_token() -> tuple[str, str, str]:
    """
    Generate a new session token.

    Returns:
        (raw_token, token_prefix, token_hash):
        - raw_token: Full token handed to the client (only visible once)
        - token_prefix: First 8 chars for identification in logs
        - token_hash: SHA-256 hex digest for storage in the database
    """
    raw_token = f"st-{secrets.token_hex(32)}"
    token_prefix = raw_token[:8]
    token_hash = hash_session_token(raw_token)
    return raw_token, token_prefix, token_hash


def hash_session_token(raw_token: str) -> str:
    """Hash a session token using SHA-256. Returns 64-char hex digest."""
    return hashlib.sha256(raw_token.encode()).hexdigest()


def session_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    """True when the session has an expiry in the past. Naive times are UTC."""
    if expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= now
