# =============================================================================
# Database Package
# =============================================================================
# Provides the async SQLAlchemy engine, session management, and ORM models.
#
# Key exports:
#   - get_async_session: FastAPI dependency for database sessions
#   - async_session_factory: self-managed sessions (SqlReceiptStore)
#   - Receipt, UserSession: ORM models for the external collaborators
# =============================================================================
