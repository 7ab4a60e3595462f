# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# Two tables back the external collaborators this service reads from:
#
# ┌──────────────────────────────┐   ┌──────────────────────────────┐
# │  receipts                    │   │  user_sessions               │
# ├──────────────────────────────┤   ├──────────────────────────────┤
# │ id (PK, uuid str)            │   │ id (PK)                      │
# │ user_id (indexed)            │   │ user_id                      │
# │ merchant                     │   │ token_prefix                 │
# │ category (nullable)          │   │ token_hash (unique)          │
# │ total (numeric 12,2)         │   │ is_active                    │
# │ currency                     │   │ expires_at                   │
# │ purchase_date (date)         │   │ last_used_at                 │
# │ created_at                   │   │ created_at                   │
# └──────────────────────────────┘   └──────────────────────────────┘
#
# Receipts are written by the ingestion side of the product and are
# read-only here; every read goes through the data function catalog.
# Sessions are issued by the identity provider; this service only validates
# them (hashed bearer tokens, never plaintext).
# =============================================================================

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for all ORM models."""

    pass


class Receipt(Base):
    """A single purchase made by a user."""

    __tablename__ = "receipts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Normalised merchant name as extracted from the receipt
    merchant: Mapped[str] = mapped_column(String(255), nullable=False)

    # Spending category (e.g. "Food & Dining"); null until categorised
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)

    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default="USD",
    )

    purchase_date: Mapped[date] = mapped_column(Date, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<Receipt(id={self.id}, user={self.user_id}, "
            f"merchant='{self.merchant}', total={self.total})>"
        )


# Composite indexes matching the catalog's access paths: every query filters
# on user + date range, most add category or merchant.
receipt_user_date_idx = Index(
    "idx_receipt_user_date", Receipt.user_id, Receipt.purchase_date,
)
receipt_user_category_idx = Index(
    "idx_receipt_user_category", Receipt.user_id, Receipt.category,
)
receipt_user_merchant_idx = Index(
    "idx_receipt_user_merchant", Receipt.user_id, Receipt.merchant,
)


class UserSession(Base):
    """
    A bearer session issued by the identity provider.

    The raw token is only known to the client; we store its SHA-256 hash
    and an 8-char prefix for log identification.
    """

    __tablename__ = "user_sessions"

    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True,
    )

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    token_prefix: Mapped[str] = mapped_column(String(20), nullable=False)

    token_hash: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True,
    )

    # Revoked sessions stay in the table with is_active=False
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False,
    )

    # Null = never expires
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<UserSession(id={self.id}, user={self.user_id}, "
            f"prefix='{self.token_prefix}', active={self.is_active})>"
        )
