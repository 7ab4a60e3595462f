# =============================================================================
# Receipt Store — Pluggable Read Backend for the Data Function Catalog
# =============================================================================
#
# The receipt database is an external collaborator: this service only
# reads from it, and only through the catalog functions in
# finquery.catalog. Those functions talk to a ReceiptStore, never to
# SQLAlchemy directly, so the same catalog runs against PostgreSQL in
# production and an in-process store in development, load tests and the
# test suite.
#
# ARCHITECTURE:
#   ReceiptStore (Protocol)
#   ├── SqlReceiptStore    — SQLAlchemy async over the receipts table
#   ├── MemoryReceiptStore — in-process lists, seeded from JSON or demo data
#   └── get_receipt_store() — singleton factory, reads receipt_store_type
#
# Filters shared by every method:
#   category  — case-insensitive exact match ("Uncategorized" matches null)
#   merchant  — case-insensitive substring match
# =============================================================================

from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from pathlib import Path
from typing import Literal, Protocol

from sqlalchemy import Select, distinct, func, select

from finquery.config import settings
from finquery.db.engine import async_session_factory
from finquery.db.models import Receipt
from finquery.services.timeframes import DateWindow

logger = logging.getLogger(__name__)

Dimension = Literal["category", "merchant", "day", "week", "month"]

UNCATEGORIZED = "Uncategorized"


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReceiptRecord:
    """One receipt as seen by the catalog (amounts as floats, 2dp)."""

    id: str
    merchant: str
    category: str | None
    total: float
    purchase_date: date


@dataclass(frozen=True)
class SpendTotal:
    total: float
    count: int


@dataclass(frozen=True)
class GroupTotal:
    """Spending aggregated under one key (category, merchant or period)."""

    key: str
    total: float
    count: int


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class ReceiptStore(Protocol):
    """
    Read-only access to a user's receipts.

    All methods are scoped to one user and an inclusive date window.
    """

    async def total_spent(
        self,
        user_id: str,
        window: DateWindow,
        *,
        category: str | None = None,
        merchant: str | None = None,
    ) -> SpendTotal:
        ...

    async def totals_by(
        self,
        user_id: str,
        window: DateWindow,
        dimension: Dimension,
        *,
        category: str | None = None,
        merchant: str | None = None,
    ) -> list[GroupTotal]:
        """
        Group spending by `dimension`.

        category/merchant groups come back largest first; day/week/month
        groups come back in chronological order (keys are ISO dates for
        day and week-start, YYYY-MM for month).
        """
        ...

    async def largest_receipts(
        self,
        user_id: str,
        window: DateWindow,
        limit: int,
        *,
        category: str | None = None,
        merchant: str | None = None,
    ) -> list[ReceiptRecord]:
        ...

    async def average_amount(
        self,
        user_id: str,
        window: DateWindow,
        *,
        category: str | None = None,
        merchant: str | None = None,
    ) -> float:
        ...

    async def merchants_seen(self, user_id: str, window: DateWindow) -> set[str]:
        """Lower-cased merchant names with at least one receipt in the window."""
        ...


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def period_key(day: date, dimension: Dimension) -> str:
    if dimension == "day":
        return day.isoformat()
    if dimension == "week":
        return (day - timedelta(days=day.weekday())).isoformat()
    return f"{day.year:04d}-{day.month:02d}"


def _money(value) -> float:
    return round(float(value or 0), 2)


# ---------------------------------------------------------------------------
# Implementation 1: In-process store
# ---------------------------------------------------------------------------


class MemoryReceiptStore:
    """
    Receipts held in process memory, grouped per user.

    Used when receipt_store_type="memory": local development without
    PostgreSQL, the load tester, and the test suite.
    """

    def __init__(self, receipts: dict[str, list[ReceiptRecord]] | None = None) -> None:
        self._receipts: dict[str, list[ReceiptRecord]] = defaultdict(list)
        for user_id, records in (receipts or {}).items():
            self._receipts[user_id].extend(records)

    @classmethod
    def from_rows(cls, rows: list[dict]) -> MemoryReceiptStore:
        """Build from dicts with user_id, merchant, category, total, purchase_date."""
        store = cls()
        for index, row in enumerate(rows):
            store.add(
                row["user_id"],
                ReceiptRecord(
                    id=str(row.get("id") or f"r{index}"),
                    merchant=row["merchant"],
                    category=row.get("category"),
                    total=_money(row["total"]),
                    purchase_date=date.fromisoformat(str(row["purchase_date"])),
                ),
            )
        return store

    @classmethod
    def from_json(cls, path: str | Path) -> MemoryReceiptStore:
        """Load a JSON file holding a list of rows or {"receipts": [...]}."""
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        rows = payload["receipts"] if isinstance(payload, dict) else payload
        store = cls.from_rows(rows)
        logger.info("Loaded %d receipts from %s", len(rows), path)
        return store

    def add(self, user_id: str, record: ReceiptRecord) -> None:
        self._receipts[user_id].append(record)

    def _select(
        self,
        user_id: str,
        window: DateWindow,
        category: str | None,
        merchant: str | None,
    ) -> list[ReceiptRecord]:
        category_key = category.lower() if category else None
        merchant_key = merchant.lower() if merchant else None
        selected = []
        for record in self._receipts.get(user_id, ()):
            if not window.contains(record.purchase_date):
                continue
            if category_key is not None:
                if (record.category or UNCATEGORIZED).lower() != category_key:
                    continue
            if merchant_key is not None and merchant_key not in record.merchant.lower():
                continue
            selected.append(record)
        return selected

    async def total_spent(self, user_id, window, *, category=None, merchant=None):
        records = self._select(user_id, window, category, merchant)
        return SpendTotal(_money(sum(r.total for r in records)), len(records))

    async def totals_by(self, user_id, window, dimension, *, category=None, merchant=None):
        totals: dict[str, float] = defaultdict(float)
        counts: dict[str, int] = defaultdict(int)
        for record in self._select(user_id, window, category, merchant):
            if dimension == "category":
                key = record.category or UNCATEGORIZED
            elif dimension == "merchant":
                key = record.merchant
            else:
                key = period_key(record.purchase_date, dimension)
            totals[key] += record.total
            counts[key] += 1

        groups = [GroupTotal(k, _money(v), counts[k]) for k, v in totals.items()]
        if dimension in ("category", "merchant"):
            groups.sort(key=lambda g: (-g.total, g.key))
        else:
            groups.sort(key=lambda g: g.key)
        return groups

    async def largest_receipts(self, user_id, window, limit, *, category=None, merchant=None):
        records = self._select(user_id, window, category, merchant)
        records.sort(key=lambda r: (-r.total, r.purchase_date, r.id))
        return records[:limit]

    async def average_amount(self, user_id, window, *, category=None, merchant=None):
        records = self._select(user_id, window, category, merchant)
        if not records:
            return 0.0
        return _money(sum(r.total for r in records) / len(records))

    async def merchants_seen(self, user_id, window):
        return {r.merchant.lower() for r in self._select(user_id, window, None, None)}


# ---------------------------------------------------------------------------
# Implementation 2: PostgreSQL via SQLAlchemy
# ---------------------------------------------------------------------------


class SqlReceiptStore:
    """
    Receipts read from PostgreSQL.

    Each call opens its own session from async_session_factory because the
    execution engine runs several catalog functions concurrently.
    """

    def _filtered(
        self,
        stmt: Select,
        user_id: str,
        window: DateWindow,
        category: str | None,
        merchant: str | None,
    ) -> Select:
        stmt = stmt.where(
            Receipt.user_id == user_id,
            Receipt.purchase_date >= window.start,
            Receipt.purchase_date <= window.end,
        )
        if category:
            stmt = stmt.where(
                func.lower(func.coalesce(Receipt.category, UNCATEGORIZED))
                == category.lower()
            )
        if merchant:
            stmt = stmt.where(Receipt.merchant.ilike(f"%{merchant}%"))
        return stmt

    async def total_spent(self, user_id, window, *, category=None, merchant=None):
        stmt = self._filtered(
            select(func.coalesce(func.sum(Receipt.total), 0), func.count(Receipt.id)),
            user_id, window, category, merchant,
        )
        async with async_session_factory() as session:
            total, count = (await session.execute(stmt)).one()
        return SpendTotal(_money(total), int(count))

    async def totals_by(self, user_id, window, dimension, *, category=None, merchant=None):
        if dimension == "category":
            key_col = func.coalesce(Receipt.category, UNCATEGORIZED)
        elif dimension == "merchant":
            key_col = Receipt.merchant
        elif dimension == "day":
            key_col = func.to_char(Receipt.purchase_date, "YYYY-MM-DD")
        elif dimension == "week":
            key_col = func.to_char(
                func.date_trunc("week", Receipt.purchase_date), "YYYY-MM-DD",
            )
        else:
            key_col = func.to_char(Receipt.purchase_date, "YYYY-MM")

        key_col = key_col.label("key")
        total_col = func.sum(Receipt.total).label("total")
        stmt = self._filtered(
            select(key_col, total_col, func.count(Receipt.id)),
            user_id, window, category, merchant,
        ).group_by(key_col)

        if dimension in ("category", "merchant"):
            stmt = stmt.order_by(total_col.desc(), key_col)
        else:
            stmt = stmt.order_by(key_col)

        async with async_session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [GroupTotal(str(key), _money(total), int(count)) for key, total, count in rows]

    async def largest_receipts(self, user_id, window, limit, *, category=None, merchant=None):
        stmt = self._filtered(
            select(Receipt), user_id, window, category, merchant,
        ).order_by(Receipt.total.desc(), Receipt.purchase_date, Receipt.id).limit(limit)
        async with async_session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            ReceiptRecord(
                id=row.id,
                merchant=row.merchant,
                category=row.category,
                total=_money(row.total),
                purchase_date=row.purchase_date,
            )
            for row in rows
        ]

    async def average_amount(self, user_id, window, *, category=None, merchant=None):
        stmt = self._filtered(
            select(func.avg(Receipt.total)), user_id, window, category, merchant,
        )
        async with async_session_factory() as session:
            value = (await session.execute(stmt)).scalar_one_or_none()
        return _money(value)

    async def merchants_seen(self, user_id, window):
        stmt = self._filtered(
            select(distinct(func.lower(Receipt.merchant))), user_id, window, None, None,
        )
        async with async_session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return set(rows)


# ---------------------------------------------------------------------------
# Demo data
# ---------------------------------------------------------------------------

# (merchant, category, base amount, every N days)
_DEMO_SCHEDULE = [
    ("Whole Foods", "Groceries", 84.20, 6),
    ("Starbucks", "Food & Dining", 6.45, 2),
    ("Chipotle", "Food & Dining", 13.80, 5),
    ("Shell", "Transportation", 48.10, 9),
    ("Netflix", "Entertainment", 15.49, 30),
    ("Amazon", "Shopping", 52.99, 11),
    ("CVS Pharmacy", "Healthcare", 23.75, 17),
    ("Con Edison", "Utilities", 96.30, 30),
]


def demo_receipts(today: date, days: int = 180) -> list[ReceiptRecord]:
    """Deterministic receipts for the last `days` days, for one demo user."""
    records: list[ReceiptRecord] = []
    for offset in range(days, -1, -1):
        day = today - timedelta(days=offset)
        for index, (merchant, category, base, every) in enumerate(_DEMO_SCHEDULE):
            if (offset + index) % every:
                continue
            wobble = ((offset * 7 + index * 13) % 21 - 10) / 100
            records.append(ReceiptRecord(
                id=f"demo-{day.isoformat()}-{index}",
                merchant=merchant,
                category=category,
                total=_money(base * (1 + wobble)),
                purchase_date=day,
            ))
    return records


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_store: MemoryReceiptStore | SqlReceiptStore | None = None


def get_receipt_store() -> MemoryReceiptStore | SqlReceiptStore:
    """
    Singleton factory that returns the configured receipt store.

    - "postgres" → SqlReceiptStore
    - "memory"   → MemoryReceiptStore loaded from memory_store_path, or
                   seeded with demo data for dev_user_id when no path is set
    """
    global _store
    if _store is None:
        if settings.receipt_store_type == "postgres":
            logger.info("Using PostgreSQL receipt store")
            _store = SqlReceiptStore()
        elif settings.memory_store_path:
            _store = MemoryReceiptStore.from_json(settings.memory_store_path)
        else:
            logger.info("Using in-memory receipt store with demo data")
            _store = MemoryReceiptStore(
                {settings.dev_user_id: demo_receipts(date.today())},
            )
    return _store
