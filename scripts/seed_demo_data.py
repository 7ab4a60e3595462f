#!/usr/bin/env python3
"""
Seed demo receipts and a session token.

Two targets:

    JSON file (for RECEIPT_STORE_TYPE=memory + MEMORY_STORE_PATH):
        uv run python scripts/seed_demo_data.py --json data/demo_receipts.json

    PostgreSQL (for RECEIPT_STORE_TYPE=postgres, AUTH_ENABLED=true):
        uv run python scripts/seed_demo_data.py --postgres --user demo-user

The PostgreSQL target creates the tables if needed, replaces the user's
receipts, and prints a fresh session token (shown only once).
"""

from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from pathlib import Path

from sqlalchemy import delete

from finquery.db.engine import async_engine, async_session_factory
from finquery.db.models import Base, Receipt, UserSession
from finquery.services.auth import generate_session_token
from finquery.services.receipt_store import demo_receipts


def write_json(path: Path, user_id: str, today: date, days: int) -> int:
    rows = [
        {**asdict(r), "user_id": user_id, "purchase_date": r.purchase_date.isoformat()}
        for r in demo_receipts(today, days)
    ]
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"receipts": rows}, indent=2), encoding="utf-8")
    return len(rows)


async def seed_postgres(user_id: str, today: date, days: int, session_days: int) -> tuple[int, str]:
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    records = demo_receipts(today, days)
    raw_token, prefix, token_hash = generate_session_token()

    async with async_session_factory() as session:
        await session.execute(delete(Receipt).where(Receipt.user_id == user_id))
        session.add_all(
            Receipt(
                id=f"{user_id}-{r.id}",
                user_id=user_id,
                merchant=r.merchant,
                category=r.category,
                total=Decimal(str(r.total)),
                purchase_date=r.purchase_date,
            )
            for r in records
        )
        session.add(UserSession(
            user_id=user_id,
            token_prefix=prefix,
            token_hash=token_hash,
            expires_at=datetime.now(UTC) + timedelta(days=session_days),
        ))
        await session.commit()

    await async_engine.dispose()
    return len(records), raw_token


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--user", default="dev-user", help="user id to seed")
    parser.add_argument("--days", type=int, default=180, help="days of history")
    parser.add_argument("--json", type=Path, help="write receipts to this JSON file")
    parser.add_argument("--postgres", action="store_true", help="seed the database")
    parser.add_argument("--session-days", type=int, default=30, help="token lifetime")
    args = parser.parse_args()

    if not args.json and not args.postgres:
        parser.error("choose --json PATH and/or --postgres")

    today = date.today()
    if args.json:
        count = write_json(args.json, args.user, today, args.days)
        print(f"Wrote {count} receipts for {args.user} to {args.json}")
    if args.postgres:
        count, token = asyncio.run(
            seed_postgres(args.user, today, args.days, args.session_days),
        )
        print(f"Inserted {count} receipts for {args.user}")
        print(f"Session token (store it now, it is not shown again): {token}")


if __name__ == "__main__":
    main()
