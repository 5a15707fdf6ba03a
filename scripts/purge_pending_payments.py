from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from tana_valet_api.config import settings
from tana_valet_api.repositories.pending_payments import PendingPaymentStore


async def purge(database_url: str, ttl_seconds: int, dry_run: bool = False) -> int:
    engine = create_async_engine(database_url, echo=False, future=True)
    session_maker = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)
    try:
        async with session_maker() as session:
            store = PendingPaymentStore(session, ttl_seconds=ttl_seconds)
            if dry_run:
                print(f"[dry-run] would purge pending package payments older than {ttl_seconds}s from {database_url}")
                return 0
            deleted = await store.purge_expired()
        print(f"[ok] purged {deleted} pending package payments older than {ttl_seconds}s")
        return deleted
    finally:
        await engine.dispose()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Delete expired pending package payments")
    parser.add_argument(
        "--database-url",
        default=os.getenv("VALET_DATABASE_URL") or settings.database_url,
        help="target valet database URL",
    )
    parser.add_argument(
        "--ttl-seconds",
        type=int,
        default=settings.pending_payment_ttl_seconds,
        help="age after which a pending payload is purged",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="only report what would be purged",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    asyncio.run(purge(args.database_url, args.ttl_seconds, dry_run=args.dry_run))


if __name__ == "__main__":
    main()
