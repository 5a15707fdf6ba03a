from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from tana_valet_api.config import settings
from tana_valet_api.db.base import Base
from tana_valet_api.services.pricing import get_or_create_pricing_settings

DEFAULT_DOCUMENT = {
    "vatRate": 0.15,
    "priceLevels": {
        "level1": {
            "tripod": {"hourly": 30, "weekly": 1000, "monthly": 3500, "yearly": 35000},
            "automobile": {"hourly": 50, "weekly": 1500, "monthly": 5000, "yearly": 50000},
            "truck": {"hourly": 80, "weekly": 2500, "monthly": 8000, "yearly": 80000},
            "trailer": {"hourly": 120, "weekly": 3500, "monthly": 12000, "yearly": 120000},
        }
    },
}


async def seed(database_url: str, document: dict, ensure_schema: bool = False) -> None:
    engine = create_async_engine(database_url, echo=False, future=True)
    session_maker = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)
    try:
        if ensure_schema:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        async with session_maker() as session:
            row = await get_or_create_pricing_settings(session)
            row.settings = document
            await session.commit()
        print(f"[ok] pricing settings written to {database_url}")
    finally:
        await engine.dispose()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Write the pricing settings document")
    parser.add_argument(
        "--database-url",
        default=os.getenv("VALET_DATABASE_URL") or settings.database_url,
        help="target valet database URL",
    )
    parser.add_argument(
        "--from-json",
        default=None,
        help="JSON file holding the pricing document; built-in defaults when omitted",
    )
    parser.add_argument(
        "--ensure-schema",
        action="store_true",
        help="run Base.metadata.create_all before seeding",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    document = DEFAULT_DOCUMENT
    if args.from_json:
        document = json.loads(Path(args.from_json).read_text(encoding="utf-8"))
    asyncio.run(seed(args.database_url, document, ensure_schema=args.ensure_schema))


if __name__ == "__main__":
    main()
