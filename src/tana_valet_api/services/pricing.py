from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tana_valet_api.config import settings
from tana_valet_api.db.models import PricingSettings

DEFAULT_HOURLY_RATE = Decimal("50")


async def get_or_create_pricing_settings(db: AsyncSession) -> PricingSettings:
    row = (await db.execute(select(PricingSettings).order_by(PricingSettings.id).limit(1))).scalar_one_or_none()
    if row is None:
        row = PricingSettings(settings={})
        db.add(row)
        await db.commit()
        await db.refresh(row)
        logger.info("pricing_settings.created id={}", row.id)
    return row


def _as_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def vat_rate_from(document: dict[str, Any] | None) -> Decimal:
    rate = _as_decimal((document or {}).get("vatRate"))
    if rate is None or rate < 0:
        return settings.default_vat_rate
    return rate


async def get_vat_rate(db: AsyncSession) -> Decimal:
    row = await get_or_create_pricing_settings(db)
    return vat_rate_from(row.settings)


def hourly_rate_from(document: dict[str, Any] | None, car_type: str) -> Decimal:
    """Hourly price for a vehicle type from the first configured price level."""
    price_levels = (document or {}).get("priceLevels") or {}
    if not isinstance(price_levels, dict) or not price_levels:
        return DEFAULT_HOURLY_RATE
    first_level = next(iter(price_levels.values())) or {}
    car_pricing = first_level.get(car_type) if isinstance(first_level, dict) else None
    rate = _as_decimal((car_pricing or {}).get("hourly"))
    return rate if rate is not None and rate > 0 else DEFAULT_HOURLY_RATE
