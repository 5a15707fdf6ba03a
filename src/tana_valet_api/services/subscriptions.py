from __future__ import annotations

import calendar
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tana_valet_api.db.models import (
    PAYMENT_ONLINE,
    PENDING_STATUS_CONFLICT,
    SERVICE_PACKAGE,
    VEHICLE_STATUS_PARKED,
    ParkedVehicle,
)
from tana_valet_api.errors import ValidationError
from tana_valet_api.repositories.pending_payments import PendingPaymentStore
from tana_valet_api.services.clock import ensure_utc, utcnow
from tana_valet_api.services.plates import normalize_license_plate
from tana_valet_api.services.vat import reverse_calculate_vat

PACKAGE_DURATIONS = ("weekly", "monthly", "yearly")
UNKNOWN_ZONE = "Unknown Zone"


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamped to the last day of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_subscription_window(duration: str, start: datetime) -> tuple[datetime, datetime]:
    if duration == "weekly":
        return start, start + timedelta(days=7)
    if duration == "monthly":
        return start, add_months(start, 1)
    if duration == "yearly":
        return start, add_months(start, 12)
    raise ValidationError(f"package_duration must be one of {', '.join(PACKAGE_DURATIONS)}")


def new_subscription_id() -> str:
    return uuid4().hex


def remaining_days(end: datetime, now: datetime) -> int:
    return max(0, math.ceil((end - now).total_seconds() / 86400))


def is_subscription_expired(vehicle: ParkedVehicle, now: datetime | None = None) -> bool:
    end = ensure_utc(vehicle.package_end_date)
    return end is not None and (now or utcnow()) > end


def build_repark_message(vehicle: ParkedVehicle, business_name: str, now: datetime | None = None) -> str:
    now = now or utcnow()
    lines = [
        f"Security alert: Your package car ({vehicle.license_plate}) has been parked at {business_name}.",
        f"Package type: {vehicle.package_duration or 'package'}.",
    ]
    end = ensure_utc(vehicle.package_end_date)
    if end is not None:
        days_left = remaining_days(end, now)
        plural = "s" if days_left != 1 else ""
        lines.append(f"Package expires on {end:%Y-%m-%d} ({days_left} day{plural} remaining).")
    return "\n".join(lines)


@dataclass(frozen=True)
class MaterializationResult:
    vehicle: ParkedVehicle | None
    created: bool
    conflict: bool = False


async def find_materialized_vehicle(db: AsyncSession, tx_ref: str) -> ParkedVehicle | None:
    record = await PendingPaymentStore(db).find(tx_ref)
    if record is not None and record.vehicle_id is not None:
        return await db.get(ParkedVehicle, record.vehicle_id, populate_existing=True)
    stmt = (
        select(ParkedVehicle)
        .where(ParkedVehicle.payment_reference == tx_ref, ParkedVehicle.service_type == SERVICE_PACKAGE)
        .order_by(ParkedVehicle.id)
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def materialize_package(
    db: AsyncSession,
    *,
    tx_ref: str,
    captured_amount: Decimal | None,
    vat_rate: Decimal,
    now: datetime | None = None,
) -> MaterializationResult:
    """Create the first parked visit of a paid package subscription.

    Runs at most once per tx_ref: the pending payload is claimed with a
    conditional update in the same transaction that inserts the vehicle. A
    caller that loses the claim gets the vehicle created by the winner, or
    None when the payload expired or never existed. A payload whose plate is
    already parked is moved to the terminal conflict state instead of looping.
    """
    now = now or utcnow()
    store = PendingPaymentStore(db)
    if not await store.claim(tx_ref, now):
        await db.rollback()
        record = await store.find(tx_ref)
        if record is not None and record.status == PENDING_STATUS_CONFLICT:
            logger.warning("materialize_package.conflict_pending tx_ref={}", tx_ref)
            return MaterializationResult(vehicle=None, created=False, conflict=True)
        vehicle = await find_materialized_vehicle(db, tx_ref)
        logger.info(
            "materialize_package.skip tx_ref={} existing_vehicle_id={}",
            tx_ref,
            vehicle.id if vehicle else None,
        )
        return MaterializationResult(vehicle=vehicle, created=False)

    pending = await store.find(tx_ref)
    payload = pending.vehicle_payload or {}
    start, end = compute_subscription_window(pending.package_duration, now)
    amount = captured_amount or pending.amount or Decimal("0.00")
    breakdown = reverse_calculate_vat(amount, vat_rate)
    license_plate = normalize_license_plate(
        payload.get("plate_code", ""),
        payload.get("region", ""),
        payload.get("license_plate_number", ""),
    )

    vehicle = ParkedVehicle(
        license_plate=license_plate,
        plate_code=str(payload.get("plate_code", "")).strip(),
        region=str(payload.get("region", "")).strip(),
        license_plate_number=str(payload.get("license_plate_number", "")).strip().upper(),
        car_type=payload.get("car_type", "automobile"),
        model=payload.get("model") or "",
        color=payload.get("color") or "",
        phone_number=payload.get("phone_number") or pending.customer_phone,
        location=pending.park_zone_code or UNKNOWN_ZONE,
        notes=payload.get("notes") or "",
        status=VEHICLE_STATUS_PARKED,
        parked_at=now,
        valet_id=pending.valet_id,
        service_type=SERVICE_PACKAGE,
        package_duration=pending.package_duration,
        package_subscription_id=new_subscription_id(),
        package_start_date=start,
        package_end_date=end,
        payment_method=PAYMENT_ONLINE,
        payment_reference=tx_ref,
        total_paid_amount=breakdown.total_with_vat,
        base_amount=breakdown.base_amount,
        vat_amount=breakdown.vat_amount,
        vat_rate=vat_rate,
    )
    db.add(vehicle)
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        logger.error(
            "materialize_package.plate_already_parked tx_ref={} license_plate={} error={}",
            tx_ref,
            license_plate,
            exc.orig,
        )
        await store.mark_conflict(tx_ref, now)
        return MaterializationResult(vehicle=None, created=False, conflict=True)
    await store.attach_vehicle(tx_ref, vehicle.id)
    await db.commit()
    logger.info(
        "materialize_package.created tx_ref={} vehicle_id={} subscription_id={} package_end_date={}",
        tx_ref,
        vehicle.id,
        vehicle.package_subscription_id,
        end.isoformat(),
    )
    return MaterializationResult(vehicle=vehicle, created=True)
