from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from loguru import logger
from sqlalchemy import Select, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tana_valet_api.auth import StaffIdentity, ensure_owner_or_elevated, ensure_valet
from tana_valet_api.config import settings
from tana_valet_api.db.models import (
    PAYMENT_ONLINE,
    SERVICE_PACKAGE,
    VEHICLE_STATUS_CHECKED_OUT,
    VEHICLE_STATUS_PARKED,
    VEHICLE_STATUS_VIOLATION,
    ParkedVehicle,
)
from tana_valet_api.errors import Conflict, NotFound, PackageExpired, ValidationError
from tana_valet_api.schemas.vehicle import VehicleCreateRequest, VehicleFlagRequest, VehicleUpdateRequest
from tana_valet_api.services.clock import ensure_utc, utcnow
from tana_valet_api.services.notifications import Notifier, format_phone_number
from tana_valet_api.services.plates import normalize_license_plate, validate_car_type
from tana_valet_api.services.pricing import hourly_rate_from
from tana_valet_api.services.subscriptions import (
    UNKNOWN_ZONE,
    build_repark_message,
    compute_subscription_window,
    is_subscription_expired,
    new_subscription_id,
)
from tana_valet_api.services.vat import ZERO, calculate_vat, reverse_calculate_vat


@dataclass(frozen=True)
class UpdateResult:
    vehicle: ParkedVehicle
    message: str
    created_visit: bool = False


def is_package_visit(vehicle: ParkedVehicle) -> bool:
    return vehicle.service_type == SERVICE_PACKAGE and vehicle.package_end_date is not None


async def get_vehicle(db: AsyncSession, vehicle_id: int) -> ParkedVehicle:
    vehicle = await db.get(ParkedVehicle, vehicle_id, populate_existing=True)
    if vehicle is None:
        raise NotFound("Parked vehicle not found")
    return vehicle


async def find_parked_by_plate(db: AsyncSession, license_plate: str) -> ParkedVehicle | None:
    stmt = select(ParkedVehicle).where(
        ParkedVehicle.license_plate == license_plate,
        ParkedVehicle.status == VEHICLE_STATUS_PARKED,
    )
    return (await db.execute(stmt.limit(1))).scalar_one_or_none()


async def _transition(
    db: AsyncSession,
    vehicle_id: int,
    *,
    from_status: str,
    values: dict[str, Any],
) -> bool:
    """Compare-and-set on status; True when this call performed the change."""
    stmt = (
        update(ParkedVehicle)
        .where(ParkedVehicle.id == vehicle_id, ParkedVehicle.status == from_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


def outstanding_amount(vehicle: ParkedVehicle, pricing_document: dict[str, Any] | None) -> Decimal:
    """Amount a flagged customer still owes."""
    base_amount = vehicle.base_amount or ZERO
    vat_amount = vehicle.vat_amount or ZERO
    if base_amount > 0 and vat_amount > 0:
        return base_amount + vat_amount

    parked_at = ensure_utc(vehicle.parked_at)
    checked_out_at = ensure_utc(vehicle.checked_out_at)
    if (vehicle.total_paid_amount or ZERO) == 0 and parked_at and checked_out_at:
        hours = max(Decimal("0.01"), Decimal(str((checked_out_at - parked_at).total_seconds() / 3600)))
        fee = hours * hourly_rate_from(pricing_document, vehicle.car_type)
        return calculate_vat(fee, vehicle.vat_rate or settings.default_vat_rate).total_with_vat
    return base_amount + vat_amount


async def _find_flagged_customer(db: AsyncSession, license_plate: str, phone_number: str) -> ParkedVehicle | None:
    stmt = select(ParkedVehicle).where(
        ParkedVehicle.is_flagged.is_(True),
        or_(ParkedVehicle.license_plate == license_plate, ParkedVehicle.phone_number == phone_number.strip()),
    )
    return (await db.execute(stmt.order_by(ParkedVehicle.id.desc()).limit(1))).scalar_one_or_none()


async def register_vehicle(
    db: AsyncSession,
    staff: StaffIdentity,
    payload: VehicleCreateRequest,
    *,
    pricing_document: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> ParkedVehicle:
    """Check a vehicle in. Fails when the plate is already parked."""
    ensure_valet(staff, "register parked vehicles")
    now = now or utcnow()
    license_plate = normalize_license_plate(payload.plate_code, payload.region, payload.license_plate_number)
    validate_car_type(payload.car_type)
    if not payload.phone_number.strip():
        raise ValidationError("phone_number is required")

    if await find_parked_by_plate(db, license_plate) is not None:
        logger.warning("register_vehicle.duplicate license_plate={}", license_plate)
        raise Conflict("Car with this license plate is already parked")

    flagged = await _find_flagged_customer(db, license_plate, payload.phone_number)
    if flagged is not None:
        owed = outstanding_amount(flagged, pricing_document)
        logger.warning("register_vehicle.flagged_customer license_plate={} flagged_id={}", license_plate, flagged.id)
        raise Conflict(
            "This customer has an unpaid parking fee. Please ask them to pay the outstanding amount of "
            f"{owed:.2f} {settings.currency} first before registering a new car. "
            f"License Plate: {flagged.license_plate}",
            flagged_vehicle={
                "id": flagged.id,
                "license_plate": flagged.license_plate,
                "phone_number": flagged.phone_number,
                "outstanding_amount": f"{owed:.2f}",
            },
        )

    vehicle = ParkedVehicle(
        license_plate=license_plate,
        plate_code=payload.plate_code.strip(),
        region=payload.region.strip(),
        license_plate_number=payload.license_plate_number.strip().upper(),
        car_type=payload.car_type,
        model=payload.model,
        color=payload.color,
        phone_number=payload.phone_number.strip(),
        location=staff.park_zone_code or UNKNOWN_ZONE,
        notes=payload.notes or "",
        status=VEHICLE_STATUS_PARKED,
        parked_at=now,
        valet_id=staff.staff_id,
        service_type=payload.service_type,
    )
    if payload.service_type == SERVICE_PACKAGE:
        start, end = compute_subscription_window(payload.package_duration, now)
        vehicle.package_duration = payload.package_duration
        vehicle.package_subscription_id = new_subscription_id()
        vehicle.package_start_date = start
        vehicle.package_end_date = end

    db.add(vehicle)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        logger.warning("register_vehicle.race license_plate={} error={}", license_plate, exc.orig)
        raise Conflict("Car with this license plate is already parked") from exc
    logger.info(
        "register_vehicle.created id={} license_plate={} service_type={}",
        vehicle.id,
        license_plate,
        vehicle.service_type,
    )
    return vehicle


async def checkout_vehicle(
    db: AsyncSession,
    vehicle: ParkedVehicle,
    staff: StaffIdentity,
    *,
    total_paid_amount: Decimal | None = None,
    payment_method: str | None = None,
    notes: str | None = None,
    vat_rate: Decimal | None = None,
    now: datetime | None = None,
) -> ParkedVehicle:
    """Manual checkout of a parked visit; closes only this visit of a package."""
    now = now or utcnow()
    if is_package_visit(vehicle) and is_subscription_expired(vehicle, now):
        raise PackageExpired()

    values: dict[str, Any] = {
        "status": VEHICLE_STATUS_CHECKED_OUT,
        "checked_out_at": now,
        "checked_out_by": staff.staff_id,
    }
    if total_paid_amount is not None:
        breakdown = reverse_calculate_vat(total_paid_amount, vat_rate or settings.default_vat_rate)
        values.update(
            total_paid_amount=breakdown.total_with_vat,
            base_amount=breakdown.base_amount,
            vat_amount=breakdown.vat_amount,
            vat_rate=breakdown.vat_rate,
        )
    if payment_method is not None:
        values["payment_method"] = payment_method
    if notes is not None:
        values["notes"] = notes

    vehicle_id = vehicle.id
    if not await _transition(db, vehicle_id, from_status=VEHICLE_STATUS_PARKED, values=values):
        await db.rollback()
        logger.warning("checkout_vehicle.not_parked id={}", vehicle_id)
        raise Conflict("Vehicle is not currently parked")
    await db.commit()
    logger.info("checkout_vehicle.done id={} by={} amount={}", vehicle_id, staff.staff_id, total_paid_amount)
    return await get_vehicle(db, vehicle_id)


async def complete_online_checkout(
    db: AsyncSession,
    vehicle_id: int,
    *,
    tx_ref: str,
    amount: Decimal | None,
    vat_rate: Decimal,
    now: datetime | None = None,
) -> tuple[ParkedVehicle | None, bool]:
    """Apply a confirmed online payment to a parked visit exactly once.

    Returns the vehicle and whether this call performed the checkout.
    """
    now = now or utcnow()
    values: dict[str, Any] = {
        "status": VEHICLE_STATUS_CHECKED_OUT,
        "checked_out_at": now,
        "payment_method": PAYMENT_ONLINE,
        "payment_reference": tx_ref,
    }
    if amount:
        breakdown = reverse_calculate_vat(amount, vat_rate)
        values.update(
            total_paid_amount=breakdown.total_with_vat,
            base_amount=breakdown.base_amount,
            vat_amount=breakdown.vat_amount,
            vat_rate=breakdown.vat_rate,
        )

    applied = await _transition(db, vehicle_id, from_status=VEHICLE_STATUS_PARKED, values=values)
    if applied:
        await db.commit()
    else:
        await db.rollback()
    vehicle = await db.get(ParkedVehicle, vehicle_id, populate_existing=True)
    logger.info(
        "complete_online_checkout vehicle_id={} tx_ref={} applied={} status={}",
        vehicle_id,
        tx_ref,
        applied,
        vehicle.status if vehicle else None,
    )
    return vehicle, applied


async def mark_violation(
    db: AsyncSession,
    vehicle: ParkedVehicle,
    staff: StaffIdentity,
    *,
    notes: str | None = None,
    now: datetime | None = None,
) -> ParkedVehicle:
    values: dict[str, Any] = {
        "status": VEHICLE_STATUS_VIOLATION,
        "checked_out_at": now or utcnow(),
        "checked_out_by": staff.staff_id,
    }
    if notes is not None:
        values["notes"] = notes
    vehicle_id = vehicle.id
    if not await _transition(db, vehicle_id, from_status=VEHICLE_STATUS_PARKED, values=values):
        await db.rollback()
        raise Conflict("Vehicle is not currently parked")
    await db.commit()
    logger.info("mark_violation.done id={} by={}", vehicle_id, staff.staff_id)
    return await get_vehicle(db, vehicle_id)


async def repark_package_visit(
    db: AsyncSession,
    vehicle: ParkedVehicle,
    *,
    notes: str | None,
    notifier: Notifier,
    now: datetime | None = None,
) -> ParkedVehicle:
    """Open a new visit on the same subscription; the closed visit is left untouched.

    Starts only from a checked_out visit. A parked or violation record is
    never flipped back to parked, so each stay is its own row.
    """
    now = now or utcnow()
    if vehicle.status != VEHICLE_STATUS_CHECKED_OUT:
        raise Conflict(f"Cannot start a new visit from a {vehicle.status} record")
    if await find_parked_by_plate(db, vehicle.license_plate) is not None:
        raise Conflict("Car with this license plate is already parked")

    visit = ParkedVehicle(
        license_plate=vehicle.license_plate,
        plate_code=vehicle.plate_code,
        region=vehicle.region,
        license_plate_number=vehicle.license_plate_number,
        car_type=vehicle.car_type,
        model=vehicle.model,
        color=vehicle.color,
        phone_number=vehicle.phone_number,
        location=vehicle.location,
        notes=notes if notes is not None else vehicle.notes,
        status=VEHICLE_STATUS_PARKED,
        parked_at=now,
        valet_id=vehicle.valet_id,
        service_type=SERVICE_PACKAGE,
        package_duration=vehicle.package_duration,
        package_subscription_id=vehicle.package_subscription_id or str(vehicle.id),
        package_start_date=vehicle.package_start_date or vehicle.parked_at,
        package_end_date=vehicle.package_end_date,
        payment_method=vehicle.payment_method,
        payment_reference=vehicle.payment_reference,
        total_paid_amount=vehicle.total_paid_amount or ZERO,
        base_amount=vehicle.base_amount or ZERO,
        vat_amount=vehicle.vat_amount or ZERO,
        vat_rate=vehicle.vat_rate,
    )
    db.add(visit)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise Conflict("Car with this license plate is already parked") from exc
    logger.info(
        "repark_package_visit.created id={} previous_id={} subscription_id={}",
        visit.id,
        vehicle.id,
        visit.package_subscription_id,
    )

    try:
        await notifier.send_sms(
            format_phone_number(visit.phone_number),
            build_repark_message(visit, settings.business_name, now),
        )
    except Exception:
        logger.exception("repark_package_visit.notify_failed id={}", visit.id)
    return visit


async def update_vehicle(
    db: AsyncSession,
    staff: StaffIdentity,
    vehicle_id: int,
    payload: VehicleUpdateRequest,
    *,
    notifier: Notifier,
    vat_rate: Decimal | None = None,
    now: datetime | None = None,
) -> UpdateResult:
    now = now or utcnow()
    vehicle = await get_vehicle(db, vehicle_id)
    ensure_owner_or_elevated(staff, vehicle.valet_id, "update")

    if payload.status is not None:
        if is_package_visit(vehicle) and is_subscription_expired(vehicle, now):
            raise PackageExpired()

        if payload.status == VEHICLE_STATUS_CHECKED_OUT:
            updated = await checkout_vehicle(
                db,
                vehicle,
                staff,
                total_paid_amount=payload.total_paid_amount,
                payment_method=payload.payment_method,
                notes=payload.notes,
                vat_rate=vat_rate,
                now=now,
            )
            return UpdateResult(updated, "Parked vehicle checked out successfully")

        if payload.status == VEHICLE_STATUS_VIOLATION:
            updated = await mark_violation(db, vehicle, staff, notes=payload.notes, now=now)
            return UpdateResult(updated, "Parked vehicle marked as violation")

        if is_package_visit(vehicle):
            visit = await repark_package_visit(db, vehicle, notes=payload.notes, notifier=notifier, now=now)
            return UpdateResult(visit, "New package visit parked successfully", created_visit=True)
        if vehicle.status == VEHICLE_STATUS_PARKED:
            raise Conflict("Vehicle is already parked")
        raise Conflict("An hourly visit cannot be parked again; register the vehicle instead")

    if payload.notes is not None:
        vehicle.notes = payload.notes
        await db.commit()
    return UpdateResult(await get_vehicle(db, vehicle_id), "Parked vehicle updated successfully")


async def delete_vehicle(db: AsyncSession, staff: StaffIdentity, vehicle_id: int) -> None:
    vehicle = await get_vehicle(db, vehicle_id)
    ensure_owner_or_elevated(staff, vehicle.valet_id, "delete")
    await db.execute(delete(ParkedVehicle).where(ParkedVehicle.id == vehicle_id))
    await db.commit()
    logger.info("delete_vehicle.done id={} by={}", vehicle_id, staff.staff_id)


async def list_vehicles(
    db: AsyncSession,
    staff: StaffIdentity,
    *,
    status: str | None = None,
    valet_id: str | None = None,
) -> list[ParkedVehicle]:
    stmt: Select[tuple[ParkedVehicle]] = select(ParkedVehicle)
    if not staff.is_elevated:
        stmt = stmt.where(ParkedVehicle.valet_id == staff.staff_id)
    elif valet_id:
        stmt = stmt.where(ParkedVehicle.valet_id == valet_id)
    if status:
        stmt = stmt.where(ParkedVehicle.status == status)
    return list((await db.execute(stmt.order_by(ParkedVehicle.parked_at.desc(), ParkedVehicle.id.desc()))).scalars())


async def list_flagged_vehicles(db: AsyncSession) -> list[ParkedVehicle]:
    """Checked-out visits that are flagged or were never paid."""
    stmt = select(ParkedVehicle).where(
        ParkedVehicle.status == VEHICLE_STATUS_CHECKED_OUT,
        or_(ParkedVehicle.is_flagged.is_(True), ParkedVehicle.total_paid_amount == 0),
    )
    stmt = stmt.order_by(ParkedVehicle.flagged_at.desc(), ParkedVehicle.checked_out_at.desc())
    return list((await db.execute(stmt)).scalars())


async def flag_vehicle(
    db: AsyncSession,
    staff: StaffIdentity,
    vehicle_id: int,
    payload: VehicleFlagRequest,
    *,
    now: datetime | None = None,
) -> ParkedVehicle:
    """Record that the customer left without paying."""
    now = now or utcnow()
    vehicle = await get_vehicle(db, vehicle_id)
    ensure_owner_or_elevated(staff, vehicle.valet_id, "flag")

    if vehicle.status == VEHICLE_STATUS_PARKED:
        closed = await _transition(
            db,
            vehicle.id,
            from_status=VEHICLE_STATUS_PARKED,
            values={"status": VEHICLE_STATUS_CHECKED_OUT, "checked_out_at": now, "checked_out_by": staff.staff_id},
        )
        if not closed:
            await db.rollback()
            raise Conflict("Vehicle changed state while flagging; retry")
        vehicle = await get_vehicle(db, vehicle_id)
    elif vehicle.status == VEHICLE_STATUS_CHECKED_OUT:
        vehicle.checked_out_at = vehicle.checked_out_at or now
        vehicle.checked_out_by = vehicle.checked_out_by or staff.staff_id
    else:
        raise Conflict("Can only flag vehicles that are parked or checked out")

    vehicle.is_flagged = True
    vehicle.flagged_at = now
    vehicle.flagged_by = staff.staff_id
    if payload.base_amount is not None:
        vehicle.base_amount = payload.base_amount
    if payload.vat_amount is not None:
        vehicle.vat_amount = payload.vat_amount
    if payload.total_with_vat is not None:
        vehicle.total_paid_amount = ZERO
        if payload.base_amount is None and not vehicle.base_amount:
            breakdown = reverse_calculate_vat(payload.total_with_vat, vehicle.vat_rate or settings.default_vat_rate)
            vehicle.base_amount = breakdown.base_amount
            vehicle.vat_amount = breakdown.vat_amount
    await db.commit()
    logger.info("flag_vehicle.done id={} by={}", vehicle.id, staff.staff_id)
    return vehicle


async def notify_flagged_customer(
    db: AsyncSession,
    vehicle_id: int,
    *,
    notifier: Notifier,
    pricing_document: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> ParkedVehicle:
    now = now or utcnow()
    vehicle = await get_vehicle(db, vehicle_id)
    if not vehicle.is_flagged:
        raise ValidationError("Vehicle is not flagged")
    if not vehicle.phone_number:
        raise ValidationError("Phone number not available")

    base_amount = vehicle.base_amount or ZERO
    vat_amount = vehicle.vat_amount or ZERO
    if base_amount + vat_amount == 0:
        total = outstanding_amount(vehicle, pricing_document)
        breakdown = reverse_calculate_vat(total, vehicle.vat_rate or settings.default_vat_rate)
        base_amount, vat_amount = breakdown.base_amount, breakdown.vat_amount

    checked_out_at = ensure_utc(vehicle.checked_out_at)
    when = f"{checked_out_at:%Y-%m-%d} at {checked_out_at:%H:%M}" if checked_out_at else "N/A"
    message = (
        "WARNING: Unpaid Parking Fee\n\n"
        f"Your vehicle ({vehicle.license_plate}) was checked out from {settings.business_name} on {when} "
        "without payment.\n\n"
        f"Parking Fee: {base_amount:.2f} {settings.currency}\n"
        f"VAT: {vat_amount:.2f} {settings.currency}\n"
        f"Total: {base_amount + vat_amount:.2f} {settings.currency}\n\n"
        "Please return to the parking facility to complete your payment."
    )
    await notifier.send_sms(format_phone_number(vehicle.phone_number), message)

    vehicle.notification_sent = True
    vehicle.last_notification_sent_at = now
    await db.commit()
    logger.info("notify_flagged_customer.sent id={}", vehicle.id)
    return vehicle
