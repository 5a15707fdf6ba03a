from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from tana_valet_api.auth import StaffIdentity, ensure_owner_or_elevated, ensure_valet
from tana_valet_api.clients.payment_gateway import PaymentGateway
from tana_valet_api.config import settings
from tana_valet_api.db.models import VEHICLE_STATUS_PARKED
from tana_valet_api.errors import Conflict, GatewayError
from tana_valet_api.repositories.pending_payments import PendingPaymentStore
from tana_valet_api.schemas.payment import DirectPaymentInitRequest, PackagePaymentInitRequest
from tana_valet_api.services.clock import utcnow
from tana_valet_api.services.lifecycle import find_parked_by_plate, get_vehicle
from tana_valet_api.services.plates import normalize_license_plate, validate_car_type
from tana_valet_api.services.subscriptions import UNKNOWN_ZONE

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def _suffix(length: int = 8) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


def _millis(now: datetime) -> int:
    return int(now.timestamp() * 1000)


def direct_tx_ref(vehicle_id: int, now: datetime | None = None) -> str:
    return f"{settings.tx_ref_prefix}-{vehicle_id}-{_millis(now or utcnow())}-{_suffix()}"


def package_tx_ref(now: datetime | None = None) -> str:
    return f"{settings.tx_ref_prefix}-pkg-{_millis(now or utcnow())}-{_suffix()}"


@dataclass(frozen=True)
class CheckoutSession:
    tx_ref: str
    checkout_url: str


async def initialize_direct_payment(
    db: AsyncSession,
    gateway: PaymentGateway,
    staff: StaffIdentity,
    payload: DirectPaymentInitRequest,
) -> CheckoutSession:
    """Start hosted checkout for a vehicle that is currently parked."""
    vehicle = await get_vehicle(db, payload.vehicle_id)
    ensure_owner_or_elevated(staff, vehicle.valet_id, "start a payment for")
    if vehicle.status != VEHICLE_STATUS_PARKED:
        raise Conflict("Car is not currently parked")

    tx_ref = direct_tx_ref(vehicle.id)
    # Stored before the gateway call so an early webhook can still resolve it.
    vehicle.pending_payment_tx_ref = tx_ref
    await db.commit()

    checkout_url = await gateway.initialize(
        tx_ref=tx_ref,
        amount=payload.amount,
        customer_phone=payload.customer_phone,
        customer_name=payload.customer_name,
        customer_email=payload.customer_email,
        meta={"vehicle_id": vehicle.id, "license_plate": vehicle.license_plate},
    )
    logger.info(
        "payment.initialize tx_ref={} vehicle_id={} amount={} by={}",
        tx_ref,
        vehicle.id,
        payload.amount,
        staff.staff_id,
    )
    return CheckoutSession(tx_ref=tx_ref, checkout_url=checkout_url)


async def initialize_package_payment(
    db: AsyncSession,
    gateway: PaymentGateway,
    staff: StaffIdentity,
    payload: PackagePaymentInitRequest,
) -> CheckoutSession:
    """Start payment for a package; no vehicle exists until the payment is confirmed."""
    ensure_valet(staff, "start package payments")
    details = payload.vehicle
    license_plate = normalize_license_plate(details.plate_code, details.region, details.license_plate_number)
    validate_car_type(details.car_type)
    if await find_parked_by_plate(db, license_plate) is not None:
        raise Conflict("Car with this license plate is already parked")

    tx_ref = package_tx_ref()
    store = PendingPaymentStore(db)
    await store.create(
        tx_ref=tx_ref,
        vehicle_payload=details.model_dump(mode="json"),
        package_duration=payload.package_duration,
        amount=payload.amount,
        customer_phone=payload.customer_phone,
        valet_id=staff.staff_id,
        park_zone_code=staff.park_zone_code or UNKNOWN_ZONE,
    )
    try:
        checkout_url = await gateway.initialize(
            tx_ref=tx_ref,
            amount=payload.amount,
            customer_phone=payload.customer_phone,
            meta={"kind": "package", "package_duration": payload.package_duration, "license_plate": license_plate},
        )
    except GatewayError:
        await store.discard(tx_ref)
        raise
    logger.info(
        "payment.initialize_package tx_ref={} duration={} amount={} by={}",
        tx_ref,
        payload.package_duration,
        payload.amount,
        staff.staff_id,
    )
    return CheckoutSession(tx_ref=tx_ref, checkout_url=checkout_url)
