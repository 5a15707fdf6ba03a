from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tana_valet_api.config import settings
from tana_valet_api.db.models import ParkedVehicle
from tana_valet_api.repositories.pending_payments import PendingPaymentStore

TargetKind = Literal["vehicle", "pending_package", "unresolved"]
TargetSource = Literal["hint", "metadata", "vehicle_reference", "reference_prefix", "pending_key", "none"]

_META_VEHICLE_KEYS = ("vehicle_id", "vehicleId", "carId")


@dataclass(frozen=True)
class ResolvedTarget:
    kind: TargetKind
    source: TargetSource
    vehicle_id: int | None = None

    @classmethod
    def unresolved(cls) -> "ResolvedTarget":
        return cls(kind="unresolved", source="none")


def _as_vehicle_id(value: Any) -> int | None:
    try:
        vehicle_id = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return vehicle_id if vehicle_id > 0 else None


def vehicle_id_from_meta(meta: dict[str, Any] | None) -> int | None:
    for key in _META_VEHICLE_KEYS:
        vehicle_id = _as_vehicle_id((meta or {}).get(key))
        if vehicle_id is not None:
            return vehicle_id
    return None


def vehicle_id_from_reference(tx_ref: str, prefix: str | None = None) -> int | None:
    """Vehicle id embedded in a direct-payment reference ({prefix}-{id}-{ms}-{suffix})."""
    pattern = rf"^{re.escape(prefix or settings.tx_ref_prefix)}-(\d+)-\d+-[a-z0-9]+$"
    match = re.match(pattern, tx_ref)
    return _as_vehicle_id(match.group(1)) if match else None


async def _vehicle_exists(db: AsyncSession, vehicle_id: int) -> bool:
    stmt = select(ParkedVehicle.id).where(ParkedVehicle.id == vehicle_id)
    return (await db.execute(stmt)).scalar_one_or_none() is not None


async def resolve_target(
    db: AsyncSession,
    tx_ref: str,
    meta: dict[str, Any] | None = None,
    vehicle_id_hint: int | None = None,
) -> ResolvedTarget:
    """Locate the business record a confirmed payment belongs to.

    Order: explicit hint, gateway metadata, the reference stored on the vehicle
    at initialize time, the deprecated reference prefix, then the pending
    package store.
    """
    candidates: list[tuple[TargetSource, int | None]] = [
        ("hint", vehicle_id_hint),
        ("metadata", vehicle_id_from_meta(meta)),
    ]
    for source, vehicle_id in candidates:
        if vehicle_id is not None and await _vehicle_exists(db, vehicle_id):
            return ResolvedTarget(kind="vehicle", source=source, vehicle_id=vehicle_id)

    stmt = select(ParkedVehicle.id).where(ParkedVehicle.pending_payment_tx_ref == tx_ref).limit(1)
    vehicle_id = (await db.execute(stmt)).scalar_one_or_none()
    if vehicle_id is not None:
        return ResolvedTarget(kind="vehicle", source="vehicle_reference", vehicle_id=vehicle_id)

    if settings.allow_reference_prefix_fallback:
        vehicle_id = vehicle_id_from_reference(tx_ref)
        if vehicle_id is not None and await _vehicle_exists(db, vehicle_id):
            logger.warning("resolve_target.reference_prefix_fallback tx_ref={} vehicle_id={}", tx_ref, vehicle_id)
            return ResolvedTarget(kind="vehicle", source="reference_prefix", vehicle_id=vehicle_id)

    if await PendingPaymentStore(db).find(tx_ref) is not None:
        return ResolvedTarget(kind="pending_package", source="pending_key")

    return ResolvedTarget.unresolved()
