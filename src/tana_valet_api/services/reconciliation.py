from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Literal

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tana_valet_api.clients.payment_gateway import (
    STATUS_FAILED,
    STATUS_SUCCESSFUL,
    GatewayTransaction,
    PaymentGateway,
    normalize_transaction_status,
)
from tana_valet_api.config import settings
from tana_valet_api.db.models import ParkedVehicle
from tana_valet_api.errors import ParkingError
from tana_valet_api.services.clock import utcnow
from tana_valet_api.services.keyed_lock import KeyedLock
from tana_valet_api.services.lifecycle import complete_online_checkout
from tana_valet_api.services.pricing import get_vat_rate
from tana_valet_api.services.resolution import ResolvedTarget, resolve_target
from tana_valet_api.services.subscriptions import materialize_package

Channel = Literal["poll", "webhook", "redirect"]
ReconciliationResult = Literal[
    "checked_out",
    "already_checked_out",
    "materialized",
    "already_materialized",
    "conflict",
    "unresolved",
    "pending",
    "failed",
]

PENDING_MESSAGE = "Payment is still processing. Please wait and try again."


@dataclass(frozen=True)
class PaymentSignal:
    """One observation that a payment may have completed."""

    tx_ref: str
    channel: Channel
    declared_status: str | None = None
    amount: Decimal | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    vehicle_id_hint: int | None = None


@dataclass(frozen=True)
class ReconciliationOutcome:
    status: str
    result: ReconciliationResult
    transaction: GatewayTransaction
    vehicle: ParkedVehicle | None = None
    message: str = ""

    @property
    def applied(self) -> bool:
        return self.result in ("checked_out", "materialized")


_reference_locks = KeyedLock()


async def _confirm(gateway: PaymentGateway, signal: PaymentSignal) -> GatewayTransaction:
    """Authoritative transaction state for the signal.

    Callback payloads are only taken at face value when configured to and when
    they carry both metadata and an amount; otherwise the gateway is asked.
    """
    if (
        signal.channel != "poll"
        and settings.trust_callback_payload
        and signal.meta
        and signal.amount is not None
    ):
        return GatewayTransaction(
            tx_ref=signal.tx_ref,
            status=STATUS_SUCCESSFUL,
            raw_status=signal.declared_status,
            amount=signal.amount,
            meta=signal.meta,
        )

    verified = await gateway.verify(signal.tx_ref)
    if not verified.is_successful:
        return verified
    return dataclasses.replace(
        verified,
        amount=verified.amount if verified.amount is not None else signal.amount,
        meta=verified.meta or signal.meta,
    )


async def _apply(
    db: AsyncSession,
    tx_ref: str,
    target: ResolvedTarget,
    transaction: GatewayTransaction,
    vat_rate: Decimal,
) -> ReconciliationOutcome:
    def outcome(result: ReconciliationResult, vehicle: ParkedVehicle | None, message: str) -> ReconciliationOutcome:
        return ReconciliationOutcome(transaction.status, result, transaction, vehicle, message)

    now = utcnow()
    if target.kind == "vehicle":
        vehicle, applied = await complete_online_checkout(
            db,
            target.vehicle_id,
            tx_ref=tx_ref,
            amount=transaction.amount,
            vat_rate=vat_rate,
            now=now,
        )
        if vehicle is None:
            return outcome("unresolved", None, "Payment verified but the vehicle no longer exists")
        if applied:
            return outcome("checked_out", vehicle, "Payment verified and car checked out successfully")
        if vehicle.payment_reference == tx_ref:
            return outcome("already_checked_out", vehicle, "Payment already applied")
        return outcome("already_checked_out", vehicle, "Payment verified but car is not parked")

    if target.kind == "pending_package":
        materialized = await materialize_package(
            db,
            tx_ref=tx_ref,
            captured_amount=transaction.amount,
            vat_rate=vat_rate,
            now=now,
        )
        if materialized.created:
            return outcome("materialized", materialized.vehicle, "Payment verified and package car parked successfully")
        if materialized.vehicle is not None:
            return outcome("already_materialized", materialized.vehicle, "Payment already applied")
        if materialized.conflict:
            return outcome(
                "conflict",
                None,
                "Payment verified but this plate is already parked; the package needs manual follow-up",
            )
        return outcome("unresolved", None, "Pending package payment expired or was already processed")

    return outcome("unresolved", None, "Payment verified but no matching vehicle or package was found")


async def reconcile_payment(
    db: AsyncSession,
    gateway: PaymentGateway,
    signal: PaymentSignal,
) -> ReconciliationOutcome:
    """Turn any payment observation into at most one state change.

    Poll, webhook and redirect all funnel through here. Work for a given
    tx_ref is serialized in-process; the conditional updates in the lifecycle
    and pending store keep it exactly-once across processes.
    """
    if signal.channel != "poll":
        declared = normalize_transaction_status(signal.declared_status)
        if declared != STATUS_SUCCESSFUL:
            logger.info(
                "reconcile.ignored tx_ref={} channel={} declared_status={}",
                signal.tx_ref,
                signal.channel,
                signal.declared_status,
            )
            transaction = GatewayTransaction(tx_ref=signal.tx_ref, status=declared, raw_status=signal.declared_status)
            result: ReconciliationResult = "failed" if declared == STATUS_FAILED else "pending"
            return ReconciliationOutcome(declared, result, transaction)

    async with _reference_locks.hold(signal.tx_ref):
        transaction = await _confirm(gateway, signal)
        logger.info(
            "reconcile.confirmed tx_ref={} channel={} status={} amount={}",
            signal.tx_ref,
            signal.channel,
            transaction.status,
            transaction.amount,
        )
        if transaction.is_pending:
            return ReconciliationOutcome(transaction.status, "pending", transaction, message=PENDING_MESSAGE)
        if not transaction.is_successful:
            return ReconciliationOutcome(
                transaction.status,
                "failed",
                transaction,
                message=f"Payment {transaction.raw_status or 'failed'}. Please try again.",
            )

        try:
            vat_rate = await get_vat_rate(db)
            target = await resolve_target(db, signal.tx_ref, transaction.meta, signal.vehicle_id_hint)
            logger.info(
                "reconcile.resolved tx_ref={} kind={} source={} vehicle_id={}",
                signal.tx_ref,
                target.kind,
                target.source,
                target.vehicle_id,
            )
            outcome = await _apply(db, signal.tx_ref, target, transaction, vat_rate)
        except (SQLAlchemyError, ParkingError):
            await db.rollback()
            logger.exception("reconcile.apply_failed tx_ref={} channel={}", signal.tx_ref, signal.channel)
            return ReconciliationOutcome(
                transaction.status,
                "unresolved",
                transaction,
                message="Payment verified but could not be applied",
            )

    logger.info(
        "reconcile.done tx_ref={} channel={} result={} vehicle_id={}",
        signal.tx_ref,
        signal.channel,
        outcome.result,
        outcome.vehicle.id if outcome.vehicle else None,
    )
    return outcome
