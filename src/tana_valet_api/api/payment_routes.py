from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from tana_valet_api.auth import StaffIdentity, get_current_staff
from tana_valet_api.clients.payment_gateway import PaymentGateway, get_payment_gateway, parse_amount
from tana_valet_api.config import settings
from tana_valet_api.db.session import get_db_session
from tana_valet_api.errors import NotFound
from tana_valet_api.repositories.pending_payments import PendingPaymentStore
from tana_valet_api.schemas.payment import (
    CallbackAck,
    DirectPaymentInitRequest,
    PackagePaymentInitRequest,
    PaymentInitResponse,
    PaymentVerifyResponse,
    TransactionView,
)
from tana_valet_api.schemas.vehicle import VehicleSummary
from tana_valet_api.services.payments import initialize_direct_payment, initialize_package_payment
from tana_valet_api.services.reconciliation import (
    Channel,
    PaymentSignal,
    ReconciliationOutcome,
    reconcile_payment,
)
from tana_valet_api.services.subscriptions import find_materialized_vehicle

router = APIRouter(prefix="/api/v1/payments/chapa", tags=["payments"])

_TX_REF_KEYS = ("tx_ref", "trx_ref", "txRef")


def _verify_response(outcome: ReconciliationOutcome) -> PaymentVerifyResponse:
    transaction = outcome.transaction
    return PaymentVerifyResponse(
        success=transaction.is_successful,
        transaction=TransactionView(
            status=transaction.status,
            tx_ref=transaction.tx_ref,
            amount=transaction.amount,
            currency=transaction.currency,
        ),
        result=outcome.result,
        vehicle=VehicleSummary.model_validate(outcome.vehicle) if outcome.vehicle is not None else None,
        message=outcome.message,
    )


def extract_callback_fields(payload: dict[str, Any]) -> dict[str, Any]:
    """Flatten a gateway callback body; fields may sit under ``data`` or at the top level."""
    nested = payload.get("data")
    source = {**payload, **nested} if isinstance(nested, dict) else payload
    tx_ref = next((str(source[key]) for key in _TX_REF_KEYS if source.get(key)), None)
    meta = source.get("meta")
    return {
        "tx_ref": tx_ref,
        "status": source.get("status"),
        "amount": parse_amount(source.get("amount")),
        "meta": meta if isinstance(meta, dict) else {},
    }


async def _acknowledge(
    db: AsyncSession,
    gateway: PaymentGateway,
    channel: Channel,
    payload: dict[str, Any],
) -> CallbackAck:
    try:
        fields = extract_callback_fields(payload)
        if not fields["tx_ref"]:
            logger.warning("payment_callback.missing_tx_ref channel={} keys={}", channel, sorted(payload))
            return CallbackAck(message="Missing transaction reference")
        outcome = await reconcile_payment(
            db,
            gateway,
            PaymentSignal(
                tx_ref=fields["tx_ref"],
                channel=channel,
                declared_status=fields["status"],
                amount=fields["amount"],
                meta=fields["meta"],
            ),
        )
        return CallbackAck(message=outcome.message or "Callback processed")
    except Exception:
        logger.exception("payment_callback.failed channel={}", channel)
        return CallbackAck()


@router.post(
    "/initialize",
    response_model=PaymentInitResponse,
    summary="Start online checkout for a parked vehicle",
)
async def initialize_payment(
    payload: DirectPaymentInitRequest,
    db: AsyncSession = Depends(get_db_session),
    staff: StaffIdentity = Depends(get_current_staff),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentInitResponse:
    logger.info("initialize_payment.request vehicle_id={} amount={}", payload.vehicle_id, payload.amount)
    session = await initialize_direct_payment(db, gateway, staff, payload)
    return PaymentInitResponse(
        tx_ref=session.tx_ref,
        checkout_url=session.checkout_url,
        public_key=settings.chapa_public_key,
        message="Payment initialized successfully",
    )


@router.post(
    "/initialize-package",
    response_model=PaymentInitResponse,
    summary="Start payment for a package subscription",
    description="The vehicle is only registered after the payment is confirmed.",
)
async def initialize_package(
    payload: PackagePaymentInitRequest,
    db: AsyncSession = Depends(get_db_session),
    staff: StaffIdentity = Depends(get_current_staff),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentInitResponse:
    logger.info(
        "initialize_package.request duration={} amount={} staff_id={}",
        payload.package_duration,
        payload.amount,
        staff.staff_id,
    )
    session = await initialize_package_payment(db, gateway, staff, payload)
    return PaymentInitResponse(
        tx_ref=session.tx_ref,
        checkout_url=session.checkout_url,
        public_key=settings.chapa_public_key,
        message="Package payment initialized successfully",
    )


@router.get("/verify/{tx_ref}", response_model=PaymentVerifyResponse, summary="Poll a payment")
async def verify_payment(
    tx_ref: str,
    vehicle_id: int | None = Query(default=None, description="Vehicle the payment belongs to"),
    db: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentVerifyResponse:
    outcome = await reconcile_payment(
        db,
        gateway,
        PaymentSignal(tx_ref=tx_ref, channel="poll", vehicle_id_hint=vehicle_id),
    )
    return _verify_response(outcome)


@router.get("/verify-package/{tx_ref}", response_model=PaymentVerifyResponse, summary="Poll a package payment")
async def verify_package_payment(
    tx_ref: str,
    db: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentVerifyResponse:
    if await PendingPaymentStore(db).find(tx_ref) is None and await find_materialized_vehicle(db, tx_ref) is None:
        raise NotFound("Package payment not found")
    outcome = await reconcile_payment(db, gateway, PaymentSignal(tx_ref=tx_ref, channel="poll"))
    return _verify_response(outcome)


@router.post("/callback", response_model=CallbackAck, summary="Gateway webhook")
@router.post("/webhook", response_model=CallbackAck, include_in_schema=False)
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> CallbackAck:
    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}
    return await _acknowledge(db, gateway, "webhook", {**request.query_params, **payload})


@router.get("/callback", response_model=CallbackAck, summary="Gateway redirect")
async def payment_redirect(
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> CallbackAck:
    return await _acknowledge(db, gateway, "redirect", dict(request.query_params))
