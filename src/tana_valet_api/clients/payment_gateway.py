from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

import httpx
from loguru import logger

from tana_valet_api.config import settings
from tana_valet_api.errors import GatewayError

STATUS_SUCCESSFUL = "successful"
STATUS_PENDING = "pending"
STATUS_FAILED = "failed"

_PENDING_STATUSES = {"pending", "processing", "initiated"}
_SUCCESS_STATUSES = {"success", "successful"}
_PENDING_ERROR_HINTS = ("not found", "processing", "pending", "not available")


def normalize_transaction_status(value: Any) -> str:
    """Collapse gateway status strings onto successful/pending/failed."""
    text = str(value or "").strip().lower()
    if text in _SUCCESS_STATUSES:
        return STATUS_SUCCESSFUL
    if not text or text in _PENDING_STATUSES:
        return STATUS_PENDING
    return STATUS_FAILED


def parse_amount(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


@dataclass(frozen=True)
class GatewayTransaction:
    tx_ref: str
    status: str
    raw_status: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def is_successful(self) -> bool:
        return self.status == STATUS_SUCCESSFUL

    @property
    def is_pending(self) -> bool:
        return self.status == STATUS_PENDING

    @classmethod
    def pending(cls, tx_ref: str, raw_status: str | None = None) -> "GatewayTransaction":
        return cls(tx_ref=tx_ref, status=STATUS_PENDING, raw_status=raw_status)


class PaymentGateway(Protocol):
    async def initialize(
        self,
        *,
        tx_ref: str,
        amount: Decimal,
        customer_phone: str,
        customer_name: str = "",
        customer_email: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> str:
        ...

    async def verify(self, tx_ref: str) -> GatewayTransaction:
        ...


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if not isinstance(body, dict):
        return str(body)
    message = body.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return str(message.get("message") or message.get("error") or message)
    if body.get("error"):
        return str(body["error"])
    return resp.text or f"HTTP {resp.status_code}"


class ChapaClient:
    """Chapa transaction API: hosted checkout initialize and verify."""

    def __init__(
        self,
        base_url: str,
        secret_key: str,
        *,
        currency: str = "ETB",
        callback_url: str | None = None,
        return_url: str | None = None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.currency = currency
        self.callback_url = callback_url
        self.return_url = return_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_seconds,
            trust_env=False,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.secret_key}"},
        )

    async def initialize(
        self,
        *,
        tx_ref: str,
        amount: Decimal,
        customer_phone: str,
        customer_name: str = "",
        customer_email: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> str:
        first_name, _, last_name = customer_name.strip().partition(" ")
        payload: dict[str, Any] = {
            "amount": str(amount),
            "currency": self.currency,
            "phone_number": customer_phone,
            "first_name": first_name or None,
            "last_name": last_name or None,
            "email": customer_email or None,
            "tx_ref": tx_ref,
            "callback_url": self.callback_url,
            "return_url": f"{self.return_url}?tx_ref={tx_ref}" if self.return_url else None,
            "meta": meta or {},
        }
        payload = {key: value for key, value in payload.items() if value is not None}
        url = f"{self.base_url}/initialize"
        logger.info("client[chapa] request method=POST url={} tx_ref={} amount={}", url, tx_ref, payload["amount"])
        try:
            async with self._client() as client:
                resp = await client.post(url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("client[chapa] initialize.transport_error tx_ref={} error={}", tx_ref, exc)
            raise GatewayError(f"Payment gateway unreachable: {exc}") from exc

        logger.info(
            "client[chapa] response method=POST url={} status={} body={}",
            url,
            resp.status_code,
            resp.text,
        )
        if resp.is_error:
            raise GatewayError(_error_message(resp), upstream_status=resp.status_code)

        data = resp.json()
        checkout_url = (data.get("data") or {}).get("checkout_url") if isinstance(data, dict) else None
        if not checkout_url:
            raise GatewayError("Payment gateway did not return a checkout URL")
        return str(checkout_url)

    async def verify(self, tx_ref: str) -> GatewayTransaction:
        """Ask the gateway for the transaction state.

        Timeouts, transport failures, 404 and "still processing" answers come
        back as a pending transaction so callers can retry. Any other upstream
        failure raises GatewayError.
        """
        url = f"{self.base_url}/verify/{tx_ref}"
        logger.info("client[chapa] request method=GET url={}", url)
        try:
            async with self._client() as client:
                resp = await client.get(url)
        except httpx.HTTPError as exc:
            logger.warning("client[chapa] verify.transport_error tx_ref={} error={}", tx_ref, exc)
            return GatewayTransaction.pending(tx_ref)

        logger.info(
            "client[chapa] response method=GET url={} status={} body={}",
            url,
            resp.status_code,
            resp.text,
        )
        if resp.is_error:
            message = _error_message(resp)
            if resp.status_code == 404 or any(hint in message.lower() for hint in _PENDING_ERROR_HINTS):
                return GatewayTransaction.pending(tx_ref)
            raise GatewayError(message, upstream_status=resp.status_code)

        try:
            body = resp.json()
        except ValueError:
            return GatewayTransaction.pending(tx_ref)
        if not isinstance(body, dict) or body.get("status") != "success" or not isinstance(body.get("data"), dict):
            return GatewayTransaction.pending(tx_ref)

        data = body["data"]
        meta = data.get("meta")
        return GatewayTransaction(
            tx_ref=str(data.get("tx_ref") or tx_ref),
            status=normalize_transaction_status(data.get("status")),
            raw_status=data.get("status"),
            amount=parse_amount(data.get("amount")),
            currency=data.get("currency"),
            meta=meta if isinstance(meta, dict) else {},
        )


_gateway_singleton: PaymentGateway | None = None


def get_payment_gateway() -> PaymentGateway:
    global _gateway_singleton
    if _gateway_singleton is None:
        _gateway_singleton = ChapaClient(
            settings.chapa_base_url,
            settings.chapa_secret_key,
            currency=settings.currency,
            callback_url=settings.payment_callback_url,
            return_url=settings.payment_return_url,
            timeout_seconds=settings.gateway_timeout_seconds,
        )
    return _gateway_singleton
