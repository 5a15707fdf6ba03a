from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest

from tana_valet_api.clients.payment_gateway import ChapaClient, normalize_transaction_status
from tana_valet_api.errors import GatewayError


def _client(handler) -> ChapaClient:
    return ChapaClient(
        "https://chapa.test/v1/transaction",
        "sk-test",
        currency="ETB",
        callback_url="https://valet.test/api/v1/payments/chapa/callback",
        return_url="https://app.test/payment/callback",
        transport=httpx.MockTransport(handler),
    )


def test_normalize_transaction_status() -> None:
    assert normalize_transaction_status("success") == "successful"
    assert normalize_transaction_status("Successful") == "successful"
    assert normalize_transaction_status("processing") == "pending"
    assert normalize_transaction_status(None) == "pending"
    assert normalize_transaction_status("failed") == "failed"
    assert normalize_transaction_status("cancelled") == "failed"


@pytest.mark.anyio
async def test_initialize_should_post_checkout_and_return_url() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": "success", "data": {"checkout_url": "https://checkout.chapa.co/x"}})

    url = await _client(handler).initialize(
        tx_ref="tana-7-1700000000000-abcd1234",
        amount=Decimal("115.00"),
        customer_phone="0911223344",
        customer_name="Abebe Kebede",
        meta={"vehicle_id": 7},
    )

    assert url == "https://checkout.chapa.co/x"
    assert seen["url"] == "https://chapa.test/v1/transaction/initialize"
    assert seen["auth"] == "Bearer sk-test"
    body = seen["body"]
    assert body["amount"] == "115.00"
    assert body["first_name"] == "Abebe"
    assert body["last_name"] == "Kebede"
    assert "email" not in body
    assert body["meta"] == {"vehicle_id": 7}
    assert body["return_url"] == "https://app.test/payment/callback?tx_ref=tana-7-1700000000000-abcd1234"


@pytest.mark.anyio
async def test_initialize_should_surface_upstream_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"message": {"amount": ["The amount must be a number"]}})

    with pytest.raises(GatewayError) as exc_info:
        await _client(handler).initialize(tx_ref="t1", amount=Decimal("1"), customer_phone="0911")
    assert exc_info.value.status_code == 400


@pytest.mark.anyio
async def test_verify_should_parse_successful_transaction() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/verify/t-ok")
        return httpx.Response(
            200,
            json={
                "status": "success",
                "data": {"tx_ref": "t-ok", "status": "success", "amount": "500.00", "currency": "ETB", "meta": {"vehicle_id": "9"}},
            },
        )

    tx = await _client(handler).verify("t-ok")
    assert tx.is_successful
    assert tx.amount == Decimal("500.00")
    assert tx.meta == {"vehicle_id": "9"}


@pytest.mark.anyio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(404, json={"message": "Invalid transaction or Transaction not found"}),
        httpx.Response(400, json={"message": "Transaction is still processing"}),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"status": "failed", "message": "whatever"}),
    ],
)
async def test_verify_should_treat_transient_answers_as_pending(response: httpx.Response) -> None:
    tx = await _client(lambda request: response).verify("t-wait")
    assert tx.is_pending


@pytest.mark.anyio
async def test_verify_should_treat_timeout_as_pending() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    tx = await _client(handler).verify("t-slow")
    assert tx.is_pending


@pytest.mark.anyio
async def test_verify_should_raise_on_unexpected_upstream_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"message": "Invalid API Key"})

    with pytest.raises(GatewayError) as exc_info:
        await _client(handler).verify("t-auth")
    assert exc_info.value.status_code == 401
