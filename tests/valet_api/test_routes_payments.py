from __future__ import annotations

import asyncio
import re
from datetime import datetime
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from tana_valet_api.db.models import ParkedVehicle, PendingPackagePayment
from tana_valet_api.errors import GatewayError
from tana_valet_api.services.clock import ensure_utc
from tana_valet_api.services.subscriptions import add_months


def _as_utc(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))


async def _park(async_client: AsyncClient, headers: dict[str, str], payload: dict) -> dict:
    resp = await async_client.post("/api/v1/vehicles", json=payload, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["vehicle"]


async def _start_package(async_client: AsyncClient, headers: dict[str, str], vehicle: dict, amount: str = "500") -> str:
    resp = await async_client.post(
        "/api/v1/payments/chapa/initialize-package",
        json={
            "amount": amount,
            "package_duration": "monthly",
            "customer_phone": vehicle["phone_number"],
            "service_type": "package",
            "vehicle": vehicle,
        },
        headers=headers,
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["tx_ref"]


async def _vehicle_count(session_maker) -> int:
    async with session_maker() as session:
        return (await session.execute(select(func.count()).select_from(ParkedVehicle))).scalar_one()


@pytest.mark.anyio
async def test_direct_payment_initialize_and_poll(
    async_client: AsyncClient,
    fake_gateway,
    staff_headers,
    vehicle_payload,
) -> None:
    headers = staff_headers()
    vehicle = await _park(async_client, headers, vehicle_payload())

    init = await async_client.post(
        "/api/v1/payments/chapa/initialize",
        json={"vehicle_id": vehicle["id"], "amount": "115", "customer_phone": "0911223344", "customer_name": "Abebe"},
        headers=headers,
    )
    assert init.status_code == 200, init.text
    body = init.json()
    tx_ref = body["tx_ref"]
    assert re.fullmatch(rf"tana-{vehicle['id']}-\d+-[a-z0-9]{{8}}", tx_ref)
    assert body["checkout_url"] == f"https://checkout.test/{tx_ref}"
    assert fake_gateway.initialized[0]["meta"]["vehicle_id"] == vehicle["id"]

    waiting = await async_client.get(f"/api/v1/payments/chapa/verify/{tx_ref}")
    assert waiting.status_code == 200
    assert waiting.json()["success"] is False
    assert waiting.json()["transaction"]["status"] == "pending"

    fake_gateway.settle(tx_ref)
    done = await async_client.get(f"/api/v1/payments/chapa/verify/{tx_ref}", params={"vehicle_id": vehicle["id"]})
    assert done.status_code == 200
    result = done.json()
    assert result["success"] is True
    assert result["result"] == "checked_out"
    assert result["vehicle"]["status"] == "checked_out"

    detail = (await async_client.get(f"/api/v1/vehicles/{vehicle['id']}", headers=headers)).json()
    assert detail["payment_method"] == "online"
    assert detail["payment_reference"] == tx_ref
    assert Decimal(detail["total_paid_amount"]) == Decimal("115.00")


@pytest.mark.anyio
async def test_direct_payment_requires_parked_vehicle(async_client: AsyncClient, staff_headers, vehicle_payload) -> None:
    headers = staff_headers()
    vehicle = await _park(async_client, headers, vehicle_payload())
    await async_client.put(f"/api/v1/vehicles/{vehicle['id']}", json={"status": "checked_out"}, headers=headers)

    resp = await async_client.post(
        "/api/v1/payments/chapa/initialize",
        json={"vehicle_id": vehicle["id"], "amount": "50", "customer_phone": "0911223344"},
        headers=headers,
    )
    assert resp.status_code == 409

    missing = await async_client.post(
        "/api/v1/payments/chapa/initialize",
        json={"vehicle_id": 999999, "amount": "50", "customer_phone": "0911223344"},
        headers=headers,
    )
    assert missing.status_code == 404


@pytest.mark.anyio
async def test_direct_payment_limited_to_owner_or_elevated(
    async_client: AsyncClient,
    session_maker,
    staff_headers,
    vehicle_payload,
) -> None:
    vehicle = await _park(async_client, staff_headers(), vehicle_payload())
    body = {"vehicle_id": vehicle["id"], "amount": "50", "customer_phone": "0911223344"}

    other = await async_client.post("/api/v1/payments/chapa/initialize", json=body, headers=staff_headers("valet-2"))
    assert other.status_code == 403
    async with session_maker() as session:
        stored = await session.get(ParkedVehicle, vehicle["id"])
        assert stored.pending_payment_tx_ref is None

    manager = await async_client.post(
        "/api/v1/payments/chapa/initialize",
        json=body,
        headers=staff_headers("m-1", "manager"),
    )
    assert manager.status_code == 200, manager.text


@pytest.mark.anyio
async def test_package_payment_rejected_for_parked_plate(
    async_client: AsyncClient,
    session_maker,
    fake_gateway,
    staff_headers,
    vehicle_payload,
) -> None:
    headers = staff_headers()
    payload = vehicle_payload()
    await _park(async_client, headers, payload)

    resp = await async_client.post(
        "/api/v1/payments/chapa/initialize-package",
        json={
            "amount": "500",
            "package_duration": "monthly",
            "customer_phone": payload["phone_number"],
            "vehicle": payload,
        },
        headers=headers,
    )
    assert resp.status_code == 409
    assert resp.json()["detail"] == "Car with this license plate is already parked"
    assert fake_gateway.initialized == []
    async with session_maker() as session:
        remaining = (await session.execute(select(func.count()).select_from(PendingPackagePayment))).scalar_one()
    assert remaining == 0


@pytest.mark.anyio
async def test_package_payment_first_flow(
    async_client: AsyncClient,
    session_maker,
    fake_gateway,
    staff_headers,
    vehicle_payload,
) -> None:
    headers = staff_headers()
    tx_ref = await _start_package(async_client, headers, vehicle_payload())
    assert re.fullmatch(r"tana-pkg-\d+-[a-z0-9]{8}", tx_ref)
    assert await _vehicle_count(session_maker) == 0

    fake_gateway.settle(tx_ref, amount="500.00")
    resp = await async_client.get(f"/api/v1/payments/chapa/verify-package/{tx_ref}")
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["success"] is True
    assert body["result"] == "materialized"
    vehicle = body["vehicle"]
    assert vehicle["service_type"] == "package"
    assert vehicle["package_duration"] == "monthly"
    assert _as_utc(vehicle["package_end_date"]) == add_months(_as_utc(vehicle["package_start_date"]), 1)

    async with session_maker() as session:
        record = (
            await session.execute(select(PendingPackagePayment).where(PendingPackagePayment.tx_ref == tx_ref))
        ).scalar_one()
        assert record.status == "consumed"
        assert record.vehicle_id == vehicle["id"]
        stored = await session.get(ParkedVehicle, vehicle["id"])
        assert stored.location == "ZONE-A"
        assert stored.valet_id == "valet-1"
        assert stored.total_paid_amount == Decimal("500.00")

    again = await async_client.get(f"/api/v1/payments/chapa/verify-package/{tx_ref}")
    assert again.json()["result"] == "already_materialized"
    assert again.json()["vehicle"]["id"] == vehicle["id"]
    assert await _vehicle_count(session_maker) == 1


@pytest.mark.anyio
async def test_package_payment_is_valet_only(async_client: AsyncClient, staff_headers, vehicle_payload) -> None:
    resp = await async_client.post(
        "/api/v1/payments/chapa/initialize-package",
        json={
            "amount": "500",
            "package_duration": "monthly",
            "customer_phone": "0911223344",
            "vehicle": vehicle_payload(),
        },
        headers=staff_headers("m-1", "manager"),
    )
    assert resp.status_code == 403


@pytest.mark.anyio
async def test_package_initialize_failure_discards_payload(
    async_client: AsyncClient,
    session_maker,
    fake_gateway,
    staff_headers,
    vehicle_payload,
) -> None:
    fake_gateway.initialize_error = GatewayError("Invalid API Key", upstream_status=401)
    resp = await async_client.post(
        "/api/v1/payments/chapa/initialize-package",
        json={
            "amount": "500",
            "package_duration": "monthly",
            "customer_phone": "0911223344",
            "vehicle": vehicle_payload(),
        },
        headers=staff_headers(),
    )
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Invalid API Key"
    async with session_maker() as session:
        remaining = (await session.execute(select(func.count()).select_from(PendingPackagePayment))).scalar_one()
    assert remaining == 0


@pytest.mark.anyio
async def test_verify_package_unknown_reference(async_client: AsyncClient) -> None:
    resp = await async_client.get("/api/v1/payments/chapa/verify-package/tana-pkg-0-unknown")
    assert resp.status_code == 404


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("method", "path", "build"),
    [
        ("post", "/api/v1/payments/chapa/callback", lambda ref: {"json": {"data": {"tx_ref": ref, "status": "success"}}}),
        ("post", "/api/v1/payments/chapa/callback", lambda ref: {"json": {"trx_ref": ref, "status": "successful"}}),
        ("post", "/api/v1/payments/chapa/webhook", lambda ref: {"json": {"txRef": ref, "status": "success"}}),
        ("get", "/api/v1/payments/chapa/callback", lambda ref: {"params": {"trx_ref": ref, "status": "success"}}),
    ],
)
async def test_callback_shapes_materialize_package(
    async_client: AsyncClient,
    session_maker,
    fake_gateway,
    staff_headers,
    vehicle_payload,
    method: str,
    path: str,
    build,
) -> None:
    tx_ref = await _start_package(async_client, staff_headers(), vehicle_payload())
    fake_gateway.settle(tx_ref)

    resp = await getattr(async_client, method)(path, **build(tx_ref))
    assert resp.status_code == 200
    assert resp.json()["received"] is True
    assert await _vehicle_count(session_maker) == 1

    replay = await getattr(async_client, method)(path, **build(tx_ref))
    assert replay.status_code == 200
    assert await _vehicle_count(session_maker) == 1


@pytest.mark.anyio
async def test_callback_acknowledges_internal_errors(
    async_client: AsyncClient,
    fake_gateway,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def _boom(tx_ref: str):
        raise RuntimeError("gateway client exploded")

    monkeypatch.setattr(fake_gateway, "verify", _boom)
    resp = await async_client.post("/api/v1/payments/chapa/callback", json={"tx_ref": "tana-x", "status": "success"})
    assert resp.status_code == 200
    assert resp.json()["received"] is True

    not_json = await async_client.post(
        "/api/v1/payments/chapa/callback",
        content=b"tx_ref=tana-x",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert not_json.status_code == 200

    no_ref = await async_client.get("/api/v1/payments/chapa/callback", params={"status": "success"})
    assert no_ref.status_code == 200
    assert no_ref.json()["message"] == "Missing transaction reference"


@pytest.mark.anyio
async def test_concurrent_webhook_and_poll_materialize_once(
    async_client: AsyncClient,
    session_maker,
    fake_gateway,
    staff_headers,
    vehicle_payload,
) -> None:
    tx_ref = await _start_package(async_client, staff_headers(), vehicle_payload())
    fake_gateway.settle(tx_ref)

    poll, webhook, redirect = await asyncio.gather(
        async_client.get(f"/api/v1/payments/chapa/verify-package/{tx_ref}"),
        async_client.post("/api/v1/payments/chapa/callback", json={"data": {"tx_ref": tx_ref, "status": "success"}}),
        async_client.get("/api/v1/payments/chapa/callback", params={"trx_ref": tx_ref, "status": "success"}),
    )
    assert poll.status_code == webhook.status_code == redirect.status_code == 200
    assert poll.json()["result"] in ("materialized", "already_materialized")
    assert await _vehicle_count(session_maker) == 1
