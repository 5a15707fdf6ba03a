from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncGenerator, Callable
from decimal import Decimal
from typing import Any
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from tana_valet_api.clients.payment_gateway import GatewayTransaction, get_payment_gateway, normalize_transaction_status
from tana_valet_api.db.base import Base
from tana_valet_api.db.session import get_db_session
from tana_valet_api.errors import GatewayError
from tana_valet_api.main import app
from tana_valet_api.services.notifications import get_notifier


def _keep_test_data_enabled() -> bool:
    return os.getenv("KEEP_TEST_DATA", "0") == "1"


class FakeGateway:
    """In-memory gateway: checkouts are recorded, verify answers what the test settled."""

    def __init__(self) -> None:
        self.initialized: list[dict[str, Any]] = []
        self.verify_calls: list[str] = []
        self.settled: dict[str, dict[str, Any]] = {}
        self.initialize_error: GatewayError | None = None

    def settle(
        self,
        tx_ref: str,
        status: str = "success",
        amount: Decimal | str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        started = next((item for item in self.initialized if item["tx_ref"] == tx_ref), {})
        self.settled[tx_ref] = {
            "status": status,
            "amount": Decimal(str(amount)) if amount is not None else started.get("amount"),
            "meta": meta if meta is not None else started.get("meta") or {},
        }

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
        if self.initialize_error is not None:
            raise self.initialize_error
        self.initialized.append(
            {"tx_ref": tx_ref, "amount": amount, "customer_phone": customer_phone, "meta": meta or {}}
        )
        return f"https://checkout.test/{tx_ref}"

    async def verify(self, tx_ref: str) -> GatewayTransaction:
        self.verify_calls.append(tx_ref)
        await asyncio.sleep(0)
        entry = self.settled.get(tx_ref)
        if entry is None:
            return GatewayTransaction.pending(tx_ref)
        return GatewayTransaction(
            tx_ref=tx_ref,
            status=normalize_transaction_status(entry["status"]),
            raw_status=entry["status"],
            amount=entry["amount"],
            currency="ETB",
            meta=entry["meta"],
        )


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    async def send_sms(self, phone_number: str, message: str) -> None:
        if self.fail:
            raise RuntimeError("sms provider down")
        self.sent.append((phone_number, message))


def _staff_headers(staff_id: str = "valet-1", role: str = "valet", zone: str | None = "ZONE-A") -> dict[str, str]:
    headers = {"X-Staff-Id": staff_id, "X-Staff-Role": role}
    if zone:
        headers["X-Park-Zone"] = zone
    return headers


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session")
def staff_headers() -> Callable[..., dict[str, str]]:
    return _staff_headers


@pytest.fixture(scope="function")
def uniq() -> str:
    return uuid4().hex[:6].upper()


@pytest.fixture(scope="function")
def valet_test_database_url(tmp_path) -> str:
    return os.getenv("VALET_TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'valet_test.db'}"


@pytest.fixture(scope="function")
async def engine(valet_test_database_url: str) -> AsyncGenerator[AsyncEngine, None]:
    test_engine = create_async_engine(valet_test_database_url, echo=False, future=True)
    try:
        async with test_engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
    except Exception as exc:
        await test_engine.dispose()
        pytest.skip(f"Valet API tests skipped: cannot connect test DB ({exc})")

    yield test_engine

    if not _keep_test_data_enabled():
        async with test_engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture(scope="function")
def session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture(scope="function")
async def db_session(session_maker: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session


@pytest.fixture(scope="function")
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture(scope="function")
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(scope="function")
async def async_client(
    session_maker: async_sessionmaker[AsyncSession],
    fake_gateway: FakeGateway,
    notifier: RecordingNotifier,
) -> AsyncGenerator[AsyncClient, None]:
    # One session per request, so concurrent requests behave like separate workers.
    async def _override_get_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = _override_get_db_session
    app.dependency_overrides[get_payment_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def vehicle_payload(uniq: str) -> Callable[..., dict[str, Any]]:
    def _build(**overrides: Any) -> dict[str, Any]:
        payload = {
            "plate_code": "3",
            "region": "AA",
            "license_plate_number": f"B{uniq}",
            "car_type": "automobile",
            "model": "Corolla",
            "color": "white",
            "phone_number": "0911223344",
            "notes": "",
        }
        payload.update(overrides)
        return payload

    return _build
