from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from loguru import logger
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tana_valet_api.config import settings
from tana_valet_api.db.models import (
    PENDING_STATUS_CONFLICT,
    PENDING_STATUS_CONSUMED,
    PENDING_STATUS_PENDING,
    PendingPackagePayment,
)
from tana_valet_api.services.clock import ensure_utc, utcnow


class PendingPaymentStore:
    """Durable map from transaction reference to an unmaterialized package purchase.

    A row is claimed exactly once by flipping ``pending`` to ``consumed`` with a
    conditional update; the row then stays behind as an audit record pointing
    at the vehicle it produced until the purge job removes it.
    """

    def __init__(self, session: AsyncSession, ttl_seconds: int | None = None) -> None:
        self.session = session
        self.ttl_seconds = settings.pending_payment_ttl_seconds if ttl_seconds is None else ttl_seconds

    def _cutoff(self, now: datetime) -> datetime:
        return now - timedelta(seconds=self.ttl_seconds)

    def is_expired(self, record: PendingPackagePayment, now: datetime | None = None) -> bool:
        now = now or utcnow()
        created_at = ensure_utc(record.created_at)
        return created_at is not None and created_at < self._cutoff(now)

    async def create(
        self,
        *,
        tx_ref: str,
        vehicle_payload: dict[str, Any],
        package_duration: str,
        amount: Decimal,
        customer_phone: str,
        valet_id: str,
        park_zone_code: str,
    ) -> PendingPackagePayment:
        row = PendingPackagePayment(
            tx_ref=tx_ref,
            vehicle_payload=vehicle_payload,
            package_duration=package_duration,
            amount=amount,
            customer_phone=customer_phone,
            valet_id=valet_id,
            park_zone_code=park_zone_code,
            status=PENDING_STATUS_PENDING,
        )
        self.session.add(row)
        await self.session.commit()
        await self.session.refresh(row)
        logger.info("pending_payment.created tx_ref={} duration={} amount={}", tx_ref, package_duration, str(amount))
        return row

    async def find(self, tx_ref: str) -> PendingPackagePayment | None:
        """Row for tx_ref in any state, reloaded from the database."""
        stmt = (
            select(PendingPackagePayment)
            .where(PendingPackagePayment.tx_ref == tx_ref)
            .execution_options(populate_existing=True)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def get(self, tx_ref: str, now: datetime | None = None) -> PendingPackagePayment | None:
        """Claimable payload for tx_ref, or None once consumed or expired."""
        row = await self.find(tx_ref)
        if row is None or row.status != PENDING_STATUS_PENDING or self.is_expired(row, now):
            return None
        return row

    async def claim(self, tx_ref: str, now: datetime | None = None) -> bool:
        """Atomically take ownership of a pending payload. Does not commit."""
        now = now or utcnow()
        stmt = (
            update(PendingPackagePayment)
            .where(
                PendingPackagePayment.tx_ref == tx_ref,
                PendingPackagePayment.status == PENDING_STATUS_PENDING,
                PendingPackagePayment.created_at >= self._cutoff(now),
            )
            .values(status=PENDING_STATUS_CONSUMED, consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        claimed = result.rowcount == 1
        logger.info("pending_payment.claim tx_ref={} claimed={}", tx_ref, claimed)
        return claimed

    async def attach_vehicle(self, tx_ref: str, vehicle_id: int) -> None:
        stmt = (
            update(PendingPackagePayment)
            .where(PendingPackagePayment.tx_ref == tx_ref)
            .values(vehicle_id=vehicle_id)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def mark_conflict(self, tx_ref: str, now: datetime | None = None) -> bool:
        """Park a paid payload that can never be materialized. Commits."""
        stmt = (
            update(PendingPackagePayment)
            .where(
                PendingPackagePayment.tx_ref == tx_ref,
                PendingPackagePayment.status == PENDING_STATUS_PENDING,
            )
            .values(status=PENDING_STATUS_CONFLICT, consumed_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        logger.error("pending_payment.conflict tx_ref={} marked={}", tx_ref, result.rowcount == 1)
        return result.rowcount == 1

    async def discard(self, tx_ref: str) -> None:
        """Drop a payload whose checkout could not be started."""
        await self.session.execute(
            delete(PendingPackagePayment).where(
                PendingPackagePayment.tx_ref == tx_ref,
                PendingPackagePayment.status == PENDING_STATUS_PENDING,
            )
        )
        await self.session.commit()
        logger.info("pending_payment.discarded tx_ref={}", tx_ref)

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete payloads older than the TTL. Conflict rows stay until someone settles them."""
        now = now or utcnow()
        stmt = delete(PendingPackagePayment).where(
            PendingPackagePayment.created_at < self._cutoff(now),
            PendingPackagePayment.status != PENDING_STATUS_CONFLICT,
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        logger.info("pending_payment.purged count={}", result.rowcount)
        return result.rowcount
