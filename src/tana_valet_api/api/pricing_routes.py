from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tana_valet_api.auth import StaffIdentity, get_current_staff
from tana_valet_api.db.session import get_db_session
from tana_valet_api.services.pricing import get_or_create_pricing_settings, vat_rate_from

router = APIRouter(prefix="/api/v1", tags=["pricing"])


@router.get("/pricing-settings", summary="Current pricing document")
async def get_pricing_settings(
    db: AsyncSession = Depends(get_db_session),
    staff: StaffIdentity = Depends(get_current_staff),
) -> dict[str, Any]:
    row = await get_or_create_pricing_settings(db)
    return {"settings": row.settings, "vat_rate": str(vat_rate_from(row.settings))}
