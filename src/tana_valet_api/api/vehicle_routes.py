from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from tana_valet_api.auth import StaffIdentity, get_current_staff
from tana_valet_api.db.models import ParkedVehicle
from tana_valet_api.db.session import get_db_session
from tana_valet_api.schemas.vehicle import (
    VehicleCreateRequest,
    VehicleFlagRequest,
    VehicleMutationResponse,
    VehicleResponse,
    VehicleStatus,
    VehicleUpdateRequest,
)
from tana_valet_api.services import lifecycle
from tana_valet_api.services.notifications import Notifier, get_notifier
from tana_valet_api.services.pricing import get_or_create_pricing_settings, vat_rate_from

router = APIRouter(prefix="/api/v1/vehicles", tags=["vehicles"])


@router.post(
    "",
    response_model=VehicleMutationResponse,
    status_code=201,
    summary="Check a vehicle in",
    description="Registers a parked visit. Rejected when the plate is already parked or the customer is flagged.",
)
async def create_vehicle(
    payload: VehicleCreateRequest,
    db: AsyncSession = Depends(get_db_session),
    staff: StaffIdentity = Depends(get_current_staff),
) -> VehicleMutationResponse:
    logger.info("create_vehicle.request staff_id={} payload={}", staff.staff_id, payload.model_dump(mode="json"))
    pricing = await get_or_create_pricing_settings(db)
    vehicle = await lifecycle.register_vehicle(db, staff, payload, pricing_document=pricing.settings)
    return VehicleMutationResponse(
        message="Vehicle parked successfully",
        vehicle=VehicleResponse.model_validate(vehicle),
    )


@router.get("", response_model=list[VehicleResponse], summary="List visits")
async def list_vehicles(
    status: VehicleStatus | None = Query(default=None),
    valet_id: str | None = Query(default=None, description="Only honored for managers and admins"),
    db: AsyncSession = Depends(get_db_session),
    staff: StaffIdentity = Depends(get_current_staff),
) -> list[ParkedVehicle]:
    return await lifecycle.list_vehicles(db, staff, status=status, valet_id=valet_id)


@router.get("/flagged", response_model=list[VehicleResponse], summary="List unpaid checked-out visits")
async def list_flagged_vehicles(
    db: AsyncSession = Depends(get_db_session),
    staff: StaffIdentity = Depends(get_current_staff),
) -> list[ParkedVehicle]:
    return await lifecycle.list_flagged_vehicles(db)


@router.get("/{vehicle_id}", response_model=VehicleResponse, summary="Get one visit")
async def get_vehicle(
    vehicle_id: int,
    db: AsyncSession = Depends(get_db_session),
    staff: StaffIdentity = Depends(get_current_staff),
) -> ParkedVehicle:
    return await lifecycle.get_vehicle(db, vehicle_id)


@router.put(
    "/{vehicle_id}",
    response_model=VehicleMutationResponse,
    summary="Change visit status",
    description=(
        "checked_out closes the visit, violation marks it, parked on a closed package visit "
        "opens a new visit on the same subscription."
    ),
)
async def update_vehicle(
    vehicle_id: int,
    payload: VehicleUpdateRequest,
    db: AsyncSession = Depends(get_db_session),
    staff: StaffIdentity = Depends(get_current_staff),
    notifier: Notifier = Depends(get_notifier),
) -> VehicleMutationResponse:
    logger.info(
        "update_vehicle.request vehicle_id={} staff_id={} payload={}",
        vehicle_id,
        staff.staff_id,
        payload.model_dump(mode="json", exclude_none=True),
    )
    pricing = await get_or_create_pricing_settings(db)
    result = await lifecycle.update_vehicle(
        db,
        staff,
        vehicle_id,
        payload,
        notifier=notifier,
        vat_rate=vat_rate_from(pricing.settings),
    )
    return VehicleMutationResponse(message=result.message, vehicle=VehicleResponse.model_validate(result.vehicle))


@router.delete("/{vehicle_id}", summary="Delete a visit")
async def delete_vehicle(
    vehicle_id: int,
    db: AsyncSession = Depends(get_db_session),
    staff: StaffIdentity = Depends(get_current_staff),
) -> dict[str, str]:
    await lifecycle.delete_vehicle(db, staff, vehicle_id)
    return {"message": "Parked vehicle deleted successfully"}


@router.put("/{vehicle_id}/flag", response_model=VehicleMutationResponse, summary="Flag an unpaid visit")
async def flag_vehicle(
    vehicle_id: int,
    payload: VehicleFlagRequest,
    db: AsyncSession = Depends(get_db_session),
    staff: StaffIdentity = Depends(get_current_staff),
) -> VehicleMutationResponse:
    vehicle = await lifecycle.flag_vehicle(db, staff, vehicle_id, payload)
    return VehicleMutationResponse(
        message="Vehicle flagged successfully",
        vehicle=VehicleResponse.model_validate(vehicle),
    )


@router.post("/{vehicle_id}/notify", response_model=VehicleMutationResponse, summary="SMS a flagged customer")
async def notify_flagged_customer(
    vehicle_id: int,
    db: AsyncSession = Depends(get_db_session),
    staff: StaffIdentity = Depends(get_current_staff),
    notifier: Notifier = Depends(get_notifier),
) -> VehicleMutationResponse:
    pricing = await get_or_create_pricing_settings(db)
    vehicle = await lifecycle.notify_flagged_customer(
        db,
        vehicle_id,
        notifier=notifier,
        pricing_document=pricing.settings,
    )
    return VehicleMutationResponse(
        message="Notification sent successfully",
        vehicle=VehicleResponse.model_validate(vehicle),
    )
