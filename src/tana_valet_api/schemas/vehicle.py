from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

CarType = Literal["tripod", "automobile", "truck", "trailer"]
VehicleStatus = Literal["parked", "checked_out", "violation"]
ServiceType = Literal["hourly", "package"]
PackageDuration = Literal["weekly", "monthly", "yearly"]
PaymentMethod = Literal["manual", "online"]


class VehicleDetails(BaseModel):
    """Descriptive vehicle fields shared by registration and package purchase."""

    plate_code: str = Field(min_length=1, description="Plate code")
    region: str = Field(min_length=1, description="Plate region")
    license_plate_number: str = Field(min_length=1, description="Plate number")
    car_type: CarType = Field(description="Vehicle type")
    model: str = Field(default="", description="Vehicle model")
    color: str = Field(default="", description="Vehicle color")
    phone_number: str = Field(min_length=1, description="Owner phone number")
    notes: str = Field(default="", description="Free-text notes")


class VehicleCreateRequest(VehicleDetails):
    """Vehicle check-in request."""

    service_type: ServiceType = Field(default="hourly", description="Service classification")
    package_duration: PackageDuration | None = Field(default=None, description="Required for package service")

    @model_validator(mode="after")
    def validate_package_duration(self) -> "VehicleCreateRequest":
        if self.service_type == "package" and self.package_duration is None:
            raise ValueError("package_duration is required for package service")
        if self.service_type == "hourly":
            self.package_duration = None
        return self


class VehicleUpdateRequest(BaseModel):
    """Status change or amendment of a visit."""

    status: VehicleStatus | None = Field(default=None, description="Requested status")
    notes: str | None = Field(default=None, description="Replacement notes")
    total_paid_amount: Decimal | None = Field(default=None, ge=0, description="Amount paid at checkout, VAT included")
    payment_method: PaymentMethod | None = Field(default=None, description="Settlement method")


class VehicleFlagRequest(BaseModel):
    """Mark a visit as left without paying."""

    base_amount: Decimal | None = Field(default=None, ge=0, description="Owed amount before VAT")
    vat_amount: Decimal | None = Field(default=None, ge=0, description="Owed VAT")
    total_with_vat: Decimal | None = Field(default=None, ge=0, description="Owed total")


class VehicleResponse(BaseModel):
    """Parking visit."""

    model_config = ConfigDict(from_attributes=True)

    id: int = Field(description="Visit ID")
    license_plate: str = Field(description="Normalized plate")
    plate_code: str
    region: str
    license_plate_number: str
    car_type: str
    model: str
    color: str
    phone_number: str
    location: str
    notes: str
    status: str = Field(description="parked/checked_out/violation")
    parked_at: datetime
    checked_out_at: datetime | None
    valet_id: str
    checked_out_by: str | None
    service_type: str
    package_duration: str | None
    package_subscription_id: str | None
    package_start_date: datetime | None
    package_end_date: datetime | None
    payment_method: str | None
    payment_reference: str | None
    total_paid_amount: Decimal
    base_amount: Decimal
    vat_amount: Decimal
    vat_rate: Decimal
    is_flagged: bool
    flagged_at: datetime | None
    notification_sent: bool


class VehicleSummary(BaseModel):
    """Short vehicle view attached to payment responses."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    license_plate: str
    status: str
    service_type: str
    phone_number: str
    package_duration: str | None = None
    package_start_date: datetime | None = None
    package_end_date: datetime | None = None


class VehicleMutationResponse(BaseModel):
    message: str
    vehicle: VehicleResponse
