from __future__ import annotations

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from tana_valet_api.schemas.vehicle import PackageDuration, VehicleDetails, VehicleSummary

TransactionStatus = Literal["successful", "pending", "failed"]


class DirectPaymentInitRequest(BaseModel):
    """Online checkout of a vehicle that is already parked."""

    vehicle_id: int = Field(description="Parked vehicle ID")
    amount: Decimal = Field(gt=0, description="Amount to charge")
    customer_name: str = Field(default="", description="Customer name")
    customer_email: str | None = Field(default=None, description="Customer email")
    customer_phone: str = Field(min_length=1, description="Customer phone")


class PackagePaymentInitRequest(BaseModel):
    """Payment-first package purchase; the vehicle is created after confirmation."""

    amount: Decimal = Field(gt=0, description="Package price")
    package_duration: PackageDuration = Field(description="Package duration")
    customer_phone: str = Field(min_length=1, description="Customer phone")
    service_type: Literal["package"] = Field(default="package", description="Always package")
    vehicle: VehicleDetails = Field(description="Vehicle to register once paid")


class PaymentInitResponse(BaseModel):
    success: bool = True
    tx_ref: str = Field(description="Gateway transaction reference")
    checkout_url: str = Field(description="Hosted checkout page")
    public_key: str = Field(description="Gateway public key for inline checkout")
    message: str


class TransactionView(BaseModel):
    status: TransactionStatus
    tx_ref: str
    amount: Decimal | None = None
    currency: str | None = None


class PaymentVerifyResponse(BaseModel):
    success: bool
    transaction: TransactionView
    result: str = Field(description="Reconciliation result")
    vehicle: VehicleSummary | None = None
    message: str


class CallbackAck(BaseModel):
    received: bool = True
    message: str = "Callback processed"
