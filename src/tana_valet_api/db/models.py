from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, Numeric, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from tana_valet_api.db.base import Base

JSONDocument = JSON().with_variant(JSONB(), "postgresql")

VEHICLE_STATUS_PARKED = "parked"
VEHICLE_STATUS_CHECKED_OUT = "checked_out"
VEHICLE_STATUS_VIOLATION = "violation"

SERVICE_HOURLY = "hourly"
SERVICE_PACKAGE = "package"

PAYMENT_MANUAL = "manual"
PAYMENT_ONLINE = "online"

PENDING_STATUS_PENDING = "pending"
PENDING_STATUS_CONSUMED = "consumed"
# Paid, but the plate was already parked; kept for manual follow-up.
PENDING_STATUS_CONFLICT = "conflict"


def _utcnow_utc() -> datetime:
    return datetime.now(UTC)


class ParkedVehicle(Base):
    __tablename__ = "parked_vehicles"
    __table_args__ = (
        Index(
            "uq_parked_vehicles_active_plate",
            "license_plate",
            unique=True,
            postgresql_where=text("status = 'parked'"),
            sqlite_where=text("status = 'parked'"),
        ),
        Index("ix_parked_vehicles_valet_id_parked_at", "valet_id", "parked_at"),
        {"comment": "Parking visits (one row per physical stay)"},
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True, comment="Primary key")
    license_plate: Mapped[str] = mapped_column(String(64), index=True, comment="Normalized plate CODE-REGION-NUMBER")
    plate_code: Mapped[str] = mapped_column(String(16), comment="Plate code")
    region: Mapped[str] = mapped_column(String(32), comment="Plate region")
    license_plate_number: Mapped[str] = mapped_column(String(32), comment="Plate number, uppercase")
    car_type: Mapped[str] = mapped_column(String(16), comment="tripod/automobile/truck/trailer")
    model: Mapped[str] = mapped_column(String(64), default="", comment="Vehicle model")
    color: Mapped[str] = mapped_column(String(32), default="", comment="Vehicle color")
    phone_number: Mapped[str] = mapped_column(String(32), index=True, comment="Owner phone number")
    location: Mapped[str] = mapped_column(String(64), comment="Parking zone")
    notes: Mapped[str] = mapped_column(Text, default="", comment="Free-text notes")

    status: Mapped[str] = mapped_column(String(16), index=True, default=VEHICLE_STATUS_PARKED, comment="Visit status")
    parked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow_utc, comment="Check-in time")
    checked_out_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Checkout time"
    )
    valet_id: Mapped[str] = mapped_column(String(64), comment="Owning valet")
    checked_out_by: Mapped[str | None] = mapped_column(String(64), nullable=True, comment="Staff who checked out")

    service_type: Mapped[str] = mapped_column(String(16), default=SERVICE_HOURLY, comment="hourly/package")
    package_duration: Mapped[str | None] = mapped_column(String(16), nullable=True, comment="weekly/monthly/yearly")
    package_subscription_id: Mapped[str | None] = mapped_column(
        String(32), nullable=True, index=True, comment="Subscription shared by all visits"
    )
    package_start_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Subscription start"
    )
    package_end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Subscription end"
    )

    payment_method: Mapped[str | None] = mapped_column(String(16), nullable=True, comment="manual/online")
    payment_reference: Mapped[str | None] = mapped_column(
        String(128), nullable=True, index=True, comment="Gateway transaction reference"
    )
    pending_payment_tx_ref: Mapped[str | None] = mapped_column(
        String(128), nullable=True, index=True, comment="Last online payment reference issued for this visit"
    )
    total_paid_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"), comment="Total paid")
    base_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"), comment="Amount before VAT")
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"), comment="VAT amount")
    vat_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), default=Decimal("0.15"), comment="VAT rate")

    is_flagged: Mapped[bool] = mapped_column(Boolean, default=False, index=True, comment="Left without paying")
    flagged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, comment="Flag time")
    flagged_by: Mapped[str | None] = mapped_column(String(64), nullable=True, comment="Staff who flagged")
    notification_sent: Mapped[bool] = mapped_column(Boolean, default=False, comment="Unpaid warning sent")
    last_notification_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Last unpaid warning time"
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow_utc, comment="Created at")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow_utc, onupdate=_utcnow_utc, comment="Updated at"
    )


class PendingPackagePayment(Base):
    __tablename__ = "pending_package_payments"
    __table_args__ = ({"comment": "Package purchases awaiting gateway confirmation"},)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True, comment="Primary key")
    tx_ref: Mapped[str] = mapped_column(String(128), unique=True, index=True, comment="Gateway transaction reference")
    vehicle_payload: Mapped[dict] = mapped_column(JSONDocument, default=dict, comment="Vehicle to create on success")
    package_duration: Mapped[str] = mapped_column(String(16), comment="weekly/monthly/yearly")
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), comment="Declared amount")
    customer_phone: Mapped[str] = mapped_column(String(32), comment="Paying customer phone")
    valet_id: Mapped[str] = mapped_column(String(64), comment="Initiating valet")
    park_zone_code: Mapped[str] = mapped_column(String(64), comment="Zone of the initiating valet")
    status: Mapped[str] = mapped_column(
        String(16), index=True, default=PENDING_STATUS_PENDING, comment="pending/consumed/conflict"
    )
    vehicle_id: Mapped[int | None] = mapped_column(Integer, nullable=True, comment="Materialized vehicle")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow_utc, index=True, comment="Created at"
    )
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, comment="Claim time")


class PricingSettings(Base):
    __tablename__ = "pricing_settings"
    __table_args__ = ({"comment": "Singleton pricing document"},)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True, comment="Primary key")
    settings: Mapped[dict] = mapped_column(JSONDocument, default=dict, comment="Price tables and VAT rate")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow_utc, comment="Created at")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow_utc, onupdate=_utcnow_utc, comment="Updated at"
    )
