"""init valet schema

Revision ID: 20261017_0001_valet
Revises:
Create Date: 2026-10-17 09:00:00

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261017_0001_valet"
down_revision = None
branch_labels = None
depends_on = None

JSON_DOCUMENT = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    op.create_table(
        "parked_vehicles",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False, comment="Primary key"),
        sa.Column("license_plate", sa.String(length=64), nullable=False, comment="Normalized plate CODE-REGION-NUMBER"),
        sa.Column("plate_code", sa.String(length=16), nullable=False, comment="Plate code"),
        sa.Column("region", sa.String(length=32), nullable=False, comment="Plate region"),
        sa.Column("license_plate_number", sa.String(length=32), nullable=False, comment="Plate number, uppercase"),
        sa.Column("car_type", sa.String(length=16), nullable=False, comment="tripod/automobile/truck/trailer"),
        sa.Column("model", sa.String(length=64), nullable=False, comment="Vehicle model"),
        sa.Column("color", sa.String(length=32), nullable=False, comment="Vehicle color"),
        sa.Column("phone_number", sa.String(length=32), nullable=False, comment="Owner phone number"),
        sa.Column("location", sa.String(length=64), nullable=False, comment="Parking zone"),
        sa.Column("notes", sa.Text(), nullable=False, comment="Free-text notes"),
        sa.Column("status", sa.String(length=16), nullable=False, comment="Visit status"),
        sa.Column("parked_at", sa.DateTime(timezone=True), nullable=False, comment="Check-in time"),
        sa.Column("checked_out_at", sa.DateTime(timezone=True), nullable=True, comment="Checkout time"),
        sa.Column("valet_id", sa.String(length=64), nullable=False, comment="Owning valet"),
        sa.Column("checked_out_by", sa.String(length=64), nullable=True, comment="Staff who checked out"),
        sa.Column("service_type", sa.String(length=16), nullable=False, comment="hourly/package"),
        sa.Column("package_duration", sa.String(length=16), nullable=True, comment="weekly/monthly/yearly"),
        sa.Column("package_subscription_id", sa.String(length=32), nullable=True, comment="Subscription shared by all visits"),
        sa.Column("package_start_date", sa.DateTime(timezone=True), nullable=True, comment="Subscription start"),
        sa.Column("package_end_date", sa.DateTime(timezone=True), nullable=True, comment="Subscription end"),
        sa.Column("payment_method", sa.String(length=16), nullable=True, comment="manual/online"),
        sa.Column("payment_reference", sa.String(length=128), nullable=True, comment="Gateway transaction reference"),
        sa.Column(
            "pending_payment_tx_ref",
            sa.String(length=128),
            nullable=True,
            comment="Last online payment reference issued for this visit",
        ),
        sa.Column("total_paid_amount", sa.Numeric(12, 2), nullable=False, comment="Total paid"),
        sa.Column("base_amount", sa.Numeric(12, 2), nullable=False, comment="Amount before VAT"),
        sa.Column("vat_amount", sa.Numeric(12, 2), nullable=False, comment="VAT amount"),
        sa.Column("vat_rate", sa.Numeric(5, 4), nullable=False, comment="VAT rate"),
        sa.Column("is_flagged", sa.Boolean(), nullable=False, comment="Left without paying"),
        sa.Column("flagged_at", sa.DateTime(timezone=True), nullable=True, comment="Flag time"),
        sa.Column("flagged_by", sa.String(length=64), nullable=True, comment="Staff who flagged"),
        sa.Column("notification_sent", sa.Boolean(), nullable=False, comment="Unpaid warning sent"),
        sa.Column(
            "last_notification_sent_at",
            sa.DateTime(timezone=True),
            nullable=True,
            comment="Last unpaid warning time",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, comment="Created at"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, comment="Updated at"),
        sa.PrimaryKeyConstraint("id"),
        comment="Parking visits (one row per physical stay)",
    )
    op.create_index(op.f("ix_parked_vehicles_license_plate"), "parked_vehicles", ["license_plate"], unique=False)
    op.create_index(op.f("ix_parked_vehicles_phone_number"), "parked_vehicles", ["phone_number"], unique=False)
    op.create_index(op.f("ix_parked_vehicles_status"), "parked_vehicles", ["status"], unique=False)
    op.create_index(op.f("ix_parked_vehicles_is_flagged"), "parked_vehicles", ["is_flagged"], unique=False)
    op.create_index(
        op.f("ix_parked_vehicles_package_subscription_id"),
        "parked_vehicles",
        ["package_subscription_id"],
        unique=False,
    )
    op.create_index(op.f("ix_parked_vehicles_payment_reference"), "parked_vehicles", ["payment_reference"], unique=False)
    op.create_index(
        op.f("ix_parked_vehicles_pending_payment_tx_ref"),
        "parked_vehicles",
        ["pending_payment_tx_ref"],
        unique=False,
    )
    op.create_index("ix_parked_vehicles_valet_id_parked_at", "parked_vehicles", ["valet_id", "parked_at"], unique=False)
    op.create_index(
        "uq_parked_vehicles_active_plate",
        "parked_vehicles",
        ["license_plate"],
        unique=True,
        postgresql_where=sa.text("status = 'parked'"),
        sqlite_where=sa.text("status = 'parked'"),
    )

    op.create_table(
        "pending_package_payments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False, comment="Primary key"),
        sa.Column("tx_ref", sa.String(length=128), nullable=False, comment="Gateway transaction reference"),
        sa.Column("vehicle_payload", JSON_DOCUMENT, nullable=False, comment="Vehicle to create on success"),
        sa.Column("package_duration", sa.String(length=16), nullable=False, comment="weekly/monthly/yearly"),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False, comment="Declared amount"),
        sa.Column("customer_phone", sa.String(length=32), nullable=False, comment="Paying customer phone"),
        sa.Column("valet_id", sa.String(length=64), nullable=False, comment="Initiating valet"),
        sa.Column("park_zone_code", sa.String(length=64), nullable=False, comment="Zone of the initiating valet"),
        sa.Column("status", sa.String(length=16), nullable=False, comment="pending/consumed/conflict"),
        sa.Column("vehicle_id", sa.Integer(), nullable=True, comment="Materialized vehicle"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, comment="Created at"),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True, comment="Claim time"),
        sa.PrimaryKeyConstraint("id"),
        comment="Package purchases awaiting gateway confirmation",
    )
    op.create_index(op.f("ix_pending_package_payments_tx_ref"), "pending_package_payments", ["tx_ref"], unique=True)
    op.create_index(op.f("ix_pending_package_payments_status"), "pending_package_payments", ["status"], unique=False)
    op.create_index(
        op.f("ix_pending_package_payments_created_at"),
        "pending_package_payments",
        ["created_at"],
        unique=False,
    )

    op.create_table(
        "pricing_settings",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False, comment="Primary key"),
        sa.Column("settings", JSON_DOCUMENT, nullable=False, comment="Price tables and VAT rate"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, comment="Created at"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, comment="Updated at"),
        sa.PrimaryKeyConstraint("id"),
        comment="Singleton pricing document",
    )


def downgrade() -> None:
    op.drop_table("pricing_settings")
    op.drop_index(op.f("ix_pending_package_payments_created_at"), table_name="pending_package_payments")
    op.drop_index(op.f("ix_pending_package_payments_status"), table_name="pending_package_payments")
    op.drop_index(op.f("ix_pending_package_payments_tx_ref"), table_name="pending_package_payments")
    op.drop_table("pending_package_payments")
    op.drop_index("uq_parked_vehicles_active_plate", table_name="parked_vehicles")
    op.drop_index("ix_parked_vehicles_valet_id_parked_at", table_name="parked_vehicles")
    op.drop_index(op.f("ix_parked_vehicles_pending_payment_tx_ref"), table_name="parked_vehicles")
    op.drop_index(op.f("ix_parked_vehicles_payment_reference"), table_name="parked_vehicles")
    op.drop_index(op.f("ix_parked_vehicles_package_subscription_id"), table_name="parked_vehicles")
    op.drop_index(op.f("ix_parked_vehicles_is_flagged"), table_name="parked_vehicles")
    op.drop_index(op.f("ix_parked_vehicles_status"), table_name="parked_vehicles")
    op.drop_index(op.f("ix_parked_vehicles_phone_number"), table_name="parked_vehicles")
    op.drop_index(op.f("ix_parked_vehicles_license_plate"), table_name="parked_vehicles")
    op.drop_table("parked_vehicles")
