"""
Create clinic supply core tables: clinics, catalog, ledger, patients,
treatment requests, supplier invoices and the audit trail.

Revision ID: 5b7e1c2d9a30
Revises:
Create Date: 2025-03-10
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5b7e1c2d9a30"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(*names: str, nullable: bool = False):
    return [sa.Column(name, sa.DateTime(timezone=True), nullable=nullable) for name in names]


def upgrade() -> None:
    op.create_table(
        "clinics",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("cnpj", sa.String(length=32), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("city", sa.String(length=128), nullable=True),
        sa.Column("time_zone", sa.String(length=64), nullable=True),
        sa.Column("low_stock_alerts", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("expiration_alerts", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("alert_threshold_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps("created_at", "updated_at"),
    )
    op.create_index("ix_clinics_cnpj", "clinics", ["cnpj"], unique=True)
    op.create_index("ix_clinics_is_active", "clinics", ["is_active"])

    op.create_table(
        "products",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("external_code", sa.String(length=64), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=False, server_default="General"),
        sa.Column(
            "unit_type",
            sa.Enum("ML", "UNITS", "VIALS", name="product_unit_type_enum", native_enum=False),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("PENDING", "APPROVED", name="product_status_enum", native_enum=False),
            nullable=False,
        ),
        sa.Column(
            "requested_by_clinic_id",
            sa.String(length=36),
            sa.ForeignKey("clinics.id", ondelete="SET NULL"),
            nullable=True,
        ),
        *_timestamps("created_at", "updated_at"),
    )
    op.create_index("ix_products_external_code", "products", ["external_code"], unique=True)
    op.create_index("ix_products_status", "products", ["status"])
    op.create_index("ix_products_requested_by_clinic_id", "products", ["requested_by_clinic_id"])

    op.create_table(
        "product_approvals",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("product_id", sa.String(length=36), sa.ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
        sa.Column("approved_by", sa.String(length=64), nullable=False),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index("ix_product_approvals_product_id", "product_approvals", ["product_id"])

    op.create_table(
        "inventory_items",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("clinic_id", sa.String(length=36), sa.ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.String(length=36), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity_in_stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("minimum_stock_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "last_movement_type",
            sa.Enum("IN", "OUT", name="inventory_movement_type_enum", native_enum=False),
            nullable=True,
        ),
        sa.Column("last_movement_quantity", sa.Integer(), nullable=True),
        sa.Column("last_movement_reference_id", sa.String(length=64), nullable=True),
        *_timestamps("last_movement_at", nullable=True),
        *_timestamps("last_update"),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.UniqueConstraint("clinic_id", "product_id", name="uq_inventory_item_clinic_product"),
        sa.CheckConstraint("quantity_in_stock >= 0", name="ck_inventory_items_quantity_non_negative"),
    )
    op.create_index("ix_inventory_items_clinic", "inventory_items", ["clinic_id"])
    op.create_index("ix_inventory_items_product_id", "inventory_items", ["product_id"])

    op.create_table(
        "inventory_lots",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "item_id",
            sa.String(length=36),
            sa.ForeignKey("inventory_items.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("expiration_date", sa.Date(), nullable=False),
        sa.Column("lot_code", sa.String(length=64), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        *_timestamps("created_at"),
        sa.UniqueConstraint("item_id", "expiration_date", "lot_code", name="uq_inventory_lot_key"),
        sa.CheckConstraint("quantity > 0", name="ck_inventory_lots_quantity_positive"),
    )
    op.create_index("ix_inventory_lots_item_id", "inventory_lots", ["item_id"])
    op.create_index("ix_inventory_lots_expiration", "inventory_lots", ["expiration_date"])

    op.create_table(
        "patients",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("clinic_id", sa.String(length=36), sa.ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("document_number", sa.String(length=32), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("birth_date", sa.Date(), nullable=True),
        *_timestamps("created_at"),
    )
    op.create_index("ix_patients_clinic_id", "patients", ["clinic_id"])

    op.create_table(
        "treatment_requests",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("clinic_id", sa.String(length=36), sa.ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False),
        sa.Column("patient_id", sa.String(length=36), sa.ForeignKey("patients.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("request_date", sa.Date(), nullable=False),
        sa.Column("treatment_type", sa.String(length=128), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "CONSUMED", "CANCELLED", name="treatment_status_enum", native_enum=False),
            nullable=False,
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("performed_by", sa.String(length=64), nullable=True),
        *_timestamps("created_at", "updated_at"),
        sa.Column("version_id", sa.Integer(), nullable=False),
    )
    op.create_index("ix_treatment_requests_clinic_id", "treatment_requests", ["clinic_id"])
    op.create_index("ix_treatment_requests_patient_id", "treatment_requests", ["patient_id"])
    op.create_index("ix_treatment_requests_clinic_status", "treatment_requests", ["clinic_id", "status"])
    op.create_index("ix_treatment_requests_clinic_date", "treatment_requests", ["clinic_id", "request_date"])

    op.create_table(
        "request_product_usages",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "request_id",
            sa.String(length=36),
            sa.ForeignKey("treatment_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("product_id", sa.String(length=36), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("lot_code", sa.String(length=64), nullable=False),
        sa.Column("expiration_date", sa.Date(), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_request_product_usages_quantity_positive"),
    )
    op.create_index("ix_request_product_usages_request_id", "request_product_usages", ["request_id"])
    op.create_index("ix_request_product_usages_product_id", "request_product_usages", ["product_id"])

    op.create_table(
        "patient_treatments",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("patient_id", sa.String(length=36), sa.ForeignKey("patients.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "request_id",
            sa.String(length=36),
            sa.ForeignKey("treatment_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        *_timestamps("added_at"),
        sa.UniqueConstraint("patient_id", "request_id", name="uq_patient_treatment_request"),
    )
    op.create_index("ix_patient_treatments_patient_id", "patient_treatments", ["patient_id"])

    op.create_table(
        "supplier_invoices",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("clinic_id", sa.String(length=36), sa.ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False),
        sa.Column("invoice_number", sa.String(length=64), nullable=False),
        sa.Column("supplier", sa.String(length=255), nullable=False),
        sa.Column("emission_date", sa.Date(), nullable=False),
        sa.Column("total_value", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum("PENDING", "APPROVED", "REJECTED", name="invoice_status_enum", native_enum=False),
            nullable=False,
        ),
        sa.Column("attachments", sa.JSON(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        *_timestamps("created_at", "updated_at"),
        *_timestamps("stock_applied_at", nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.UniqueConstraint("clinic_id", "invoice_number", name="uq_supplier_invoice_clinic_number"),
    )
    op.create_index("ix_supplier_invoices_clinic_id", "supplier_invoices", ["clinic_id"])
    op.create_index("ix_supplier_invoices_status", "supplier_invoices", ["status"])

    op.create_table(
        "supplier_invoice_lines",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "invoice_id",
            sa.String(length=36),
            sa.ForeignKey("supplier_invoices.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("product_id", sa.String(length=36), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("expiration_date", sa.Date(), nullable=False),
        sa.Column("lot_code", sa.String(length=64), nullable=False),
        sa.Column("batch_number", sa.String(length=64), nullable=True),
        sa.CheckConstraint("quantity > 0", name="ck_supplier_invoice_lines_quantity_positive"),
        sa.CheckConstraint("unit_price > 0", name="ck_supplier_invoice_lines_unit_price_positive"),
    )
    op.create_index("ix_supplier_invoice_lines_invoice_id", "supplier_invoice_lines", ["invoice_id"])
    op.create_index("ix_supplier_invoice_lines_product_id", "supplier_invoice_lines", ["product_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("clinic_id", sa.String(length=36), sa.ForeignKey("clinics.id", ondelete="CASCADE"), nullable=True),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("actor_user_id", sa.String(length=64), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("before", sa.JSON(), nullable=True),
        sa.Column("after", sa.JSON(), nullable=True),
        sa.Column("correlation_id", sa.String(length=64), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
    )
    op.create_index("ix_audit_events_clinic_entity", "audit_events", ["clinic_id", "entity_type", "entity_id"])
    op.create_index("ix_audit_events_clinic_action", "audit_events", ["clinic_id", "action"])
    op.create_index("ix_audit_events_clinic_time_desc", "audit_events", ["clinic_id", sa.text("occurred_at DESC")])
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_correlation_id", "audit_events", ["correlation_id"])


def downgrade() -> None:
    for table in (
        "audit_events",
        "supplier_invoice_lines",
        "supplier_invoices",
        "patient_treatments",
        "request_product_usages",
        "treatment_requests",
        "patients",
        "inventory_lots",
        "inventory_items",
        "product_approvals",
        "products",
        "clinics",
    ):
        op.drop_table(table)
