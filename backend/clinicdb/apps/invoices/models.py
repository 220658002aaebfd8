from __future__ import annotations

import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from clinicdb.database import Base
from clinicdb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvoiceStatusEnum(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class SupplierInvoice(Base):
    __tablename__ = "supplier_invoices"
    __table_args__ = (
        UniqueConstraint("clinic_id", "invoice_number", name="uq_supplier_invoice_clinic_number"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    clinic_id = Column(String(36), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False, index=True)
    invoice_number = Column(String(64), nullable=False)
    supplier = Column(String(255), nullable=False)
    emission_date = Column(Date, nullable=False)
    total_value = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    status = Column(
        SAEnum(InvoiceStatusEnum, name="invoice_status_enum", native_enum=False),
        nullable=False,
        default=InvoiceStatusEnum.PENDING,
        index=True,
    )
    attachments = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    # Set in the transaction that added the invoice's lines to the ledger.
    stock_applied_at = Column(DateTime(timezone=True), nullable=True)
    version_id = Column(Integer, nullable=False)

    lines = relationship(
        "SupplierInvoiceLine",
        back_populates="invoice",
        lazy="selectin",
        order_by="SupplierInvoiceLine.position",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def stock_applied(self) -> bool:
        return self.stock_applied_at is not None


class SupplierInvoiceLine(Base):
    __tablename__ = "supplier_invoice_lines"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_supplier_invoice_lines_quantity_positive"),
        CheckConstraint("unit_price > 0", name="ck_supplier_invoice_lines_unit_price_positive"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    invoice_id = Column(String(36), ForeignKey("supplier_invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    expiration_date = Column(Date, nullable=False)
    lot_code = Column(String(64), nullable=False)
    batch_number = Column(String(64), nullable=True)

    invoice = relationship("SupplierInvoice", back_populates="lines")
