from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum as SAEnum, ForeignKey, Index, String, Text
from sqlalchemy.orm import relationship

from clinicdb.database import Base
from clinicdb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProductStatusEnum(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"


class UnitTypeEnum(str, enum.Enum):
    ML = "ml"
    UNITS = "units"
    VIALS = "vials"


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (Index("ix_products_status", "status"),)

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    external_code = Column(String(64), nullable=False, unique=True, index=True)
    category = Column(String(64), nullable=False, default="General")
    unit_type = Column(
        SAEnum(UnitTypeEnum, name="product_unit_type_enum", native_enum=False),
        nullable=False,
        default=UnitTypeEnum.UNITS,
    )
    status = Column(
        SAEnum(ProductStatusEnum, name="product_status_enum", native_enum=False),
        nullable=False,
        default=ProductStatusEnum.PENDING,
    )
    # Clinic whose invoice first referenced the product; None for catalog-created products.
    requested_by_clinic_id = Column(String(36), ForeignKey("clinics.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    approval_history = relationship(
        "ProductApproval",
        back_populates="product",
        lazy="selectin",
        order_by="ProductApproval.approved_at",
        cascade="all, delete-orphan",
    )

    @property
    def is_approved(self) -> bool:
        return self.status == ProductStatusEnum.APPROVED


class ProductApproval(Base):
    """Append-only approval history entry."""

    __tablename__ = "product_approvals"

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    approved_by = Column(String(64), nullable=False)
    approved_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    notes = Column(Text, nullable=True)

    product = relationship("Product", back_populates="approval_history")
