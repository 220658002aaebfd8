from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from clinicdb.database import Base
from clinicdb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TreatmentStatusEnum(str, enum.Enum):
    PENDING = "pending"
    CONSUMED = "consumed"
    CANCELLED = "cancelled"


class TreatmentRequest(Base):
    __tablename__ = "treatment_requests"
    __table_args__ = (
        Index("ix_treatment_requests_clinic_status", "clinic_id", "status"),
        Index("ix_treatment_requests_clinic_date", "clinic_id", "request_date"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    clinic_id = Column(String(36), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False, index=True)
    patient_id = Column(String(36), ForeignKey("patients.id", ondelete="RESTRICT"), nullable=False, index=True)
    request_date = Column(Date, nullable=False)
    treatment_type = Column(String(128), nullable=False)
    status = Column(
        SAEnum(TreatmentStatusEnum, name="treatment_status_enum", native_enum=False),
        nullable=False,
        default=TreatmentStatusEnum.PENDING,
    )
    notes = Column(Text, nullable=True)
    performed_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    version_id = Column(Integer, nullable=False)

    products_used = relationship(
        "RequestProductUsage",
        back_populates="request",
        lazy="selectin",
        order_by="RequestProductUsage.position",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}


class RequestProductUsage(Base):
    __tablename__ = "request_product_usages"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_request_product_usages_quantity_positive"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    request_id = Column(String(36), ForeignKey("treatment_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    lot_code = Column(String(64), nullable=False)
    expiration_date = Column(Date, nullable=False)

    request = relationship("TreatmentRequest", back_populates="products_used")
