from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Date, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import relationship

from clinicdb.database import Base
from clinicdb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Patient(Base):
    __tablename__ = "patients"

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    clinic_id = Column(String(36), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    document_number = Column(String(32), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    birth_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    treatment_history = relationship(
        "PatientTreatment",
        back_populates="patient",
        lazy="selectin",
        order_by="PatientTreatment.added_at",
        cascade="all, delete-orphan",
    )

    @property
    def treatment_request_ids(self) -> list[str]:
        return [entry.request_id for entry in self.treatment_history]


class PatientTreatment(Base):
    """Append-only link from a patient to one of their treatment requests."""

    __tablename__ = "patient_treatments"
    __table_args__ = (
        UniqueConstraint("patient_id", "request_id", name="uq_patient_treatment_request"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    patient_id = Column(String(36), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    request_id = Column(String(36), ForeignKey("treatment_requests.id", ondelete="CASCADE"), nullable=False)
    added_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    patient = relationship("Patient", back_populates="treatment_history")
