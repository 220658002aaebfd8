from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from clinicdb.database import Base
from clinicdb.utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Clinic(Base):
    """
    A clinic is the tenant boundary.

    Ledger rows, treatment requests, invoices and patients are always
    scoped to exactly one clinic; only approved catalog products are shared.
    """

    __tablename__ = "clinics"

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    name = Column(String(255), nullable=False)
    cnpj = Column(String(32), unique=True, nullable=True, index=True)
    email = Column(String(255), nullable=True)
    city = Column(String(128), nullable=True)
    time_zone = Column(String(64), nullable=True)

    # Per-clinic notification preferences.
    low_stock_alerts = Column(Boolean, nullable=False, default=True)
    expiration_alerts = Column(Boolean, nullable=False, default=True)
    alert_threshold_days = Column(Integer, nullable=False, default=30)

    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<Clinic id={self.id} name={self.name!r}>"
