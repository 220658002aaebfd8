from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ClinicCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    cnpj: Optional[str] = None
    email: Optional[str] = None
    city: Optional[str] = None
    time_zone: Optional[str] = None
    low_stock_alerts: bool = True
    expiration_alerts: bool = True
    alert_threshold_days: int = Field(30, ge=0)


class ClinicRead(BaseModel):
    id: str
    name: str
    cnpj: Optional[str] = None
    email: Optional[str] = None
    city: Optional[str] = None
    time_zone: Optional[str] = None
    low_stock_alerts: bool
    expiration_alerts: bool
    alert_threshold_days: int
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True
