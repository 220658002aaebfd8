from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class PatientCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    document_number: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    birth_date: Optional[date] = None


class PatientUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=255)
    document_number: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    birth_date: Optional[date] = None


class PatientTreatmentRead(BaseModel):
    request_id: str
    added_at: datetime

    class Config:
        from_attributes = True


class PatientRead(BaseModel):
    id: str
    clinic_id: str
    name: str
    document_number: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    birth_date: Optional[date] = None
    treatment_history: List[PatientTreatmentRead] = []
    created_at: datetime

    class Config:
        from_attributes = True
