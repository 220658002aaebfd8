from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from clinicdb.apps.inventory.schemas import ProductUsage

from . import models


class TreatmentRequestCreate(BaseModel):
    patient_id: str
    request_date: date
    treatment_type: str = Field(..., min_length=1, max_length=128)
    products_used: List[ProductUsage] = []
    notes: Optional[str] = None
    performed_by: Optional[str] = None


class TreatmentRequestUpdate(BaseModel):
    request_date: Optional[date] = None
    treatment_type: Optional[str] = Field(default=None, min_length=1, max_length=128)
    products_used: Optional[List[ProductUsage]] = None
    notes: Optional[str] = None
    performed_by: Optional[str] = None


class AddProductsRequest(BaseModel):
    products: List[ProductUsage] = Field(..., min_length=1)


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RequestProductUsageRead(BaseModel):
    product_id: str
    quantity: int
    lot_code: str
    expiration_date: date

    class Config:
        from_attributes = True


class TreatmentRequestRead(BaseModel):
    id: str
    clinic_id: str
    patient_id: str
    request_date: date
    treatment_type: str
    status: models.TreatmentStatusEnum
    products_used: List[RequestProductUsageRead] = []
    notes: Optional[str] = None
    performed_by: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class TreatmentRequestCreated(BaseModel):
    request: TreatmentRequestRead
    warnings: List[str] = []


class ProductUsageStat(BaseModel):
    product_id: str
    quantity: int
