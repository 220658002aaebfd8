from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from . import models


class ProductCreate(BaseModel):
    name: str
    description: Optional[str] = None
    external_code: str
    category: str = "General"
    unit_type: models.UnitTypeEnum = models.UnitTypeEnum.UNITS
    status: models.ProductStatusEnum = models.ProductStatusEnum.PENDING
    requested_by_clinic_id: Optional[str] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    unit_type: Optional[models.UnitTypeEnum] = None


class ProductApprove(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=500)


class ProductApprovalRead(BaseModel):
    approved_by: str
    approved_at: datetime
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class ProductRead(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    external_code: str
    category: str
    unit_type: models.UnitTypeEnum
    status: models.ProductStatusEnum
    requested_by_clinic_id: Optional[str] = None
    approval_history: List[ProductApprovalRead] = []
    created_at: datetime

    class Config:
        from_attributes = True
