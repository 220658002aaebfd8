from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from . import models


class ProductUsage(BaseModel):
    """One caller-specified consumption line: product, lot and quantity."""

    product_id: str
    quantity: int = Field(..., gt=0)
    lot_code: str = Field(..., min_length=1)
    expiration_date: date


class LotRead(BaseModel):
    expiration_date: date
    lot_code: str
    quantity: int

    class Config:
        from_attributes = True


class InventoryItemRead(BaseModel):
    id: str
    clinic_id: str
    product_id: str
    quantity_in_stock: int
    minimum_stock_level: int
    lots: List[LotRead] = []
    last_movement_type: Optional[models.MovementTypeEnum] = None
    last_movement_quantity: Optional[int] = None
    last_movement_reference_id: Optional[str] = None
    last_movement_at: Optional[datetime] = None
    last_update: datetime

    class Config:
        from_attributes = True


class AddStockRequest(BaseModel):
    product_id: str
    quantity: int = Field(..., gt=0)
    expiration_date: date
    lot_code: str = Field(..., min_length=1)
    reference_id: str = "manual_adjustment"


class RemoveStockRequest(BaseModel):
    lines: List[ProductUsage] = Field(..., min_length=1)
    reference_id: str = "manual_adjustment"


class AvailabilityCheckRequest(BaseModel):
    lines: List[ProductUsage] = Field(..., min_length=1)


class AvailabilityResult(BaseModel):
    available: bool
    issues: List[str] = []


class MinimumLevelUpdate(BaseModel):
    minimum_stock_level: int = Field(..., ge=0)


class ExpiringItemRead(BaseModel):
    item: InventoryItemRead
    expiring_lots: List[LotRead]
