from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from . import models


class InvoiceLineIn(BaseModel):
    """
    One invoice line as submitted by a clinic.

    `product_id` may be a catalog id or an external product code; unknown
    codes are provisioned as pending products. Range checks are done by the
    service so every failing line is reported at once.
    """

    product_id: str = Field(..., min_length=1)
    quantity: int
    unit_price: Decimal
    expiration_date: date
    lot_code: str = ""
    batch_number: Optional[str] = None


class InvoiceCreate(BaseModel):
    invoice_number: str = Field(..., min_length=1, max_length=64)
    supplier: str = Field(..., min_length=1, max_length=255)
    emission_date: date
    lines: List[InvoiceLineIn] = []
    status: models.InvoiceStatusEnum = models.InvoiceStatusEnum.PENDING
    attachments: List[str] = []
    notes: Optional[str] = None
    created_by: Optional[str] = None


class InvoiceUpdate(BaseModel):
    invoice_number: Optional[str] = Field(default=None, min_length=1, max_length=64)
    supplier: Optional[str] = Field(default=None, min_length=1, max_length=255)
    emission_date: Optional[date] = None
    lines: Optional[List[InvoiceLineIn]] = None
    status: Optional[models.InvoiceStatusEnum] = None
    attachments: Optional[List[str]] = None
    notes: Optional[str] = None


class InvoiceStatusUpdate(BaseModel):
    status: models.InvoiceStatusEnum


class AddInvoiceLinesRequest(BaseModel):
    lines: List[InvoiceLineIn] = Field(..., min_length=1)


class InvoiceLineRead(BaseModel):
    product_id: str
    quantity: int
    unit_price: Decimal
    expiration_date: date
    lot_code: str
    batch_number: Optional[str] = None

    class Config:
        from_attributes = True


class InvoiceRead(BaseModel):
    id: str
    clinic_id: str
    invoice_number: str
    supplier: str
    emission_date: date
    total_value: Decimal
    status: models.InvoiceStatusEnum
    lines: List[InvoiceLineRead] = []
    attachments: List[str] = []
    notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    stock_applied_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class InvoiceWithWarnings(BaseModel):
    invoice: InvoiceRead
    warnings: List[str] = []


class LineValidationResult(BaseModel):
    valid: bool
    issues: List[str] = []
    pending_products: List[str] = []
