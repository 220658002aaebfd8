from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel


class LowStockFinding(BaseModel):
    product_id: str
    product_name: Optional[str] = None
    current_stock: int
    minimum_level: int


class ExpiringLotFinding(BaseModel):
    product_id: str
    product_name: Optional[str] = None
    expiration_date: date
    lot_code: str
    quantity: int
    days_until_expiration: int


class AlertScanResult(BaseModel):
    clinic_id: str
    scanned_at: datetime
    expiration_threshold_days: int
    low_stock: List[LowStockFinding] = []
    expiring: List[ExpiringLotFinding] = []
    notifications_sent: int = 0
