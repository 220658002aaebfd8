# backend/clinicdb/errors.py
"""
Domain errors for the clinic supply core.

Every service raises one of these; callers branch on the class (or on
`code` / `StockIssue.reason`), never on the message text. The FastAPI
exception handler in `clinicdb.main` turns them into JSON responses using
`status_code`.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional


Detail = List[Dict[str, str]]


class ClinicSupplyError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, message: str, *, detail: Optional[Detail] = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Detail = list(detail or [])
        if code:
            self.code = code

    def as_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "detail": self.detail}


class ValidationError(ClinicSupplyError):
    """Malformed or out-of-range input, itemized per field."""

    code = "validation_error"
    status_code = 422


class NotFoundError(ClinicSupplyError):
    code = "not_found"
    status_code = 404


class InvalidStateError(ClinicSupplyError):
    """Operation not legal for the entity's current lifecycle state."""

    code = "invalid_state"
    status_code = 409


class InvalidOperationError(InvalidStateError):
    code = "invalid_operation"


class AlreadyApprovedError(InvalidStateError):
    code = "already_approved"


class DuplicateError(ClinicSupplyError):
    code = "duplicate"
    status_code = 409


class ProductNotApprovedError(ClinicSupplyError):
    code = "product_not_approved"
    status_code = 422


class StorageConflictError(ClinicSupplyError):
    """Raised once transaction retries on a contended row are exhausted."""

    code = "storage_conflict"
    status_code = 503


def from_pydantic(exc) -> ValidationError:
    """Convert a pydantic ValidationError into the domain one, field by field."""
    detail = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ())) or "body"
        detail.append({"field": field, "reason": error.get("msg", "invalid")})
    return ValidationError("Invalid input", detail=detail)


class StockIssueReason(str, enum.Enum):
    PRODUCT_NOT_IN_LEDGER = "PRODUCT_NOT_IN_LEDGER"
    LOT_NOT_FOUND = "LOT_NOT_FOUND"
    INSUFFICIENT_LOT_QUANTITY = "INSUFFICIENT_LOT_QUANTITY"


@dataclass
class StockIssue:
    reason: StockIssueReason
    product_id: str
    lot_code: str
    expiration_date: date
    requested: int
    available: int = 0

    def describe(self) -> str:
        if self.reason == StockIssueReason.PRODUCT_NOT_IN_LEDGER:
            return f"Product {self.product_id} not found in inventory"
        if self.reason == StockIssueReason.LOT_NOT_FOUND:
            return f"Lot {self.lot_code} ({self.expiration_date.isoformat()}) not found for product {self.product_id}"
        return (
            f"Insufficient quantity in lot {self.lot_code} for product {self.product_id}. "
            f"Available: {self.available}, Required: {self.requested}"
        )

    def as_dict(self) -> dict:
        return {
            "reason": self.reason.value,
            "product_id": self.product_id,
            "lot_code": self.lot_code,
            "expiration_date": self.expiration_date.isoformat(),
            "requested": self.requested,
            "available": self.available,
        }


class InsufficientStockError(ClinicSupplyError):
    code = "insufficient_stock"
    status_code = 409

    def __init__(self, issues: List[StockIssue], *, message: Optional[str] = None) -> None:
        self.issues = list(issues)
        super().__init__(
            message or "Insufficient stock: " + "; ".join(issue.describe() for issue in self.issues),
            detail=[{"field": issue.product_id, "reason": issue.reason.value} for issue in self.issues],
        )

    @property
    def reasons(self) -> set[StockIssueReason]:
        return {issue.reason for issue in self.issues}

    def as_dict(self) -> dict:
        payload = super().as_dict()
        payload["issues"] = [issue.as_dict() for issue in self.issues]
        return payload
