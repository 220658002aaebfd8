from __future__ import annotations

import asyncio
import json

from starlette.requests import Request

from clinicdb.apps.invoices import models as invoice_models
from clinicdb.apps.invoices import router as invoices_router
from clinicdb.apps.invoices import schemas as invoice_schemas
from clinicdb.errors import InsufficientStockError, StockIssue, StockIssueReason, ValidationError
from clinicdb.main import app, handle_domain_error
from clinicdb.security import CurrentContext, Role
from conftest import TODAY, days_from_today


def _make_request(path: str = "/") -> Request:
    return Request({"type": "http", "method": "POST", "path": path, "headers": [], "query_string": b""})


def test_routers_are_registered():
    paths = set(app.openapi()["paths"])

    for expected in (
        "/health",
        "/clinics/",
        "/patients/",
        "/patients/{patient_id}",
        "/products/",
        "/products/{product_id}/approve",
        "/inventory/",
        "/inventory/stock/remove",
        "/requests/",
        "/requests/{request_id}/consume",
        "/invoices/",
        "/invoices/{invoice_id}/status",
        "/alerts/",
        "/audit/",
        "/events/history",
    ):
        assert expected in paths


def test_domain_errors_render_as_json():
    response = asyncio.run(
        handle_domain_error(_make_request(), ValidationError("Invalid input", detail=[{"field": "quantity", "reason": "must be positive"}]))
    )

    assert response.status_code == 422
    assert json.loads(response.body) == {
        "code": "validation_error",
        "message": "Invalid input",
        "detail": [{"field": "quantity", "reason": "must be positive"}],
    }


def test_insufficient_stock_lists_issues():
    issue = StockIssue(
        reason=StockIssueReason.LOT_NOT_FOUND,
        product_id="p-1",
        lot_code="L1",
        expiration_date=TODAY,
        requested=2,
    )

    response = asyncio.run(handle_domain_error(_make_request(), InsufficientStockError([issue])))

    body = json.loads(response.body)
    assert response.status_code == 409
    assert body["issues"][0]["reason"] == "LOT_NOT_FOUND"


def test_clinic_users_cannot_create_approved_invoices(core, clinic, product):
    payload = invoice_schemas.InvoiceCreate(
        invoice_number="NF-77",
        supplier="Supplier",
        emission_date=TODAY,
        status=invoice_models.InvoiceStatusEnum.APPROVED,
        lines=[
            {
                "product_id": product.id,
                "quantity": 3,
                "unit_price": "9.90",
                "expiration_date": days_from_today(60),
                "lot_code": "L1",
            }
        ],
    )
    current = CurrentContext(user_id="user-1", clinic_id=clinic.id, role=Role.CLINIC_USER)

    created = invoices_router.create_invoice(payload, core=core, current=current)

    assert created.invoice.status == invoice_models.InvoiceStatusEnum.PENDING
    assert created.invoice.created_by == "user-1"
    assert core.ledger.get_item(clinic.id, product.id) is None
