from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Response, status

from clinicdb.apps.catalog.schemas import ProductRead
from clinicdb.core import Core, get_core
from clinicdb.security import CurrentContext, Role, get_current_context, require_roles

from . import models, schemas

router = APIRouter(prefix="/invoices", tags=["invoices"])

INVOICE_APPROVER_ROLES = [Role.CLINIC_ADMIN]


def _with_warnings(result) -> schemas.InvoiceWithWarnings:
    return schemas.InvoiceWithWarnings(
        invoice=schemas.InvoiceRead.model_validate(result.invoice),
        warnings=result.warnings,
    )


@router.post("/", response_model=schemas.InvoiceWithWarnings, status_code=status.HTTP_201_CREATED)
def create_invoice(
    payload: schemas.InvoiceCreate,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    if payload.status != models.InvoiceStatusEnum.PENDING and current.role == Role.CLINIC_USER:
        payload = payload.model_copy(update={"status": models.InvoiceStatusEnum.PENDING})
    return _with_warnings(core.invoices.create(current.clinic_id, payload, actor_user_id=current.user_id))


@router.post("/validate", response_model=schemas.LineValidationResult)
def validate_lines(
    payload: schemas.AddInvoiceLinesRequest,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return core.invoices.validate_lines(payload.lines)


@router.get("/", response_model=List[schemas.InvoiceRead])
def list_invoices(
    status_filter: Optional[models.InvoiceStatusEnum] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    if status_filter is not None:
        return core.invoices.list_by_status(current.clinic_id, status_filter)
    return core.invoices.list(current.clinic_id, start=start, end=end)


@router.get("/{invoice_id}", response_model=schemas.InvoiceRead)
def get_invoice(
    invoice_id: str,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return core.invoices.get(current.clinic_id, invoice_id)


@router.get("/{invoice_id}/pending-products", response_model=List[ProductRead])
def pending_products(
    invoice_id: str,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return core.invoices.pending_products(current.clinic_id, invoice_id)


@router.patch("/{invoice_id}", response_model=schemas.InvoiceWithWarnings)
def update_invoice(
    invoice_id: str,
    payload: schemas.InvoiceUpdate,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(require_roles(*INVOICE_APPROVER_ROLES)),
):
    return _with_warnings(core.invoices.update(current.clinic_id, invoice_id, payload, actor_user_id=current.user_id))


@router.post("/{invoice_id}/products", response_model=schemas.InvoiceWithWarnings)
def add_products(
    invoice_id: str,
    payload: schemas.AddInvoiceLinesRequest,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return _with_warnings(
        core.invoices.add_products(current.clinic_id, invoice_id, payload.lines, actor_user_id=current.user_id)
    )


@router.put("/{invoice_id}/status", response_model=schemas.InvoiceRead)
def update_invoice_status(
    invoice_id: str,
    payload: schemas.InvoiceStatusUpdate,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(require_roles(*INVOICE_APPROVER_ROLES)),
):
    return core.invoices.update_status(current.clinic_id, invoice_id, payload.status, actor_user_id=current.user_id)


@router.delete("/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_invoice(
    invoice_id: str,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(require_roles(*INVOICE_APPROVER_ROLES)),
):
    core.invoices.delete(current.clinic_id, invoice_id, actor_user_id=current.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
