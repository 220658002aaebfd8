from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, status

from clinicdb.core import Core, get_core
from clinicdb.security import CurrentContext, get_current_context

from . import models, schemas

router = APIRouter(prefix="/requests", tags=["treatment-requests"])


@router.post("/", response_model=schemas.TreatmentRequestCreated, status_code=status.HTTP_201_CREATED)
def create_request(
    payload: schemas.TreatmentRequestCreate,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    created = core.requests.create(current.clinic_id, payload, actor_user_id=current.user_id)
    return schemas.TreatmentRequestCreated(
        request=schemas.TreatmentRequestRead.model_validate(created.request),
        warnings=created.warnings,
    )


@router.get("/", response_model=List[schemas.TreatmentRequestRead])
def list_requests(
    status_filter: Optional[models.TreatmentStatusEnum] = None,
    patient_id: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    if status_filter is not None:
        return core.requests.list_by_status(current.clinic_id, status_filter)
    if patient_id:
        return core.requests.list_by_patient(current.clinic_id, patient_id)
    return core.requests.list(current.clinic_id, start=start, end=end)


@router.get("/usage-stats", response_model=List[schemas.ProductUsageStat])
def product_usage_stats(
    start: Optional[date] = None,
    end: Optional[date] = None,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    stats = core.requests.product_usage_stats(current.clinic_id, start, end)
    return [schemas.ProductUsageStat(product_id=pid, quantity=qty) for pid, qty in sorted(stats.items())]


@router.get("/{request_id}", response_model=schemas.TreatmentRequestRead)
def get_request(
    request_id: str,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return core.requests.get(current.clinic_id, request_id)


@router.patch("/{request_id}", response_model=schemas.TreatmentRequestRead)
def update_request(
    request_id: str,
    payload: schemas.TreatmentRequestUpdate,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return core.requests.update(current.clinic_id, request_id, payload, actor_user_id=current.user_id)


@router.post("/{request_id}/products", response_model=schemas.TreatmentRequestRead)
def add_products(
    request_id: str,
    payload: schemas.AddProductsRequest,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return core.requests.add_products(current.clinic_id, request_id, payload.products, actor_user_id=current.user_id)


@router.post("/{request_id}/consume", response_model=schemas.TreatmentRequestRead)
def consume_request(
    request_id: str,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return core.requests.consume(current.clinic_id, request_id, actor_user_id=current.user_id)


@router.post("/{request_id}/cancel", response_model=schemas.TreatmentRequestRead)
def cancel_request(
    request_id: str,
    payload: schemas.CancelRequest,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return core.requests.cancel(current.clinic_id, request_id, payload.reason, actor_user_id=current.user_id)
