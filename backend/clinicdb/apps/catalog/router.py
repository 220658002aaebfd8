from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, status

from clinicdb.core import Core, get_core
from clinicdb.security import CurrentContext, Role, get_current_context, require_roles

from . import models, schemas

router = APIRouter(prefix="/products", tags=["catalog"])

CATALOG_ADMIN_ROLES = [Role.SYSTEM_ADMIN]


@router.get("/", response_model=List[schemas.ProductRead])
def list_products(
    status_filter: Optional[models.ProductStatusEnum] = None,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return core.catalog.list(status_filter)


@router.get("/by-code/{external_code}", response_model=schemas.ProductRead)
def get_product_by_code(
    external_code: str,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return core.catalog.get_by_code(external_code)


@router.get("/{product_id}", response_model=schemas.ProductRead)
def get_product(
    product_id: str,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return core.catalog.get(product_id)


@router.post("/", response_model=schemas.ProductRead, status_code=status.HTTP_201_CREATED)
def create_product(
    payload: schemas.ProductCreate,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(require_roles(*CATALOG_ADMIN_ROLES)),
):
    return core.catalog.create_product(payload, actor_user_id=current.user_id)


@router.patch("/{product_id}", response_model=schemas.ProductRead)
def update_product(
    product_id: str,
    payload: schemas.ProductUpdate,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(require_roles(*CATALOG_ADMIN_ROLES)),
):
    return core.catalog.update_product(product_id, payload)


@router.post("/{product_id}/approve", response_model=schemas.ProductRead)
def approve_product(
    product_id: str,
    payload: schemas.ProductApprove,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(require_roles(*CATALOG_ADMIN_ROLES)),
):
    return core.catalog.approve(product_id, current.user_id, payload.notes)
