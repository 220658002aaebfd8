from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query, status

from clinicdb.core import Core, get_core
from clinicdb.errors import NotFoundError
from clinicdb.security import CurrentContext, Role, get_current_context, require_roles

from . import schemas

router = APIRouter(prefix="/inventory", tags=["inventory"])

INVENTORY_ADMIN_ROLES = [Role.CLINIC_ADMIN]


@router.get("/", response_model=List[schemas.InventoryItemRead])
def list_inventory(
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return core.ledger.list_inventory(current.clinic_id)


@router.get("/low-stock", response_model=List[schemas.InventoryItemRead])
def list_low_stock(
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return core.ledger.list_low_stock(current.clinic_id)


@router.get("/expiring", response_model=List[schemas.ExpiringItemRead])
def list_expiring(
    days_ahead: int = Query(30, ge=0),
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return [
        schemas.ExpiringItemRead(
            item=schemas.InventoryItemRead.model_validate(item),
            expiring_lots=[schemas.LotRead.model_validate(lot) for lot in lots],
        )
        for item, lots in core.ledger.list_expiring(current.clinic_id, days_ahead)
    ]


@router.post("/availability", response_model=schemas.AvailabilityResult)
def check_availability(
    payload: schemas.AvailabilityCheckRequest,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return core.ledger.check_availability(current.clinic_id, payload.lines)


@router.get("/{product_id}", response_model=schemas.InventoryItemRead)
def get_item(
    product_id: str,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    item = core.ledger.get_item(current.clinic_id, product_id)
    if item is None:
        raise NotFoundError(f"Product {product_id} not found in inventory")
    return item


@router.get("/{product_id}/lots", response_model=List[schemas.LotRead])
def list_available_lots(
    product_id: str,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(get_current_context),
):
    return core.ledger.list_available_lots(current.clinic_id, product_id)


@router.post("/stock", response_model=schemas.InventoryItemRead, status_code=status.HTTP_201_CREATED)
def add_stock(
    payload: schemas.AddStockRequest,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(require_roles(*INVENTORY_ADMIN_ROLES)),
):
    return core.ledger.add_stock(
        current.clinic_id,
        payload.product_id,
        payload.quantity,
        payload.expiration_date,
        payload.lot_code,
        payload.reference_id,
        actor_user_id=current.user_id,
    )


@router.post("/stock/remove", response_model=List[schemas.InventoryItemRead])
def remove_stock(
    payload: schemas.RemoveStockRequest,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(require_roles(*INVENTORY_ADMIN_ROLES)),
):
    return core.ledger.remove_stock(
        current.clinic_id,
        payload.lines,
        payload.reference_id,
        actor_user_id=current.user_id,
    )


@router.put("/{product_id}/minimum-level", response_model=schemas.InventoryItemRead)
def update_minimum_level(
    product_id: str,
    payload: schemas.MinimumLevelUpdate,
    core: Core = Depends(get_core),
    current: CurrentContext = Depends(require_roles(*INVENTORY_ADMIN_ROLES)),
):
    return core.ledger.update_minimum_level(
        current.clinic_id,
        product_id,
        payload.minimum_stock_level,
        actor_user_id=current.user_id,
    )
