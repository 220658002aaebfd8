from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from clinicdb.database import get_read_db
from clinicdb.security import CurrentContext, Role, get_current_context, require_roles

from . import schemas, services

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("/", response_model=List[schemas.AuditEventRead])
def list_audit_events(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_read_db),
    current: CurrentContext = Depends(require_roles(Role.CLINIC_ADMIN)),
):
    return services.list_audit_events(
        db,
        clinic_id=current.clinic_id,
        entity_type=entity_type,
        entity_id=entity_id,
        start=start,
        end=end,
    )


@router.get("/movements/{reference_id}", response_model=List[schemas.AuditEventRead])
def list_stock_movements(
    reference_id: str,
    db: Session = Depends(get_read_db),
    current: CurrentContext = Depends(get_current_context),
):
    return services.list_stock_movements(db, clinic_id=current.clinic_id, reference_id=reference_id)
