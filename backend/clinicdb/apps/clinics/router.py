from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from clinicdb.database import get_db, get_read_db
from clinicdb.security import CurrentContext, Role, get_current_context, require_roles

from . import schemas, services

router = APIRouter(prefix="/clinics", tags=["clinics"])


@router.post("/", response_model=schemas.ClinicRead, status_code=status.HTTP_201_CREATED)
def create_clinic(
    payload: schemas.ClinicCreate,
    db: Session = Depends(get_db),
    current: CurrentContext = Depends(require_roles(Role.SYSTEM_ADMIN)),
):
    clinic = services.create_clinic(db, payload=payload)
    db.commit()
    db.refresh(clinic)
    return clinic


@router.get("/me", response_model=schemas.ClinicRead)
def get_my_clinic(
    db: Session = Depends(get_read_db),
    current: CurrentContext = Depends(get_current_context),
):
    return services.get_clinic(db, current.clinic_id)
