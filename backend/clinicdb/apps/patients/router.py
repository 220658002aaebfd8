from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from clinicdb.database import get_db, get_read_db
from clinicdb.security import CurrentContext, get_current_context

from . import schemas, services

router = APIRouter(prefix="/patients", tags=["patients"])


@router.post("/", response_model=schemas.PatientRead, status_code=status.HTTP_201_CREATED)
def create_patient(
    payload: schemas.PatientCreate,
    db: Session = Depends(get_db),
    current: CurrentContext = Depends(get_current_context),
):
    patient = services.create_patient(db, clinic_id=current.clinic_id, payload=payload)
    db.commit()
    db.refresh(patient)
    return patient


@router.get("/", response_model=List[schemas.PatientRead])
def list_patients(
    search: Optional[str] = None,
    phone: Optional[str] = None,
    email: Optional[str] = None,
    db: Session = Depends(get_read_db),
    current: CurrentContext = Depends(get_current_context),
):
    return services.list_patients(db, clinic_id=current.clinic_id, search=search, phone=phone, email=email)


@router.get("/{patient_id}", response_model=schemas.PatientRead)
def get_patient(
    patient_id: str,
    db: Session = Depends(get_read_db),
    current: CurrentContext = Depends(get_current_context),
):
    return services.get_patient(db, clinic_id=current.clinic_id, patient_id=patient_id)


@router.get("/{patient_id}/treatments", response_model=List[schemas.PatientTreatmentRead])
def list_treatment_history(
    patient_id: str,
    db: Session = Depends(get_read_db),
    current: CurrentContext = Depends(get_current_context),
):
    return services.list_treatment_history(db, clinic_id=current.clinic_id, patient_id=patient_id)


@router.patch("/{patient_id}", response_model=schemas.PatientRead)
def update_patient(
    patient_id: str,
    payload: schemas.PatientUpdate,
    db: Session = Depends(get_db),
    current: CurrentContext = Depends(get_current_context),
):
    patient = services.update_patient(db, clinic_id=current.clinic_id, patient_id=patient_id, payload=payload)
    db.commit()
    db.refresh(patient)
    return patient
