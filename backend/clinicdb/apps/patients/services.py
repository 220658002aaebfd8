from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from clinicdb.errors import NotFoundError, ValidationError

from . import models, schemas

logger = logging.getLogger(__name__)


def create_patient(db: Session, *, clinic_id: str, payload: schemas.PatientCreate) -> models.Patient:
    patient = models.Patient(clinic_id=clinic_id, treatment_history=[], **payload.model_dump())
    db.add(patient)
    db.flush()
    return patient


def get_patient(db: Session, *, clinic_id: str, patient_id: str) -> models.Patient:
    patient = (
        db.query(models.Patient)
        .filter(models.Patient.id == patient_id, models.Patient.clinic_id == clinic_id)
        .first()
    )
    if patient is None:
        raise NotFoundError(
            f"Patient {patient_id} not found",
            detail=[{"field": "patient_id", "reason": "unknown patient"}],
        )
    return patient


def list_patients(
    db: Session,
    *,
    clinic_id: str,
    search: Optional[str] = None,
    phone: Optional[str] = None,
    email: Optional[str] = None,
) -> List[models.Patient]:
    """
    Patients of one clinic ordered by name.

    `search` matches any part of the name, case-insensitively. `phone` and
    `email` are exact lookups.
    """
    q = db.query(models.Patient).filter(models.Patient.clinic_id == clinic_id)
    term = (search or "").strip()
    if term:
        q = q.filter(models.Patient.name.ilike(f"%{term}%"))
    if phone:
        q = q.filter(models.Patient.phone == phone.strip())
    if email:
        q = q.filter(func.lower(models.Patient.email) == email.strip().lower())
    return q.order_by(models.Patient.name.asc(), models.Patient.created_at.asc()).all()


def update_patient(
    db: Session,
    *,
    clinic_id: str,
    patient_id: str,
    payload: schemas.PatientUpdate,
) -> models.Patient:
    changes = payload.model_dump(exclude_unset=True)
    if "name" in changes and not (changes["name"] or "").strip():
        raise ValidationError(
            "Patient name is required",
            detail=[{"field": "name", "reason": "empty"}],
        )
    patient = get_patient(db, clinic_id=clinic_id, patient_id=patient_id)
    for field, value in changes.items():
        setattr(patient, field, value)
    db.flush()
    logger.info(
        "Patient updated",
        extra={"clinic_id": clinic_id, "patient_id": patient_id, "fields": sorted(changes)},
    )
    return patient


def add_treatment_to_history(db: Session, *, clinic_id: str, patient_id: str, request_id: str) -> models.PatientTreatment:
    """Append a request to the patient's history. Entries are never removed."""
    patient = get_patient(db, clinic_id=clinic_id, patient_id=patient_id)
    entry = models.PatientTreatment(patient_id=patient.id, request_id=request_id)
    patient.treatment_history.append(entry)
    db.flush()
    logger.info(
        "Treatment added to patient history",
        extra={"clinic_id": clinic_id, "patient_id": patient_id, "request_id": request_id},
    )
    return entry


def list_treatment_history(db: Session, *, clinic_id: str, patient_id: str) -> List[models.PatientTreatment]:
    return list(get_patient(db, clinic_id=clinic_id, patient_id=patient_id).treatment_history)
