from __future__ import annotations

from sqlalchemy.orm import Session

from clinicdb.errors import DuplicateError, NotFoundError

from . import models, schemas


def create_clinic(db: Session, *, payload: schemas.ClinicCreate) -> models.Clinic:
    if payload.cnpj and db.query(models.Clinic).filter(models.Clinic.cnpj == payload.cnpj).first():
        raise DuplicateError(
            f"Clinic with CNPJ {payload.cnpj} already exists",
            detail=[{"field": "cnpj", "reason": "duplicate"}],
        )
    clinic = models.Clinic(**payload.model_dump())
    db.add(clinic)
    db.flush()
    return clinic


def get_clinic(db: Session, clinic_id: str) -> models.Clinic:
    clinic = db.get(models.Clinic, clinic_id)
    if clinic is None:
        raise NotFoundError(f"Clinic {clinic_id} not found")
    return clinic
