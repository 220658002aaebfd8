from __future__ import annotations

import pytest

from clinicdb.apps.clinics import schemas as clinic_schemas
from clinicdb.apps.clinics import services as clinic_services
from clinicdb.errors import DuplicateError, NotFoundError


def test_create_clinic_applies_alert_defaults(db_session):
    clinic = clinic_services.create_clinic(
        db_session,
        payload=clinic_schemas.ClinicCreate(name="Clinica Sul", cnpj="12.345.678/0001-90"),
    )
    db_session.commit()

    stored = clinic_services.get_clinic(db_session, clinic.id)
    assert stored.low_stock_alerts is True
    assert stored.expiration_alerts is True
    assert stored.alert_threshold_days == 30


def test_duplicate_cnpj_is_rejected(db_session):
    payload = clinic_schemas.ClinicCreate(name="Clinica Sul", cnpj="12.345.678/0001-90")
    clinic_services.create_clinic(db_session, payload=payload)
    db_session.commit()

    with pytest.raises(DuplicateError):
        clinic_services.create_clinic(db_session, payload=payload)


def test_get_unknown_clinic(db_session):
    with pytest.raises(NotFoundError):
        clinic_services.get_clinic(db_session, "missing")
