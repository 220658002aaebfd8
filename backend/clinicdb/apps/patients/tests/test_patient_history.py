from __future__ import annotations

import pytest

from clinicdb.apps.patients import schemas as patient_schemas
from clinicdb.apps.patients import services as patient_services
from clinicdb.apps.treatments import schemas as treatment_schemas
from clinicdb.errors import NotFoundError, ValidationError


def _request(patient_id, request_date, treatment_type):
    return treatment_schemas.TreatmentRequestCreate(
        patient_id=patient_id,
        request_date=request_date,
        treatment_type=treatment_type,
    )


def test_create_and_fetch_patient(db_session, clinic, other_clinic):
    patient = patient_services.create_patient(
        db_session,
        clinic_id=clinic.id,
        payload=patient_schemas.PatientCreate(name="Carla Dias", email="carla@example.com"),
    )
    db_session.commit()

    fetched = patient_services.get_patient(db_session, clinic_id=clinic.id, patient_id=patient.id)
    assert fetched.name == "Carla Dias"
    assert fetched.treatment_request_ids == []

    with pytest.raises(NotFoundError):
        patient_services.get_patient(db_session, clinic_id=other_clinic.id, patient_id=patient.id)


def test_history_is_append_only(core, db_session, clinic, patient, product):
    first = core.requests.create(
        clinic.id,
        _request(patient.id, "2025-03-01", "Botox"),
    ).request
    second = core.requests.create(
        clinic.id,
        _request(patient.id, "2025-03-02", "Filler"),
    ).request
    core.requests.cancel(clinic.id, first.id, "Rescheduled")

    history = patient_services.list_treatment_history(db_session, clinic_id=clinic.id, patient_id=patient.id)

    assert [entry.request_id for entry in history] == [first.id, second.id]


def _add(db_session, clinic_id, name, **fields):
    return patient_services.create_patient(
        db_session,
        clinic_id=clinic_id,
        payload=patient_schemas.PatientCreate(name=name, **fields),
    )


def test_list_patients_searches_within_the_clinic(db_session, clinic, other_clinic):
    _add(db_session, clinic.id, "Mariana Costa", phone="11999990000", email="Mariana@Example.com")
    _add(db_session, clinic.id, "Bruno Lima")
    _add(db_session, clinic.id, "Ana Mariano")
    _add(db_session, other_clinic.id, "Mariana Alves")
    db_session.commit()

    all_names = [p.name for p in patient_services.list_patients(db_session, clinic_id=clinic.id)]
    assert all_names == ["Ana Mariano", "Bruno Lima", "Mariana Costa"]

    found = patient_services.list_patients(db_session, clinic_id=clinic.id, search="  MARIAN ")
    assert [p.name for p in found] == ["Ana Mariano", "Mariana Costa"]

    by_phone = patient_services.list_patients(db_session, clinic_id=clinic.id, phone="11999990000")
    by_email = patient_services.list_patients(db_session, clinic_id=clinic.id, email="mariana@example.com")
    assert [p.name for p in by_phone] == [p.name for p in by_email] == ["Mariana Costa"]
    assert patient_services.list_patients(db_session, clinic_id=clinic.id, phone="000") == []


def test_update_patient_changes_only_given_fields(db_session, clinic, other_clinic):
    patient = _add(db_session, clinic.id, "Paula Reis", phone="1111")
    db_session.commit()

    updated = patient_services.update_patient(
        db_session,
        clinic_id=clinic.id,
        patient_id=patient.id,
        payload=patient_schemas.PatientUpdate(email="paula@example.com"),
    )
    db_session.commit()

    assert updated.email == "paula@example.com"
    assert updated.phone == "1111"
    assert updated.name == "Paula Reis"

    with pytest.raises(ValidationError):
        patient_services.update_patient(
            db_session,
            clinic_id=clinic.id,
            patient_id=patient.id,
            payload=patient_schemas.PatientUpdate(name=" "),
        )
    with pytest.raises(NotFoundError):
        patient_services.update_patient(
            db_session,
            clinic_id=other_clinic.id,
            patient_id=patient.id,
            payload=patient_schemas.PatientUpdate(phone="2222"),
        )
