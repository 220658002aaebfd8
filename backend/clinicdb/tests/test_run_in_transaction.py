from __future__ import annotations

import pytest
from sqlalchemy.orm.exc import StaleDataError

from clinicdb.apps.clinics import models as clinic_models
from clinicdb.database import run_in_transaction
from clinicdb.errors import StorageConflictError, ValidationError


def test_retries_stale_rows_until_success(session_factory):
    calls = []

    def work(db):
        calls.append(1)
        if len(calls) < 3:
            raise StaleDataError("row version changed")
        return "done"

    assert run_in_transaction(session_factory, work, attempts=5, backoff_sec=0) == "done"
    assert len(calls) == 3


def test_gives_up_with_storage_conflict(session_factory):
    calls = []

    def work(db):
        calls.append(1)
        raise StaleDataError("row version changed")

    with pytest.raises(StorageConflictError) as excinfo:
        run_in_transaction(session_factory, work, attempts=3, backoff_sec=0)

    assert len(calls) == 3
    assert isinstance(excinfo.value.__cause__, StaleDataError)
    assert excinfo.value.status_code == 503


def test_domain_errors_roll_back_without_retry(session_factory):
    calls = []

    def work(db):
        calls.append(1)
        db.add(clinic_models.Clinic(name="Rolled back"))
        db.flush()
        raise ValidationError("bad input")

    with pytest.raises(ValidationError):
        run_in_transaction(session_factory, work, attempts=5, backoff_sec=0)

    assert len(calls) == 1
    with session_factory() as db:
        assert db.query(clinic_models.Clinic).count() == 0


def test_commits_on_success(session_factory):
    run_in_transaction(session_factory, lambda db: db.add(clinic_models.Clinic(name="Kept")))

    with session_factory() as db:
        assert [clinic.name for clinic in db.query(clinic_models.Clinic).all()] == ["Kept"]
