from __future__ import annotations

import os
import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).resolve().parent
sys.path.append(str(ROOT))

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DATABASE_WRITE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["NOTIFICATIONS_PROVIDER"] = "none"
os.environ["LEDGER_RETRY_BACKOFF_SEC"] = "0"

import clinicdb  # noqa: E402,F401  registers every model on Base.metadata
from clinicdb.database import Base  # noqa: E402
from clinicdb.core import build_core  # noqa: E402
from clinicdb.apps.catalog import models as catalog_models  # noqa: E402
from clinicdb.apps.clinics import models as clinic_models  # noqa: E402
from clinicdb.apps.notifications.providers import NotificationProvider  # noqa: E402
from clinicdb.apps.notifications.service import NotificationSink  # noqa: E402
from clinicdb.apps.patients import models as patient_models  # noqa: E402

# Fixed "now" for every service clock in tests.
NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


def make_engine(url: str = "sqlite+pysqlite://", *, begin_sql: str = "BEGIN"):
    """
    SQLite engine with transactions SQLAlchemy fully controls.

    pysqlite defers BEGIN until the first write, which breaks SAVEPOINT and
    read-then-write atomicity; take over BEGIN as the SQLAlchemy docs
    describe. File databases use BEGIN IMMEDIATE so concurrent writers
    serialize instead of failing on lock upgrade.
    """
    if url in ("sqlite+pysqlite://", "sqlite://"):
        engine = create_engine(url, poolclass=StaticPool, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql(begin_sql)

    Base.metadata.create_all(bind=engine)
    return engine


class FixedClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingProvider(NotificationProvider):
    def __init__(self) -> None:
        self.sent = []

    def send(self, *, template_key, clinic_id, payload, correlation_id) -> None:
        self.sent.append({"template_key": template_key, "clinic_id": clinic_id, "payload": payload})

    def templates(self):
        return [item["template_key"] for item in self.sent]


@pytest.fixture()
def engine():
    engine = make_engine()
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock():
    return FixedClock()


@pytest.fixture()
def published():
    return []


@pytest.fixture()
def provider():
    return RecordingProvider()


@pytest.fixture()
def core(session_factory, clock, published, provider):
    return build_core(
        session_factory,
        clock=clock,
        publisher=published.append,
        notifier=NotificationSink(provider),
    )


def _add_clinic(session_factory, name: str) -> clinic_models.Clinic:
    with session_factory() as db:
        clinic = clinic_models.Clinic(name=name)
        db.add(clinic)
        db.commit()
        return clinic


@pytest.fixture()
def clinic(session_factory):
    return _add_clinic(session_factory, "Clinica Centro")


@pytest.fixture()
def other_clinic(session_factory):
    return _add_clinic(session_factory, "Clinica Norte")


@pytest.fixture()
def patient(session_factory, clinic):
    with session_factory() as db:
        patient = patient_models.Patient(clinic_id=clinic.id, name="Ana Souza")
        db.add(patient)
        db.commit()
        return patient


@pytest.fixture()
def make_product(session_factory):
    """Insert a catalog product directly; approved unless told otherwise."""

    def _make(
        code: str,
        *,
        status: catalog_models.ProductStatusEnum = catalog_models.ProductStatusEnum.APPROVED,
        requested_by_clinic_id=None,
    ) -> catalog_models.Product:
        with session_factory() as db:
            product = catalog_models.Product(
                name=f"Product {code}",
                description="Test product",
                external_code=code,
                category="Toxins",
                unit_type=catalog_models.UnitTypeEnum.UNITS,
                status=status,
                requested_by_clinic_id=requested_by_clinic_id,
                approval_history=[],
            )
            db.add(product)
            db.commit()
            return product

    return _make


@pytest.fixture()
def product(make_product):
    return make_product("BTX-100")


def days_from_today(days: int) -> date:
    return TODAY + timedelta(days=days)
