from __future__ import annotations

import pytest

from clinicdb.apps.audit import models as audit_models
from clinicdb.apps.events.broker import REQUEST_CANCELLED, REQUEST_CONSUMED, REQUEST_CREATED, STOCK_REMOVED
from clinicdb.apps.patients import services as patient_services
from clinicdb.apps.treatments import models as treatment_models
from clinicdb.apps.treatments import schemas as treatment_schemas
from clinicdb.errors import (
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from conftest import TODAY, days_from_today

EXPIRES = days_from_today(90)


def _usage(product_id, quantity, lot_code="LOT-1", expiration_date=EXPIRES):
    return {
        "product_id": product_id,
        "quantity": quantity,
        "lot_code": lot_code,
        "expiration_date": expiration_date,
    }


def _create(core, clinic, patient, products_used, **overrides):
    payload = treatment_schemas.TreatmentRequestCreate(
        patient_id=patient.id,
        request_date=overrides.pop("request_date", TODAY),
        treatment_type=overrides.pop("treatment_type", "Botox"),
        products_used=products_used,
        **overrides,
    )
    return core.requests.create(clinic.id, payload, actor_user_id="user-1")


def test_create_records_request_without_touching_stock(core, clinic, patient, product, published, session_factory):
    core.ledger.add_stock(clinic.id, product.id, 10, EXPIRES, "LOT-1", "inv-1")

    created = _create(core, clinic, patient, [_usage(product.id, 4)])

    request = created.request
    assert created.warnings == []
    assert request.status == treatment_models.TreatmentStatusEnum.PENDING
    assert [(line.product_id, line.quantity) for line in request.products_used] == [(product.id, 4)]
    assert request.performed_by == "user-1"
    assert core.ledger.get_item(clinic.id, product.id).quantity_in_stock == 10
    assert published[-1].type == REQUEST_CREATED

    with session_factory() as db:
        history = patient_services.list_treatment_history(db, clinic_id=clinic.id, patient_id=patient.id)
    assert [entry.request_id for entry in history] == [request.id]


def test_create_returns_availability_warnings(core, clinic, patient, product):
    core.ledger.add_stock(clinic.id, product.id, 2, EXPIRES, "LOT-1", "inv-1")

    created = _create(core, clinic, patient, [_usage(product.id, 5)])

    assert created.request.status == treatment_models.TreatmentStatusEnum.PENDING
    assert len(created.warnings) == 1
    assert "Available: 2, Required: 5" in created.warnings[0]


def test_create_rejects_unknown_patient_and_product(core, clinic, other_clinic, patient, product):
    foreign = treatment_schemas.TreatmentRequestCreate(
        patient_id=patient.id,
        request_date=TODAY,
        treatment_type="Botox",
    )
    with pytest.raises(NotFoundError):
        core.requests.create(other_clinic.id, foreign)

    with pytest.raises(ValidationError) as excinfo:
        _create(core, clinic, patient, [_usage("no-such-product", 1)])
    assert excinfo.value.detail[0]["field"] == "products_used[0].product_id"
    assert core.requests.list(clinic.id) == []


def test_consume_deducts_stock_and_marks_consumed(core, clinic, patient, product, published, session_factory):
    core.ledger.add_stock(clinic.id, product.id, 10, EXPIRES, "LOT-1", "inv-1")
    request = _create(core, clinic, patient, [_usage(product.id, 4)]).request

    consumed = core.requests.consume(clinic.id, request.id, actor_user_id="user-2")

    assert consumed.status == treatment_models.TreatmentStatusEnum.CONSUMED
    item = core.ledger.get_item(clinic.id, product.id)
    assert item.quantity_in_stock == 6
    assert item.last_movement_reference_id == request.id
    assert [event.type for event in published[-2:]] == [STOCK_REMOVED, REQUEST_CONSUMED]

    with session_factory() as db:
        actions = [
            row.action
            for row in db.query(audit_models.AuditEvent)
            .filter(audit_models.AuditEvent.entity_id == request.id)
            .order_by(audit_models.AuditEvent.occurred_at.asc(), audit_models.AuditEvent.id.asc())
            .all()
        ]
    assert actions == ["create", "transition"]

    with pytest.raises(InvalidStateError):
        core.requests.consume(clinic.id, request.id)
    assert core.ledger.get_item(clinic.id, product.id).quantity_in_stock == 6


def test_failed_consume_leaves_request_pending_and_stock_untouched(core, clinic, patient, make_product):
    stocked = make_product("STK-1")
    short = make_product("STK-2")
    core.ledger.add_stock(clinic.id, stocked.id, 10, EXPIRES, "LOT-1", "inv-1")
    core.ledger.add_stock(clinic.id, short.id, 1, EXPIRES, "LOT-1", "inv-1")
    request = _create(core, clinic, patient, [_usage(stocked.id, 3), _usage(short.id, 2)]).request

    with pytest.raises(InsufficientStockError):
        core.requests.consume(clinic.id, request.id)

    assert core.requests.get(clinic.id, request.id).status == treatment_models.TreatmentStatusEnum.PENDING
    assert core.ledger.get_item(clinic.id, stocked.id).quantity_in_stock == 10
    assert core.ledger.get_item(clinic.id, short.id).quantity_in_stock == 1


def test_consume_requires_product_lines(core, clinic, patient):
    request = _create(core, clinic, patient, []).request

    with pytest.raises(InvalidStateError) as excinfo:
        core.requests.consume(clinic.id, request.id)

    assert excinfo.value.code == "missing_requirements"


def test_cancel_appends_reason_to_notes(core, clinic, patient, product, published):
    request = _create(core, clinic, patient, [_usage(product.id, 1)], notes="First visit").request

    cancelled = core.requests.cancel(clinic.id, request.id, "Patient rescheduled")

    assert cancelled.status == treatment_models.TreatmentStatusEnum.CANCELLED
    assert cancelled.notes == "First visit\n\nCancelled: Patient rescheduled"
    assert published[-1].type == REQUEST_CANCELLED

    with pytest.raises(InvalidStateError):
        core.requests.cancel(clinic.id, request.id)
    with pytest.raises(InvalidStateError):
        core.requests.consume(clinic.id, request.id)


def test_cancel_without_reason_keeps_notes(core, clinic, patient, product):
    request = _create(core, clinic, patient, [_usage(product.id, 1)]).request

    cancelled = core.requests.cancel(clinic.id, request.id)

    assert cancelled.notes is None


def test_update_and_add_products_only_while_pending(core, clinic, patient, make_product):
    first = make_product("UPD-1")
    second = make_product("UPD-2")
    core.ledger.add_stock(clinic.id, first.id, 10, EXPIRES, "LOT-1", "inv-1")
    request = _create(core, clinic, patient, [_usage(first.id, 1)]).request

    updated = core.requests.update(
        clinic.id,
        request.id,
        treatment_schemas.TreatmentRequestUpdate(treatment_type="Filler", notes="Moved to room 2"),
    )
    assert updated.treatment_type == "Filler"
    assert updated.notes == "Moved to room 2"

    extended = core.requests.add_products(clinic.id, request.id, [_usage(second.id, 2, "LOT-9")])
    assert [(line.position, line.product_id) for line in extended.products_used] == [(0, first.id), (1, second.id)]

    replaced = core.requests.update(
        clinic.id,
        request.id,
        treatment_schemas.TreatmentRequestUpdate(products_used=[_usage(first.id, 3)]),
    )
    assert [(line.product_id, line.quantity) for line in replaced.products_used] == [(first.id, 3)]

    core.requests.consume(clinic.id, request.id)

    with pytest.raises(InvalidStateError):
        core.requests.update(clinic.id, request.id, treatment_schemas.TreatmentRequestUpdate(notes="late"))
    with pytest.raises(InvalidStateError):
        core.requests.add_products(clinic.id, request.id, [_usage(second.id, 1)])


def test_add_products_validates_input(core, clinic, patient, product):
    request = _create(core, clinic, patient, []).request

    with pytest.raises(ValidationError):
        core.requests.add_products(clinic.id, request.id, [])
    with pytest.raises(ValidationError):
        core.requests.add_products(clinic.id, request.id, [_usage(product.id, -1)])


def test_queries_and_usage_stats(core, clinic, patient, make_product):
    first = make_product("Q-1")
    second = make_product("Q-2")
    core.ledger.add_stock(clinic.id, first.id, 50, EXPIRES, "LOT-1", "inv-1")
    core.ledger.add_stock(clinic.id, second.id, 50, EXPIRES, "LOT-1", "inv-1")

    old = _create(core, clinic, patient, [_usage(first.id, 2)], request_date=days_from_today(-40)).request
    recent = _create(core, clinic, patient, [_usage(first.id, 3), _usage(second.id, 4)]).request
    pending = _create(core, clinic, patient, [_usage(second.id, 9)]).request
    core.requests.consume(clinic.id, old.id)
    core.requests.consume(clinic.id, recent.id)

    assert core.requests.product_usage_stats(clinic.id) == {first.id: 5, second.id: 4}
    assert core.requests.product_usage_stats(clinic.id, start=days_from_today(-7), end=TODAY) == {
        first.id: 3,
        second.id: 4,
    }
    assert {r.id for r in core.requests.list(clinic.id, start=days_from_today(-7))} == {pending.id, recent.id}
    assert [r.id for r in core.requests.list_by_status(clinic.id, treatment_models.TreatmentStatusEnum.PENDING)] == [
        pending.id
    ]
    assert {r.id for r in core.requests.list_by_product(clinic.id, second.id)} == {recent.id, pending.id}
    assert len(core.requests.list_by_patient(clinic.id, patient.id)) == 3


def test_requests_are_isolated_per_clinic(core, clinic, other_clinic, patient, product):
    request = _create(core, clinic, patient, [_usage(product.id, 1)]).request

    with pytest.raises(NotFoundError):
        core.requests.get(other_clinic.id, request.id)
    with pytest.raises(NotFoundError):
        core.requests.consume(other_clinic.id, request.id)
    assert core.requests.list(other_clinic.id) == []
