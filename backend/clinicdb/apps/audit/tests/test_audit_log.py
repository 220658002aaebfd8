from __future__ import annotations

from clinicdb.apps.audit import services as audit_services
from conftest import days_from_today


def test_log_event_writes_record(db_session, clinic):
    event = audit_services.log_event(
        db_session,
        clinic_id=clinic.id,
        actor_user_id="user-1",
        entity_type="inventory_item",
        entity_id="item-1",
        action="stock_in",
        after={"quantity": 10},
        metadata={"lot_code": "L1"},
    )

    db_session.commit()
    assert event is not None
    assert event.entity_type == "inventory_item"
    assert event.metadata_json == {"lot_code": "L1"}


def test_list_audit_events_filters_by_clinic_and_entity(db_session, clinic, other_clinic):
    for clinic_id, entity_id in ((clinic.id, "a"), (clinic.id, "b"), (other_clinic.id, "a")):
        audit_services.log_event(
            db_session,
            clinic_id=clinic_id,
            actor_user_id=None,
            entity_type="supplier_invoice",
            entity_id=entity_id,
            action="create",
        )
    db_session.commit()

    events = audit_services.list_audit_events(db_session, clinic_id=clinic.id)
    only_a = audit_services.list_audit_events(db_session, clinic_id=clinic.id, entity_id="a")

    assert {event.entity_id for event in events} == {"a", "b"}
    assert [(event.clinic_id, event.entity_id) for event in only_a] == [(clinic.id, "a")]


def test_stock_movements_leave_an_audit_trail(core, clinic, product, db_session):
    core.ledger.add_stock(clinic.id, product.id, 5, days_from_today(30), "L1", "inv-1")

    events = audit_services.list_audit_events(db_session, clinic_id=clinic.id, entity_type="inventory_item")

    assert [event.action for event in events] == ["stock_in"]
    assert events[0].after["quantity_in_stock"] == 5


def test_stock_movements_are_traceable_by_reference(core, clinic, product, db_session):
    expires = days_from_today(30)
    core.ledger.add_stock(clinic.id, product.id, 5, expires, "L1", "inv-1")
    core.ledger.add_stock(clinic.id, product.id, 2, expires, "L1", "inv-2")
    core.ledger.remove_stock(
        clinic.id,
        [{"product_id": product.id, "quantity": 3, "lot_code": "L1", "expiration_date": expires}],
        "req-1",
    )

    inbound = audit_services.list_stock_movements(db_session, clinic_id=clinic.id, reference_id="inv-1")
    outbound = audit_services.list_stock_movements(db_session, clinic_id=clinic.id, reference_id="req-1")

    assert [(event.action, event.after["quantity"]) for event in inbound] == [("stock_in", 5)]
    assert [event.action for event in outbound] == ["stock_out"]
