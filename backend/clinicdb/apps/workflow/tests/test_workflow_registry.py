from __future__ import annotations

import pytest

from clinicdb.apps.audit import models as audit_models
from clinicdb.apps.workflow import WORKFLOWS, apply_transition, ensure_transition
from clinicdb.errors import InvalidStateError


def test_every_workflow_state_has_a_transition_map():
    for entity_type, workflow in WORKFLOWS.items():
        transitions = workflow["transitions"]
        targets = {to_state for allowed in transitions.values() for to_state in allowed}
        assert targets <= set(transitions), entity_type


def test_terminal_request_states_reject_everything():
    for from_state in ("consumed", "cancelled"):
        for to_state in ("pending", "consumed", "cancelled"):
            with pytest.raises(InvalidStateError) as excinfo:
                ensure_transition(entity_type="treatment_request", from_state=from_state, to_state=to_state)
            assert excinfo.value.code == "invalid_transition"


def test_guards_report_missing_lines():
    with pytest.raises(InvalidStateError) as excinfo:
        ensure_transition(
            entity_type="supplier_invoice",
            from_state="pending",
            to_state="approved",
            before_obj={"lines": []},
        )

    assert excinfo.value.code == "missing_requirements"
    assert excinfo.value.detail == [{"field": "lines", "reason": "at least one product line required"}]

    ensure_transition(
        entity_type="supplier_invoice",
        from_state="pending",
        to_state="approved",
        before_obj={"lines": ["line"]},
    )


def test_unknown_entity_type():
    with pytest.raises(InvalidStateError):
        ensure_transition(entity_type="shipment", from_state="new", to_state="sent")


def test_apply_transition_writes_audit_row(db_session, clinic):
    apply_transition(
        db_session,
        clinic_id=clinic.id,
        actor_user_id="user-1",
        entity_type="treatment_request",
        entity_id="req-1",
        from_state="pending",
        to_state="cancelled",
        after_obj={"reason": "no show", "clinic_id": "ignored"},
    )
    db_session.commit()

    row = db_session.query(audit_models.AuditEvent).one()
    assert row.action == "transition"
    assert row.before == {"status": "pending"}
    assert row.after == {"status": "cancelled", "reason": "no show"}
    assert row.metadata_json == {"workflow": "treatment_request"}
