from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from clinicdb.apps.audit import services as audit_services
from clinicdb.errors import InvalidStateError

from .registry import WORKFLOWS


def ensure_transition(
    *,
    entity_type: str,
    from_state: str,
    to_state: str,
    before_obj: Any = None,
    after_obj: Any = None,
) -> None:
    """
    Raise InvalidStateError unless `from_state -> to_state` is registered
    for `entity_type` and every guard on it passes.
    """
    workflow = WORKFLOWS.get(entity_type)
    if not workflow:
        raise InvalidStateError(
            f"No workflow registered for {entity_type}",
            code="invalid_transition",
            detail=[{"field": "entity_type", "reason": f"No workflow registered for {entity_type}"}],
        )

    allowed = workflow["transitions"].get(from_state, {})
    guards = allowed.get(to_state)
    if guards is None:
        raise InvalidStateError(
            f"Cannot transition {entity_type} from {from_state} to {to_state}",
            code="invalid_transition",
            detail=[{"field": "status", "reason": f"Cannot transition from {from_state} to {to_state}"}],
        )

    failures: List[Dict[str, str]] = []
    for guard in guards:
        failures.extend(
            guard(
                before_obj=before_obj,
                after_obj=after_obj,
                from_state=from_state,
                to_state=to_state,
            )
        )
    if failures:
        raise InvalidStateError(
            f"Cannot transition {entity_type} to {to_state}: requirements missing",
            code="missing_requirements",
            detail=failures,
        )


def apply_transition(
    db: Session,
    *,
    clinic_id: Optional[str],
    actor_user_id: Optional[str],
    entity_type: str,
    entity_id: str,
    from_state: str,
    to_state: str,
    before_obj: Any = None,
    after_obj: Any = None,
    correlation_id: Optional[str] = None,
    critical: bool = False,
) -> None:
    ensure_transition(
        entity_type=entity_type,
        from_state=from_state,
        to_state=to_state,
        before_obj=before_obj,
        after_obj=after_obj,
    )

    before_payload: Dict[str, Any] = {"status": from_state}
    after_payload: Dict[str, Any] = {"status": to_state}
    if isinstance(after_obj, dict):
        after_payload.update({k: v for k, v in after_obj.items() if k != "clinic_id"})

    audit_services.log_event(
        db,
        clinic_id=clinic_id,
        actor_user_id=actor_user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action="transition",
        before=before_payload,
        after=after_payload,
        correlation_id=correlation_id,
        metadata={"workflow": entity_type},
        critical=critical,
    )
