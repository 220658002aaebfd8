from __future__ import annotations

from datetime import datetime
import logging
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from . import models, schemas

logger = logging.getLogger(__name__)

STOCK_MOVEMENT_ACTIONS = ("stock_in", "stock_out")


def create_audit_event(
    db: Session,
    *,
    clinic_id: Optional[str],
    data: schemas.AuditEventCreate,
) -> models.AuditEvent:
    event = models.AuditEvent(
        clinic_id=clinic_id,
        entity_type=data.entity_type,
        entity_id=data.entity_id,
        action=data.action,
        actor_user_id=data.actor_user_id,
        before=data.before,
        after=data.after,
        correlation_id=data.correlation_id,
        metadata_json=data.metadata,
    )
    if data.occurred_at is not None:
        event.occurred_at = data.occurred_at
    db.add(event)
    db.flush()
    return event


def log_event(
    db: Session,
    *,
    clinic_id: Optional[str],
    actor_user_id: Optional[str],
    entity_type: str,
    entity_id: str,
    action: str,
    before: Optional[dict] = None,
    after: Optional[dict] = None,
    correlation_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    critical: bool = False,
) -> Optional[models.AuditEvent]:
    """
    Best-effort audit event logger.

    The insert runs in a savepoint so a failed audit write leaves the
    caller's transaction usable.
    - For critical actions, raise on failure.
    - For everything else, log a warning and continue.
    """
    try:
        with db.begin_nested():
            return create_audit_event(
                db,
                clinic_id=clinic_id,
                data=schemas.AuditEventCreate(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    action=action,
                    actor_user_id=actor_user_id,
                    before=before,
                    after=after,
                    correlation_id=correlation_id,
                    metadata=metadata,
                ),
            )
    except Exception:
        logger.warning(
            "Failed to log audit event",
            extra={
                "clinic_id": clinic_id,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "action": action,
                "critical": critical,
            },
        )
        if critical:
            raise
        return None


def list_audit_events(
    db: Session,
    *,
    clinic_id: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Sequence[models.AuditEvent]:
    query = db.query(models.AuditEvent).filter(models.AuditEvent.clinic_id == clinic_id)
    if entity_type:
        query = query.filter(models.AuditEvent.entity_type == entity_type)
    if entity_id:
        query = query.filter(models.AuditEvent.entity_id == entity_id)
    if start:
        query = query.filter(models.AuditEvent.occurred_at >= start)
    if end:
        query = query.filter(models.AuditEvent.occurred_at <= end)
    return query.order_by(models.AuditEvent.occurred_at.desc()).all()


def list_stock_movements(db: Session, *, clinic_id: str, reference_id: str) -> Sequence[models.AuditEvent]:
    """
    Ledger movements caused by one invoice or treatment request.

    Stock-in and stock-out rows carry the movement's reference id as their
    correlation id; they are returned oldest first.
    """
    return (
        db.query(models.AuditEvent)
        .filter(
            models.AuditEvent.clinic_id == clinic_id,
            models.AuditEvent.correlation_id == reference_id,
            models.AuditEvent.action.in_(STOCK_MOVEMENT_ACTIONS),
        )
        .order_by(models.AuditEvent.occurred_at.asc(), models.AuditEvent.id.asc())
        .all()
    )
