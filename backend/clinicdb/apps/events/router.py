from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from clinicdb.security import CurrentContext, get_current_context

from .broker import broker

router = APIRouter(prefix="/events", tags=["events"])

HISTORY_MAX_EVENTS = 500


class ActivityEventRead(BaseModel):
    id: str
    type: str
    entityType: str
    entityId: str
    action: str
    timestamp: str
    actor: Optional[dict] = None
    metadata: dict = {}


class ActivityHistoryResponse(BaseModel):
    items: list[ActivityEventRead]


@router.get("/history", response_model=ActivityHistoryResponse)
def activity_history(
    event_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=HISTORY_MAX_EVENTS),
    current: CurrentContext = Depends(get_current_context),
):
    """Recent domain events for the caller's clinic, newest first."""
    events = broker.history(clinic_id=current.clinic_id, event_type=event_type)
    items = [
        ActivityEventRead(
            id=event.id,
            type=event.type,
            entityType=event.entityType,
            entityId=event.entityId,
            action=event.action,
            timestamp=event.timestamp,
            actor=event.actor,
            metadata=event.metadata,
        )
        for event in reversed(events[-limit:])
    ]
    return ActivityHistoryResponse(items=items)
