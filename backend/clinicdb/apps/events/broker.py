from __future__ import annotations

import json
import logging
import queue
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterable, Optional

from clinicdb.utils.identifiers import generate_uuid7

logger = logging.getLogger(__name__)

# Domain event types published by the core. Read-side projections
# (dashboards, activity feeds) subscribe to these instead of being called.
STOCK_ADDED = "inventory.stock_added"
STOCK_REMOVED = "inventory.stock_removed"
REQUEST_CREATED = "request.created"
REQUEST_CONSUMED = "request.consumed"
REQUEST_CANCELLED = "request.cancelled"
INVOICE_CREATED = "invoice.created"
INVOICE_STATUS_CHANGED = "invoice.status_changed"
PRODUCT_PROVISIONED = "product.provisioned"
PRODUCT_APPROVED = "product.approved"


@dataclass
class EventEnvelope:
    type: str
    entityType: str
    entityId: str
    action: str
    clinicId: Optional[str] = None
    actor: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=generate_uuid7)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_json(self) -> str:
        payload = {
            "id": self.id,
            "type": self.type,
            "entityType": self.entityType,
            "entityId": self.entityId,
            "action": self.action,
            "clinicId": self.clinicId,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "metadata": self.metadata,
        }
        return json.dumps(payload, default=str)


class EventBroker:
    def __init__(self, replay_size: int = 2000) -> None:
        self._subscribers: set[queue.Queue[EventEnvelope]] = set()
        self._history: Deque[EventEnvelope] = deque(maxlen=replay_size)
        self._lock = threading.Lock()

    def subscribe(self) -> queue.Queue[EventEnvelope]:
        q: queue.Queue[EventEnvelope] = queue.Queue(maxsize=400)
        with self._lock:
            self._subscribers.add(q)
        return q

    def unsubscribe(self, q: queue.Queue[EventEnvelope]) -> None:
        with self._lock:
            self._subscribers.discard(q)

    def history(self, *, clinic_id: Optional[str] = None, event_type: Optional[str] = None) -> list[EventEnvelope]:
        with self._lock:
            events = list(self._history)
        if clinic_id:
            events = [event for event in events if event.clinicId == clinic_id]
        if event_type:
            events = [event for event in events if event.type == event_type]
        return events

    def publish(self, event: EventEnvelope) -> None:
        with self._lock:
            self._history.append(event)
            subscribers: Iterable[queue.Queue[EventEnvelope]] = list(self._subscribers)
        for q in subscribers:
            try:
                q.put_nowait(event)
            except queue.Full:
                # Slow subscriber: drop its oldest event to make room.
                try:
                    _ = q.get_nowait()
                    q.put_nowait(event)
                except queue.Empty:
                    pass


broker = EventBroker()

Publisher = Callable[[EventEnvelope], None]


def publish_event(event: EventEnvelope) -> None:
    broker.publish(event)


def publish_all(publisher: Publisher, events: Iterable[EventEnvelope]) -> None:
    """Publish after commit; a failing subscriber never fails the caller."""
    for event in events:
        try:
            publisher(event)
        except Exception:
            logger.warning(
                "Failed to publish domain event",
                extra={"event_type": event.type, "entity_id": event.entityId, "clinic_id": event.clinicId},
            )
