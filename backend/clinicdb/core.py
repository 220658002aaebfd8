# backend/clinicdb/core.py
"""
Wiring for the supply core.

Every component is constructed explicitly with the same session factory,
clock and publisher, so tests can build an isolated core against their own
database. The FastAPI app stores one `Core` on `app.state.core`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request
from sqlalchemy.orm import sessionmaker

from clinicdb.apps.alerts.services import AlertEvaluator
from clinicdb.apps.catalog.services import ProductCatalogGate
from clinicdb.apps.events.broker import Publisher, publish_event
from clinicdb.apps.inventory.services import InventoryLedger
from clinicdb.apps.invoices.services import InvoiceReplenishmentPipeline
from clinicdb.apps.notifications.service import NotificationSink
from clinicdb.apps.treatments.services import RequestConsumptionEngine


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Core:
    session_factory: sessionmaker
    ledger: InventoryLedger
    catalog: ProductCatalogGate
    requests: RequestConsumptionEngine
    invoices: InvoiceReplenishmentPipeline
    alerts: AlertEvaluator
    notifier: NotificationSink


def build_core(
    session_factory: sessionmaker,
    *,
    clock: Callable[[], datetime] = _utcnow,
    publisher: Publisher = publish_event,
    notifier: Optional[NotificationSink] = None,
) -> Core:
    notifier = notifier or NotificationSink()
    ledger = InventoryLedger(session_factory, clock=clock, publisher=publisher)
    catalog = ProductCatalogGate(
        session_factory,
        ledger=ledger,
        clock=clock,
        publisher=publisher,
        notifier=notifier,
    )
    return Core(
        session_factory=session_factory,
        ledger=ledger,
        catalog=catalog,
        requests=RequestConsumptionEngine(session_factory, ledger=ledger, clock=clock, publisher=publisher),
        invoices=InvoiceReplenishmentPipeline(
            session_factory,
            ledger=ledger,
            catalog=catalog,
            clock=clock,
            publisher=publisher,
        ),
        alerts=AlertEvaluator(session_factory, ledger=ledger, clock=clock, notifier=notifier),
        notifier=notifier,
    )


def get_core(request: Request) -> Core:
    """FastAPI dependency returning the core built at startup."""
    return request.app.state.core
