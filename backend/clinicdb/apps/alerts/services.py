from __future__ import annotations

import logging
import math
import os
from datetime import date, datetime, time, timezone
from typing import Callable, Dict, Optional

from sqlalchemy.orm import sessionmaker

from clinicdb.apps.catalog import models as catalog_models
from clinicdb.apps.clinics import models as clinic_models
from clinicdb.apps.inventory.services import InventoryLedger
from clinicdb.apps.notifications.service import EXPIRATION_TEMPLATE, LOW_STOCK_TEMPLATE, NotificationSink

from . import schemas

logger = logging.getLogger(__name__)

ALERT_EXPIRATION_THRESHOLD_DAYS = int(os.getenv("ALERT_EXPIRATION_THRESHOLD_DAYS", "30"))

SECONDS_PER_DAY = 86400


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def days_until(expiration_date: date, now: datetime) -> int:
    """Whole days from `now` to the start of `expiration_date` (UTC), rounded up."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    expires_at = datetime.combine(expiration_date, time.min, tzinfo=timezone.utc)
    return math.ceil((expires_at - now).total_seconds() / SECONDS_PER_DAY)


class AlertEvaluator:
    """
    Read-only scan for low-stock rows and soon-to-expire lots.

    Scans keep no state between runs: the same stock produces the same
    findings every time, and `scan_and_notify` sends all of them.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        ledger: InventoryLedger,
        clock: Callable[[], datetime] = _utcnow,
        notifier: Optional[NotificationSink] = None,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._clock = clock
        self._notifier = notifier or NotificationSink()

    def _clinic(self, clinic_id: str) -> Optional[clinic_models.Clinic]:
        with self._session_factory() as db:
            return db.get(clinic_models.Clinic, clinic_id)

    def _product_names(self, product_ids) -> Dict[str, str]:
        if not product_ids:
            return {}
        with self._session_factory() as db:
            rows = (
                db.query(catalog_models.Product.id, catalog_models.Product.name)
                .filter(catalog_models.Product.id.in_(set(product_ids)))
                .all()
            )
        return {product_id: name for product_id, name in rows}

    def scan(self, clinic_id: str, expiration_threshold_days: Optional[int] = None) -> schemas.AlertScanResult:
        if expiration_threshold_days is None:
            clinic = self._clinic(clinic_id)
            expiration_threshold_days = (
                clinic.alert_threshold_days
                if clinic is not None and clinic.alert_threshold_days is not None
                else ALERT_EXPIRATION_THRESHOLD_DAYS
            )

        now = self._clock()
        low_items = self._ledger.list_low_stock(clinic_id)
        expiring = self._ledger.list_expiring(clinic_id, expiration_threshold_days)
        names = self._product_names(
            [item.product_id for item in low_items] + [item.product_id for item, _lots in expiring]
        )

        result = schemas.AlertScanResult(
            clinic_id=clinic_id,
            scanned_at=now,
            expiration_threshold_days=expiration_threshold_days,
            low_stock=[
                schemas.LowStockFinding(
                    product_id=item.product_id,
                    product_name=names.get(item.product_id),
                    current_stock=item.quantity_in_stock,
                    minimum_level=item.minimum_stock_level,
                )
                for item in low_items
            ],
            expiring=[
                schemas.ExpiringLotFinding(
                    product_id=item.product_id,
                    product_name=names.get(item.product_id),
                    expiration_date=lot.expiration_date,
                    lot_code=lot.lot_code,
                    quantity=lot.quantity,
                    days_until_expiration=days_until(lot.expiration_date, now),
                )
                for item, lots in expiring
                for lot in lots
            ],
        )
        result.expiring.sort(key=lambda finding: (finding.expiration_date, finding.product_id, finding.lot_code))
        logger.info(
            "Alert scan complete",
            extra={
                "clinic_id": clinic_id,
                "low_stock": len(result.low_stock),
                "expiring": len(result.expiring),
                "threshold_days": expiration_threshold_days,
            },
        )
        return result

    def scan_and_notify(self, clinic_id: str, expiration_threshold_days: Optional[int] = None) -> schemas.AlertScanResult:
        """Scan, then hand each finding to the notification sink per the clinic's preferences."""
        result = self.scan(clinic_id, expiration_threshold_days)
        clinic = self._clinic(clinic_id)
        low_stock_enabled = clinic.low_stock_alerts if clinic is not None else True
        expiration_enabled = clinic.expiration_alerts if clinic is not None else True

        sent = 0
        if low_stock_enabled:
            sent += self._notifier.notify_many(
                LOW_STOCK_TEMPLATE,
                clinic_id=clinic_id,
                payloads=[finding.model_dump(mode="json") for finding in result.low_stock],
            )
        if expiration_enabled:
            sent += self._notifier.notify_many(
                EXPIRATION_TEMPLATE,
                clinic_id=clinic_id,
                payloads=[finding.model_dump(mode="json") for finding in result.expiring],
            )
        result.notifications_sent = sent
        return result
