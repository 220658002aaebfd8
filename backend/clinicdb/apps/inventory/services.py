from __future__ import annotations

import logging
import os
from collections import OrderedDict
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from clinicdb.apps.audit import services as audit_services
from clinicdb.apps.catalog import models as catalog_models
from clinicdb.apps.events.broker import (
    STOCK_ADDED,
    STOCK_REMOVED,
    EventEnvelope,
    Publisher,
    publish_all,
    publish_event,
)
from clinicdb.database import run_in_transaction
from clinicdb.errors import (
    InsufficientStockError,
    NotFoundError,
    StockIssue,
    StockIssueReason,
    ValidationError,
    from_pydantic,
)

from . import models, schemas

logger = logging.getLogger(__name__)

DEFAULT_MINIMUM_STOCK_LEVEL = int(os.getenv("INVENTORY_DEFAULT_MINIMUM_LEVEL", "0"))

LotKey = Tuple[str, date, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_usage_lines(lines: Iterable[schemas.ProductUsage | dict]) -> List[schemas.ProductUsage]:
    """Accept schema objects or plain dicts; reject malformed lines, itemized."""
    coerced: List[schemas.ProductUsage] = []
    detail: List[Dict[str, str]] = []
    for index, line in enumerate(lines):
        if isinstance(line, schemas.ProductUsage):
            usage = line
        else:
            try:
                usage = schemas.ProductUsage.model_validate(line)
            except PydanticValidationError as exc:
                detail.extend(
                    {"field": f"lines[{index}].{item['field']}", "reason": item["reason"]}
                    for item in from_pydantic(exc).detail
                )
                continue
        if usage.quantity <= 0:
            detail.append({"field": f"lines[{index}].quantity", "reason": "quantity must be greater than zero"})
        if not (usage.lot_code or "").strip():
            detail.append({"field": f"lines[{index}].lot_code", "reason": "lot code is required"})
        coerced.append(usage)
    if detail:
        raise ValidationError("Invalid product usage lines", detail=detail)
    return coerced


def _aggregate_demand(lines: Sequence[schemas.ProductUsage]) -> "OrderedDict[LotKey, int]":
    # Two lines on the same lot must be checked against their combined demand.
    demand: "OrderedDict[LotKey, int]" = OrderedDict()
    for line in lines:
        key = (line.product_id, line.expiration_date, line.lot_code.strip())
        demand[key] = demand.get(key, 0) + line.quantity
    return demand


def _collect_issues(
    items: Dict[str, Optional[models.InventoryItem]],
    demand: "OrderedDict[LotKey, int]",
) -> List[StockIssue]:
    issues: List[StockIssue] = []
    for (product_id, expiration_date, lot_code), requested in demand.items():
        item = items.get(product_id)
        if item is None:
            issues.append(
                StockIssue(
                    reason=StockIssueReason.PRODUCT_NOT_IN_LEDGER,
                    product_id=product_id,
                    lot_code=lot_code,
                    expiration_date=expiration_date,
                    requested=requested,
                )
            )
            continue
        lot = item.find_lot(expiration_date, lot_code)
        if lot is None:
            issues.append(
                StockIssue(
                    reason=StockIssueReason.LOT_NOT_FOUND,
                    product_id=product_id,
                    lot_code=lot_code,
                    expiration_date=expiration_date,
                    requested=requested,
                )
            )
        elif lot.quantity < requested:
            issues.append(
                StockIssue(
                    reason=StockIssueReason.INSUFFICIENT_LOT_QUANTITY,
                    product_id=product_id,
                    lot_code=lot_code,
                    expiration_date=expiration_date,
                    requested=requested,
                    available=lot.quantity,
                )
            )
    return issues


class InventoryLedger:
    """
    Per-clinic stock ledger.

    Public methods each run in their own transaction via
    `run_in_transaction`. The `*_in` variants take the caller's session so
    that request consumption and invoice approval can change stock and their
    own status in one commit.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        clock: Callable[[], datetime] = _utcnow,
        publisher: Publisher = publish_event,
        default_minimum_level: int = DEFAULT_MINIMUM_STOCK_LEVEL,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._publisher = publisher
        self.default_minimum_level = default_minimum_level

    # ------------------------------------------------------------------
    # Row access
    # ------------------------------------------------------------------

    def _item_query(self, db: Session, *, clinic_id: str, product_id: str, lock: bool):
        query = db.query(models.InventoryItem).filter(
            models.InventoryItem.clinic_id == clinic_id,
            models.InventoryItem.product_id == product_id,
        )
        if lock:
            query = query.with_for_update(of=models.InventoryItem)
        return query.populate_existing()

    def _require_product(self, db: Session, product_id: str) -> catalog_models.Product:
        product = db.get(catalog_models.Product, product_id)
        if product is None:
            raise NotFoundError(
                f"Product {product_id} not found in catalog",
                detail=[{"field": "product_id", "reason": "unknown product"}],
            )
        return product

    def get_or_create_in(
        self,
        db: Session,
        *,
        clinic_id: str,
        product_id: str,
        minimum_stock_level: Optional[int] = None,
        reference_id: str = "initial_stock",
        lock: bool = True,
    ) -> models.InventoryItem:
        query = self._item_query(db, clinic_id=clinic_id, product_id=product_id, lock=lock)
        item = query.first()
        if item is not None:
            return item

        self._require_product(db, product_id)
        now = self._clock()
        item = models.InventoryItem(
            clinic_id=clinic_id,
            product_id=product_id,
            quantity_in_stock=0,
            minimum_stock_level=self.default_minimum_level if minimum_stock_level is None else minimum_stock_level,
            last_movement_type=models.MovementTypeEnum.IN,
            last_movement_quantity=0,
            last_movement_reference_id=reference_id,
            last_movement_at=now,
            last_update=now,
            lots=[],
        )
        try:
            with db.begin_nested():
                db.add(item)
                db.flush()
        except IntegrityError:
            # Created by a concurrent transaction between our read and insert.
            item = self._item_query(db, clinic_id=clinic_id, product_id=product_id, lock=lock).first()
            if item is None:
                raise
            return item
        logger.info(
            "Created inventory item",
            extra={"clinic_id": clinic_id, "product_id": product_id, "reference_id": reference_id},
        )
        return item

    def _record_movement(
        self,
        item: models.InventoryItem,
        *,
        movement_type: models.MovementTypeEnum,
        quantity: int,
        reference_id: str,
    ) -> None:
        now = self._clock()
        item.last_movement_type = movement_type
        item.last_movement_quantity = quantity
        item.last_movement_reference_id = reference_id
        item.last_movement_at = now
        item.last_update = now

    # ------------------------------------------------------------------
    # Mutations (caller's session)
    # ------------------------------------------------------------------

    def add_stock_in(
        self,
        db: Session,
        *,
        clinic_id: str,
        product_id: str,
        quantity: int,
        expiration_date: date,
        lot_code: str,
        reference_id: str,
        actor_user_id: Optional[str] = None,
        events: Optional[List[EventEnvelope]] = None,
    ) -> models.InventoryItem:
        detail = []
        if not isinstance(quantity, int) or quantity <= 0:
            detail.append({"field": "quantity", "reason": "quantity must be a positive integer"})
        lot_code = (lot_code or "").strip()
        if not lot_code:
            detail.append({"field": "lot_code", "reason": "lot code is required"})
        if not isinstance(expiration_date, date):
            detail.append({"field": "expiration_date", "reason": "expiration date is required"})
        if detail:
            raise ValidationError("Invalid stock addition", detail=detail)

        item = self.get_or_create_in(db, clinic_id=clinic_id, product_id=product_id)
        lot = item.find_lot(expiration_date, lot_code)
        if lot is not None:
            lot.quantity += quantity
        else:
            item.lots.append(
                models.InventoryLot(
                    expiration_date=expiration_date,
                    lot_code=lot_code,
                    quantity=quantity,
                )
            )
        item.quantity_in_stock += quantity
        self._record_movement(
            item,
            movement_type=models.MovementTypeEnum.IN,
            quantity=quantity,
            reference_id=reference_id,
        )
        db.flush()

        after = {
            "product_id": product_id,
            "quantity": quantity,
            "lot_code": lot_code,
            "expiration_date": expiration_date.isoformat(),
            "quantity_in_stock": item.quantity_in_stock,
        }
        audit_services.log_event(
            db,
            clinic_id=clinic_id,
            actor_user_id=actor_user_id,
            entity_type="inventory_item",
            entity_id=item.id,
            action="stock_in",
            after=after,
            correlation_id=reference_id,
        )
        if events is not None:
            events.append(
                EventEnvelope(
                    type=STOCK_ADDED,
                    entityType="inventory_item",
                    entityId=item.id,
                    action="stock_in",
                    clinicId=clinic_id,
                    actor={"userId": actor_user_id} if actor_user_id else None,
                    timestamp=self._clock().isoformat(),
                    metadata={**after, "reference_id": reference_id},
                )
            )
        logger.info(
            "Stock added",
            extra={"clinic_id": clinic_id, "product_id": product_id, "quantity": quantity, "reference_id": reference_id},
        )
        return item

    def remove_stock_in(
        self,
        db: Session,
        *,
        clinic_id: str,
        lines: Iterable[schemas.ProductUsage | dict],
        reference_id: str,
        actor_user_id: Optional[str] = None,
        events: Optional[List[EventEnvelope]] = None,
    ) -> List[models.InventoryItem]:
        usage = coerce_usage_lines(lines)
        if not usage:
            raise ValidationError(
                "At least one product usage line is required",
                detail=[{"field": "lines", "reason": "empty"}],
            )
        demand = _aggregate_demand(usage)

        # Lock every touched row, in a stable order, before validating.
        items: Dict[str, Optional[models.InventoryItem]] = {}
        for product_id in sorted({key[0] for key in demand}):
            items[product_id] = self._item_query(db, clinic_id=clinic_id, product_id=product_id, lock=True).first()

        issues = _collect_issues(items, demand)
        if issues:
            logger.info(
                "Stock removal rejected",
                extra={"clinic_id": clinic_id, "reference_id": reference_id, "issues": [i.as_dict() for i in issues]},
            )
            raise InsufficientStockError(issues)

        removed: "OrderedDict[str, int]" = OrderedDict()
        for (product_id, expiration_date, lot_code), requested in demand.items():
            item = items[product_id]
            lot = item.find_lot(expiration_date, lot_code)
            lot.quantity -= requested
            if lot.quantity == 0:
                item.lots.remove(lot)
            item.quantity_in_stock -= requested
            removed[product_id] = removed.get(product_id, 0) + requested

        for product_id, quantity in removed.items():
            self._record_movement(
                items[product_id],
                movement_type=models.MovementTypeEnum.OUT,
                quantity=quantity,
                reference_id=reference_id,
            )
        db.flush()

        touched = [items[product_id] for product_id in removed]
        for item in touched:
            after = {
                "product_id": item.product_id,
                "quantity": removed[item.product_id],
                "quantity_in_stock": item.quantity_in_stock,
            }
            audit_services.log_event(
                db,
                clinic_id=clinic_id,
                actor_user_id=actor_user_id,
                entity_type="inventory_item",
                entity_id=item.id,
                action="stock_out",
                after=after,
                correlation_id=reference_id,
            )
            if events is not None:
                events.append(
                    EventEnvelope(
                        type=STOCK_REMOVED,
                        entityType="inventory_item",
                        entityId=item.id,
                        action="stock_out",
                        clinicId=clinic_id,
                        actor={"userId": actor_user_id} if actor_user_id else None,
                        timestamp=self._clock().isoformat(),
                        metadata={**after, "reference_id": reference_id},
                    )
                )
        logger.info(
            "Stock removed",
            extra={"clinic_id": clinic_id, "reference_id": reference_id, "products": dict(removed)},
        )
        return touched

    # ------------------------------------------------------------------
    # Mutations (own transaction)
    # ------------------------------------------------------------------

    def get_or_create(
        self,
        clinic_id: str,
        product_id: str,
        *,
        minimum_stock_level: Optional[int] = None,
    ) -> models.InventoryItem:
        return run_in_transaction(
            self._session_factory,
            lambda db: self.get_or_create_in(
                db,
                clinic_id=clinic_id,
                product_id=product_id,
                minimum_stock_level=minimum_stock_level,
            ),
        )

    def add_stock(
        self,
        clinic_id: str,
        product_id: str,
        quantity: int,
        expiration_date: date,
        lot_code: str,
        reference_id: str,
        *,
        actor_user_id: Optional[str] = None,
    ) -> models.InventoryItem:
        def work(db: Session):
            events: List[EventEnvelope] = []
            item = self.add_stock_in(
                db,
                clinic_id=clinic_id,
                product_id=product_id,
                quantity=quantity,
                expiration_date=expiration_date,
                lot_code=lot_code,
                reference_id=reference_id,
                actor_user_id=actor_user_id,
                events=events,
            )
            return item, events

        item, events = run_in_transaction(self._session_factory, work)
        publish_all(self._publisher, events)
        return item

    def remove_stock(
        self,
        clinic_id: str,
        lines: Iterable[schemas.ProductUsage | dict],
        reference_id: str,
        *,
        actor_user_id: Optional[str] = None,
    ) -> List[models.InventoryItem]:
        lines = list(lines)

        def work(db: Session):
            events: List[EventEnvelope] = []
            items = self.remove_stock_in(
                db,
                clinic_id=clinic_id,
                lines=lines,
                reference_id=reference_id,
                actor_user_id=actor_user_id,
                events=events,
            )
            return items, events

        items, events = run_in_transaction(self._session_factory, work)
        publish_all(self._publisher, events)
        return items

    def update_minimum_level(
        self,
        clinic_id: str,
        product_id: str,
        level: int,
        *,
        actor_user_id: Optional[str] = None,
    ) -> models.InventoryItem:
        if not isinstance(level, int) or level < 0:
            raise ValidationError(
                "Minimum stock level must be a non-negative integer",
                detail=[{"field": "minimum_stock_level", "reason": "must be >= 0"}],
            )

        def work(db: Session) -> models.InventoryItem:
            item = self._item_query(db, clinic_id=clinic_id, product_id=product_id, lock=True).first()
            if item is None:
                raise NotFoundError(
                    f"Product {product_id} not found in inventory",
                    detail=[{"field": "product_id", "reason": "not in ledger"}],
                )
            previous = item.minimum_stock_level
            item.minimum_stock_level = level
            item.last_update = self._clock()
            db.flush()
            audit_services.log_event(
                db,
                clinic_id=clinic_id,
                actor_user_id=actor_user_id,
                entity_type="inventory_item",
                entity_id=item.id,
                action="minimum_level_update",
                before={"minimum_stock_level": previous},
                after={"minimum_stock_level": level},
            )
            return item

        return run_in_transaction(self._session_factory, work)

    # ------------------------------------------------------------------
    # Reads (may observe a slightly stale snapshot)
    # ------------------------------------------------------------------

    def get_item(self, clinic_id: str, product_id: str) -> Optional[models.InventoryItem]:
        with self._session_factory() as db:
            return self._item_query(db, clinic_id=clinic_id, product_id=product_id, lock=False).first()

    def list_inventory(self, clinic_id: str) -> List[models.InventoryItem]:
        with self._session_factory() as db:
            return (
                db.query(models.InventoryItem)
                .filter(models.InventoryItem.clinic_id == clinic_id)
                .order_by(models.InventoryItem.product_id.asc())
                .all()
            )

    def check_availability(
        self,
        clinic_id: str,
        lines: Iterable[schemas.ProductUsage | dict],
    ) -> schemas.AvailabilityResult:
        """
        Advisory preview of whether `lines` could be removed right now.

        Never used as the gate for a decrement: `remove_stock` re-validates
        against locked rows.
        """
        usage = coerce_usage_lines(lines)
        demand = _aggregate_demand(usage)
        with self._session_factory() as db:
            items = {
                product_id: self._item_query(db, clinic_id=clinic_id, product_id=product_id, lock=False).first()
                for product_id in {key[0] for key in demand}
            }
            issues = _collect_issues(items, demand)
        return schemas.AvailabilityResult(
            available=not issues,
            issues=[issue.describe() for issue in issues],
        )

    def list_low_stock(self, clinic_id: str) -> List[models.InventoryItem]:
        with self._session_factory() as db:
            return (
                db.query(models.InventoryItem)
                .filter(
                    models.InventoryItem.clinic_id == clinic_id,
                    models.InventoryItem.quantity_in_stock <= models.InventoryItem.minimum_stock_level,
                )
                .order_by(models.InventoryItem.quantity_in_stock.asc())
                .all()
            )

    def list_expiring(
        self,
        clinic_id: str,
        days_ahead: int = 30,
    ) -> List[Tuple[models.InventoryItem, List[models.InventoryLot]]]:
        cutoff = (self._clock() + timedelta(days=days_ahead)).date()
        with self._session_factory() as db:
            items = (
                db.query(models.InventoryItem)
                .join(models.InventoryItem.lots)
                .filter(
                    models.InventoryItem.clinic_id == clinic_id,
                    models.InventoryLot.expiration_date <= cutoff,
                    models.InventoryLot.quantity > 0,
                )
                .distinct()
                .all()
            )
        expiring = []
        for item in items:
            lots = [lot for lot in item.lots if lot.expiration_date <= cutoff and lot.quantity > 0]
            if lots:
                expiring.append((item, lots))
        return expiring

    def list_available_lots(self, clinic_id: str, product_id: str) -> List[models.InventoryLot]:
        """Lots with stock, soonest expiration first. Ordering is a hint only."""
        item = self.get_item(clinic_id, product_id)
        if item is None:
            return []
        lots = [lot for lot in item.lots if lot.quantity > 0]
        return sorted(lots, key=lambda lot: (lot.expiration_date, lot.lot_code))
