from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from clinicdb.apps.audit import services as audit_services
from clinicdb.apps.catalog import models as catalog_models
from clinicdb.apps.events.broker import (
    REQUEST_CANCELLED,
    REQUEST_CONSUMED,
    REQUEST_CREATED,
    EventEnvelope,
    Publisher,
    publish_all,
    publish_event,
)
from clinicdb.apps.inventory.schemas import ProductUsage
from clinicdb.apps.inventory.services import InventoryLedger, coerce_usage_lines
from clinicdb.apps.patients import services as patient_services
from clinicdb.apps.workflow import apply_transition, ensure_transition
from clinicdb.database import run_in_transaction
from clinicdb.errors import InvalidStateError, NotFoundError, ValidationError

from . import models, schemas

logger = logging.getLogger(__name__)

ENTITY_TYPE = "treatment_request"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CreatedRequest:
    request: models.TreatmentRequest
    warnings: List[str] = field(default_factory=list)


def usage_from_rows(rows: Iterable[models.RequestProductUsage]) -> List[ProductUsage]:
    return [
        ProductUsage(
            product_id=row.product_id,
            quantity=row.quantity,
            lot_code=row.lot_code,
            expiration_date=row.expiration_date,
        )
        for row in rows
    ]


class RequestConsumptionEngine:
    """
    Treatment-request lifecycle: pending -> consumed | cancelled.

    Creating a request never touches stock; availability problems come back
    as warnings. `consume` is the only path that decrements the ledger, and
    it does so in the same transaction that flips the status.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        ledger: InventoryLedger,
        clock: Callable[[], datetime] = _utcnow,
        publisher: Publisher = publish_event,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._clock = clock
        self._publisher = publisher

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, db: Session, *, clinic_id: str, request_id: str, lock: bool = False) -> models.TreatmentRequest:
        query = db.query(models.TreatmentRequest).filter(
            models.TreatmentRequest.id == request_id,
            models.TreatmentRequest.clinic_id == clinic_id,
        )
        if lock:
            query = query.with_for_update(of=models.TreatmentRequest)
        request = query.populate_existing().first()
        if request is None:
            raise NotFoundError(
                f"Request {request_id} not found",
                detail=[{"field": "request_id", "reason": "unknown request"}],
            )
        return request

    @staticmethod
    def _require_pending(request: models.TreatmentRequest) -> None:
        if request.status != models.TreatmentStatusEnum.PENDING:
            raise InvalidStateError(
                "Cannot modify request that is not pending",
                detail=[{"field": "status", "reason": f"request is {request.status.value}"}],
            )

    @staticmethod
    def _check_products_exist(db: Session, lines: List[ProductUsage], *, field_name: str) -> None:
        detail = []
        for index, line in enumerate(lines):
            if db.get(catalog_models.Product, line.product_id) is None:
                detail.append({"field": f"{field_name}[{index}].product_id", "reason": "unknown product"})
        if detail:
            raise ValidationError("Unknown products in request", detail=detail)

    @staticmethod
    def _append_lines(request: models.TreatmentRequest, lines: List[ProductUsage]) -> None:
        position = len(request.products_used)
        for line in lines:
            request.products_used.append(
                models.RequestProductUsage(
                    position=position,
                    product_id=line.product_id,
                    quantity=line.quantity,
                    lot_code=line.lot_code.strip(),
                    expiration_date=line.expiration_date,
                )
            )
            position += 1

    def _event(self, event_type: str, request: models.TreatmentRequest, action: str, actor_user_id: Optional[str]) -> EventEnvelope:
        return EventEnvelope(
            type=event_type,
            entityType=ENTITY_TYPE,
            entityId=request.id,
            action=action,
            clinicId=request.clinic_id,
            actor={"userId": actor_user_id} if actor_user_id else None,
            timestamp=self._clock().isoformat(),
            metadata={"patient_id": request.patient_id, "treatment_type": request.treatment_type},
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        clinic_id: str,
        payload: schemas.TreatmentRequestCreate,
        *,
        actor_user_id: Optional[str] = None,
    ) -> CreatedRequest:
        lines = coerce_usage_lines(payload.products_used)

        def work(db: Session):
            patient_services.get_patient(db, clinic_id=clinic_id, patient_id=payload.patient_id)
            self._check_products_exist(db, lines, field_name="products_used")

            request = models.TreatmentRequest(
                clinic_id=clinic_id,
                patient_id=payload.patient_id,
                request_date=payload.request_date,
                treatment_type=payload.treatment_type,
                status=models.TreatmentStatusEnum.PENDING,
                notes=payload.notes,
                performed_by=payload.performed_by or actor_user_id,
                created_at=self._clock(),
                products_used=[],
            )
            self._append_lines(request, lines)
            db.add(request)
            db.flush()

            patient_services.add_treatment_to_history(
                db,
                clinic_id=clinic_id,
                patient_id=payload.patient_id,
                request_id=request.id,
            )
            audit_services.log_event(
                db,
                clinic_id=clinic_id,
                actor_user_id=actor_user_id,
                entity_type=ENTITY_TYPE,
                entity_id=request.id,
                action="create",
                after={"status": request.status.value, "lines": len(lines)},
            )
            return request, [self._event(REQUEST_CREATED, request, "created", actor_user_id)]

        request, events = run_in_transaction(self._session_factory, work)
        publish_all(self._publisher, events)

        warnings: List[str] = []
        if lines:
            availability = self._ledger.check_availability(clinic_id, lines)
            warnings = list(availability.issues)
        logger.info(
            "Treatment request created",
            extra={"clinic_id": clinic_id, "request_id": request.id, "warnings": len(warnings)},
        )
        return CreatedRequest(request=request, warnings=warnings)

    def update(
        self,
        clinic_id: str,
        request_id: str,
        payload: schemas.TreatmentRequestUpdate,
        *,
        actor_user_id: Optional[str] = None,
    ) -> models.TreatmentRequest:
        changes = payload.model_dump(exclude_unset=True)
        new_lines = None
        if "products_used" in changes:
            new_lines = coerce_usage_lines(payload.products_used or [])
            changes.pop("products_used")
        changes = {
            key: value for key, value in changes.items() if value is not None or key in ("notes", "performed_by")
        }

        def work(db: Session) -> models.TreatmentRequest:
            request = self._load(db, clinic_id=clinic_id, request_id=request_id, lock=True)
            self._require_pending(request)
            before = {key: getattr(request, key) for key in changes}
            for key, value in changes.items():
                setattr(request, key, value)
            if new_lines is not None:
                self._check_products_exist(db, new_lines, field_name="products_used")
                request.products_used.clear()
                db.flush()
                self._append_lines(request, new_lines)
            request.updated_at = self._clock()
            db.flush()
            audit_services.log_event(
                db,
                clinic_id=clinic_id,
                actor_user_id=actor_user_id,
                entity_type=ENTITY_TYPE,
                entity_id=request.id,
                action="update",
                before={key: str(value) if value is not None else None for key, value in before.items()},
                after={key: str(value) if value is not None else None for key, value in changes.items()},
            )
            return request

        return run_in_transaction(self._session_factory, work)

    def add_products(
        self,
        clinic_id: str,
        request_id: str,
        products: Iterable[ProductUsage | dict],
        *,
        actor_user_id: Optional[str] = None,
    ) -> models.TreatmentRequest:
        lines = coerce_usage_lines(products)
        if not lines:
            raise ValidationError("At least one product is required", detail=[{"field": "products", "reason": "empty"}])

        def work(db: Session) -> models.TreatmentRequest:
            request = self._load(db, clinic_id=clinic_id, request_id=request_id, lock=True)
            self._require_pending(request)
            self._check_products_exist(db, lines, field_name="products")
            self._append_lines(request, lines)
            request.updated_at = self._clock()
            db.flush()
            audit_services.log_event(
                db,
                clinic_id=clinic_id,
                actor_user_id=actor_user_id,
                entity_type=ENTITY_TYPE,
                entity_id=request.id,
                action="add_products",
                after={"added": len(lines), "lines": len(request.products_used)},
            )
            return request

        return run_in_transaction(self._session_factory, work)

    def consume(
        self,
        clinic_id: str,
        request_id: str,
        *,
        actor_user_id: Optional[str] = None,
    ) -> models.TreatmentRequest:
        """
        Deduct the request's lines from the ledger and mark it consumed.

        Either both happen or neither: on InsufficientStockError the request
        stays pending and no lot changes.
        """

        def work(db: Session):
            request = self._load(db, clinic_id=clinic_id, request_id=request_id, lock=True)
            from_state = request.status.value
            ensure_transition(
                entity_type=ENTITY_TYPE,
                from_state=from_state,
                to_state=models.TreatmentStatusEnum.CONSUMED.value,
                before_obj=request,
            )
            events: List[EventEnvelope] = []
            self._ledger.remove_stock_in(
                db,
                clinic_id=clinic_id,
                lines=usage_from_rows(request.products_used),
                reference_id=request.id,
                actor_user_id=actor_user_id,
                events=events,
            )
            request.status = models.TreatmentStatusEnum.CONSUMED
            request.updated_at = self._clock()
            db.flush()
            apply_transition(
                db,
                clinic_id=clinic_id,
                actor_user_id=actor_user_id,
                entity_type=ENTITY_TYPE,
                entity_id=request.id,
                from_state=from_state,
                to_state=request.status.value,
                before_obj=request,
            )
            events.append(self._event(REQUEST_CONSUMED, request, "consumed", actor_user_id))
            return request, events

        request, events = run_in_transaction(self._session_factory, work)
        publish_all(self._publisher, events)
        logger.info("Treatment request consumed", extra={"clinic_id": clinic_id, "request_id": request_id})
        return request

    def cancel(
        self,
        clinic_id: str,
        request_id: str,
        reason: Optional[str] = None,
        *,
        actor_user_id: Optional[str] = None,
    ) -> models.TreatmentRequest:
        def work(db: Session):
            request = self._load(db, clinic_id=clinic_id, request_id=request_id, lock=True)
            from_state = request.status.value
            ensure_transition(
                entity_type=ENTITY_TYPE,
                from_state=from_state,
                to_state=models.TreatmentStatusEnum.CANCELLED.value,
                before_obj=request,
            )
            if reason:
                note = f"Cancelled: {reason}"
                request.notes = f"{request.notes}\n\n{note}" if request.notes else note
            request.status = models.TreatmentStatusEnum.CANCELLED
            request.updated_at = self._clock()
            db.flush()
            apply_transition(
                db,
                clinic_id=clinic_id,
                actor_user_id=actor_user_id,
                entity_type=ENTITY_TYPE,
                entity_id=request.id,
                from_state=from_state,
                to_state=request.status.value,
                after_obj={"reason": reason},
            )
            return request, [self._event(REQUEST_CANCELLED, request, "cancelled", actor_user_id)]

        request, events = run_in_transaction(self._session_factory, work)
        publish_all(self._publisher, events)
        logger.info("Treatment request cancelled", extra={"clinic_id": clinic_id, "request_id": request_id})
        return request

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, clinic_id: str, request_id: str) -> models.TreatmentRequest:
        with self._session_factory() as db:
            return self._load(db, clinic_id=clinic_id, request_id=request_id)

    def list(
        self,
        clinic_id: str,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[models.TreatmentRequest]:
        with self._session_factory() as db:
            query = db.query(models.TreatmentRequest).filter(models.TreatmentRequest.clinic_id == clinic_id)
            if start is not None:
                query = query.filter(models.TreatmentRequest.request_date >= start)
            if end is not None:
                query = query.filter(models.TreatmentRequest.request_date <= end)
            return query.order_by(
                models.TreatmentRequest.request_date.desc(),
                models.TreatmentRequest.created_at.desc(),
            ).all()

    def list_by_status(self, clinic_id: str, status: models.TreatmentStatusEnum) -> List[models.TreatmentRequest]:
        with self._session_factory() as db:
            return (
                db.query(models.TreatmentRequest)
                .filter(
                    models.TreatmentRequest.clinic_id == clinic_id,
                    models.TreatmentRequest.status == status,
                )
                .order_by(models.TreatmentRequest.created_at.desc())
                .all()
            )

    def list_by_patient(self, clinic_id: str, patient_id: str) -> List[models.TreatmentRequest]:
        with self._session_factory() as db:
            return (
                db.query(models.TreatmentRequest)
                .filter(
                    models.TreatmentRequest.clinic_id == clinic_id,
                    models.TreatmentRequest.patient_id == patient_id,
                )
                .order_by(models.TreatmentRequest.request_date.desc())
                .all()
            )

    def list_by_product(self, clinic_id: str, product_id: str) -> List[models.TreatmentRequest]:
        with self._session_factory() as db:
            return (
                db.query(models.TreatmentRequest)
                .join(models.TreatmentRequest.products_used)
                .filter(
                    models.TreatmentRequest.clinic_id == clinic_id,
                    models.RequestProductUsage.product_id == product_id,
                )
                .distinct()
                .order_by(models.TreatmentRequest.request_date.desc())
                .all()
            )

    def product_usage_stats(
        self,
        clinic_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> Dict[str, int]:
        """Total quantity per product over consumed requests in the date range."""
        usage: Dict[str, int] = {}
        with self._session_factory() as db:
            query = db.query(models.TreatmentRequest).filter(
                models.TreatmentRequest.clinic_id == clinic_id,
                models.TreatmentRequest.status == models.TreatmentStatusEnum.CONSUMED,
            )
            if start is not None:
                query = query.filter(models.TreatmentRequest.request_date >= start)
            if end is not None:
                query = query.filter(models.TreatmentRequest.request_date <= end)
            for request in query.all():
                for line in request.products_used:
                    usage[line.product_id] = usage.get(line.product_id, 0) + line.quantity
        return usage
