from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session, sessionmaker

from clinicdb.apps.audit import services as audit_services
from clinicdb.apps.catalog import models as catalog_models
from clinicdb.apps.catalog.services import Notice, ProductCatalogGate, ResolvedProduct
from clinicdb.apps.events.broker import (
    INVOICE_CREATED,
    INVOICE_STATUS_CHANGED,
    EventEnvelope,
    Publisher,
    publish_all,
    publish_event,
)
from clinicdb.apps.inventory.services import InventoryLedger
from clinicdb.apps.workflow import apply_transition, ensure_transition
from clinicdb.database import run_in_transaction
from clinicdb.errors import (
    DuplicateError,
    InvalidOperationError,
    NotFoundError,
    ValidationError,
    from_pydantic,
)
from clinicdb.utils.identifiers import normalize_code

from . import models, schemas

logger = logging.getLogger(__name__)

ENTITY_TYPE = "supplier_invoice"
CENT = Decimal("0.01")

# Target states accepted by update_status; `pending` is only an initial state.
STATUS_TARGETS = {models.InvoiceStatusEnum.APPROVED, models.InvoiceStatusEnum.REJECTED}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class InvoiceResult:
    invoice: models.SupplierInvoice
    warnings: List[str] = field(default_factory=list)


def coerce_invoice_lines(lines: Iterable[schemas.InvoiceLineIn | dict]) -> List[schemas.InvoiceLineIn]:
    coerced: List[schemas.InvoiceLineIn] = []
    detail: List[Dict[str, str]] = []
    for index, line in enumerate(lines):
        if isinstance(line, schemas.InvoiceLineIn):
            coerced.append(line)
            continue
        try:
            coerced.append(schemas.InvoiceLineIn.model_validate(line))
        except PydanticValidationError as exc:
            detail.extend(
                {"field": f"lines[{index}].{item['field']}", "reason": item["reason"]}
                for item in from_pydantic(exc).detail
            )
    if detail:
        raise ValidationError("Invalid invoice lines", detail=detail)
    return coerced


def line_issues(lines: List[schemas.InvoiceLineIn], *, today: date) -> List[Dict[str, str]]:
    """Per-line field checks; every failing field of every line is reported."""
    detail: List[Dict[str, str]] = []
    for index, line in enumerate(lines):
        prefix = f"lines[{index}]"
        if line.quantity <= 0:
            detail.append({"field": f"{prefix}.quantity", "reason": f"Invalid quantity for product {line.product_id}"})
        if Decimal(line.unit_price).quantize(CENT) <= 0:
            detail.append({"field": f"{prefix}.unit_price", "reason": f"Invalid unit price for product {line.product_id}"})
        if not (line.lot_code or "").strip():
            detail.append({"field": f"{prefix}.lot_code", "reason": f"Lot number required for product {line.product_id}"})
        if line.expiration_date <= today:
            detail.append(
                {
                    "field": f"{prefix}.expiration_date",
                    "reason": f"Expiration date must be in the future for product {line.product_id}",
                }
            )
    return detail


def compute_total(lines: Iterable) -> Decimal:
    total = sum((Decimal(line.quantity) * Decimal(line.unit_price) for line in lines), Decimal("0"))
    return total.quantize(CENT)


class InvoiceReplenishmentPipeline:
    """
    Supplier-invoice lifecycle and the stock it brings in.

    Stock is added exactly once per invoice, on its first entry into
    `approved`, in the same transaction as the status change. The
    `stock_applied_at` marker makes later approvals no-ops for the ledger.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        ledger: InventoryLedger,
        catalog: ProductCatalogGate,
        clock: Callable[[], datetime] = _utcnow,
        publisher: Publisher = publish_event,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._catalog = catalog
        self._clock = clock
        self._publisher = publisher

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validated(self, lines: Iterable[schemas.InvoiceLineIn | dict]) -> List[schemas.InvoiceLineIn]:
        coerced = coerce_invoice_lines(lines)
        detail = line_issues(coerced, today=self._clock().date())
        if detail:
            raise ValidationError("Invalid invoice lines", detail=detail)
        return coerced

    def _load(self, db: Session, *, clinic_id: str, invoice_id: str, lock: bool = False) -> models.SupplierInvoice:
        query = db.query(models.SupplierInvoice).filter(
            models.SupplierInvoice.id == invoice_id,
            models.SupplierInvoice.clinic_id == clinic_id,
        )
        if lock:
            query = query.with_for_update(of=models.SupplierInvoice)
        invoice = query.populate_existing().first()
        if invoice is None:
            raise NotFoundError(
                f"Invoice {invoice_id} not found",
                detail=[{"field": "invoice_id", "reason": "unknown invoice"}],
            )
        return invoice

    @staticmethod
    def _ensure_unique_number(db: Session, *, clinic_id: str, invoice_number: str, exclude_id: Optional[str] = None) -> None:
        query = db.query(models.SupplierInvoice.id).filter(
            models.SupplierInvoice.clinic_id == clinic_id,
            models.SupplierInvoice.invoice_number == invoice_number,
        )
        if exclude_id:
            query = query.filter(models.SupplierInvoice.id != exclude_id)
        if query.first() is not None:
            raise DuplicateError(
                f"Duplicate invoice number {invoice_number}",
                detail=[{"field": "invoice_number", "reason": "duplicate"}],
            )

    def _resolve_lines(
        self,
        db: Session,
        *,
        clinic_id: str,
        lines: List[schemas.InvoiceLineIn],
        events: List[EventEnvelope],
        notices: List[Notice],
    ) -> Tuple[List[models.SupplierInvoiceLine], List[str]]:
        resolved: Dict[str, ResolvedProduct] = {}
        warnings: List[str] = []
        rows: List[models.SupplierInvoiceLine] = []
        for line in lines:
            key = line.product_id.strip()
            cached = resolved.get(key) or resolved.get(normalize_code(key))
            if cached is None:
                cached = self._catalog.resolve_or_provision_in(
                    db,
                    clinic_id=clinic_id,
                    product_ref=key,
                    events=events,
                    notices=notices,
                )
                resolved[key] = resolved[normalize_code(key)] = cached
                if cached.warning:
                    warnings.append(cached.warning)
            product = cached.product
            rows.append(
                models.SupplierInvoiceLine(
                    product_id=product.id,
                    quantity=line.quantity,
                    unit_price=Decimal(line.unit_price).quantize(CENT),
                    expiration_date=line.expiration_date,
                    lot_code=line.lot_code.strip(),
                    batch_number=line.batch_number,
                )
            )
        return rows, warnings

    @staticmethod
    def _append_rows(invoice: models.SupplierInvoice, rows: List[models.SupplierInvoiceLine]) -> None:
        position = len(invoice.lines)
        for row in rows:
            row.position = position
            invoice.lines.append(row)
            position += 1
        invoice.total_value = compute_total(invoice.lines)

    def _replenish(
        self,
        db: Session,
        invoice: models.SupplierInvoice,
        *,
        actor_user_id: Optional[str],
        events: List[EventEnvelope],
    ) -> bool:
        if invoice.stock_applied_at is not None:
            return False
        # Stable row-lock order, shared with remove_stock.
        for line in sorted(invoice.lines, key=lambda row: (row.product_id, row.position)):
            self._ledger.add_stock_in(
                db,
                clinic_id=invoice.clinic_id,
                product_id=line.product_id,
                quantity=line.quantity,
                expiration_date=line.expiration_date,
                lot_code=line.lot_code,
                reference_id=invoice.id,
                actor_user_id=actor_user_id,
                events=events,
            )
        invoice.stock_applied_at = self._clock()
        logger.info(
            "Invoice stock applied",
            extra={"clinic_id": invoice.clinic_id, "invoice_id": invoice.id, "lines": len(invoice.lines)},
        )
        return True

    def _transition(
        self,
        db: Session,
        invoice: models.SupplierInvoice,
        to_status: models.InvoiceStatusEnum,
        *,
        actor_user_id: Optional[str],
        events: List[EventEnvelope],
    ) -> None:
        from_state = invoice.status.value
        ensure_transition(
            entity_type=ENTITY_TYPE,
            from_state=from_state,
            to_state=to_status.value,
            before_obj=invoice,
        )
        invoice.status = to_status
        invoice.updated_at = self._clock()
        applied = False
        if to_status == models.InvoiceStatusEnum.APPROVED:
            applied = self._replenish(db, invoice, actor_user_id=actor_user_id, events=events)
        db.flush()
        apply_transition(
            db,
            clinic_id=invoice.clinic_id,
            actor_user_id=actor_user_id,
            entity_type=ENTITY_TYPE,
            entity_id=invoice.id,
            from_state=from_state,
            to_state=to_status.value,
            before_obj=invoice,
            after_obj={"stock_applied": applied},
        )
        events.append(
            EventEnvelope(
                type=INVOICE_STATUS_CHANGED,
                entityType=ENTITY_TYPE,
                entityId=invoice.id,
                action="status_changed",
                clinicId=invoice.clinic_id,
                actor={"userId": actor_user_id} if actor_user_id else None,
                timestamp=self._clock().isoformat(),
                metadata={"from": from_state, "to": to_status.value, "stock_applied": applied},
            )
        )

    def _finish(self, events: List[EventEnvelope], notices: List[Notice]) -> None:
        publish_all(self._publisher, events)
        self._catalog.send_notices(notices)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        clinic_id: str,
        payload: schemas.InvoiceCreate,
        *,
        actor_user_id: Optional[str] = None,
    ) -> InvoiceResult:
        lines = self._validated(payload.lines)
        invoice_number = payload.invoice_number.strip()

        def work(db: Session):
            events: List[EventEnvelope] = []
            notices: List[Notice] = []
            self._ensure_unique_number(db, clinic_id=clinic_id, invoice_number=invoice_number)
            rows, warnings = self._resolve_lines(db, clinic_id=clinic_id, lines=lines, events=events, notices=notices)

            invoice = models.SupplierInvoice(
                clinic_id=clinic_id,
                invoice_number=invoice_number,
                supplier=payload.supplier,
                emission_date=payload.emission_date,
                status=models.InvoiceStatusEnum.PENDING,
                attachments=list(payload.attachments),
                notes=payload.notes,
                created_by=payload.created_by or actor_user_id,
                created_at=self._clock(),
                lines=[],
            )
            self._append_rows(invoice, rows)
            db.add(invoice)
            db.flush()

            audit_services.log_event(
                db,
                clinic_id=clinic_id,
                actor_user_id=actor_user_id,
                entity_type=ENTITY_TYPE,
                entity_id=invoice.id,
                action="create",
                after={
                    "invoice_number": invoice_number,
                    "total_value": str(invoice.total_value),
                    "lines": len(rows),
                },
            )
            events.append(
                EventEnvelope(
                    type=INVOICE_CREATED,
                    entityType=ENTITY_TYPE,
                    entityId=invoice.id,
                    action="created",
                    clinicId=clinic_id,
                    actor={"userId": actor_user_id} if actor_user_id else None,
                    timestamp=self._clock().isoformat(),
                    metadata={"invoice_number": invoice_number, "total_value": str(invoice.total_value)},
                )
            )
            if payload.status != models.InvoiceStatusEnum.PENDING:
                self._transition(db, invoice, payload.status, actor_user_id=actor_user_id, events=events)
            return invoice, warnings, events, notices

        invoice, warnings, events, notices = run_in_transaction(self._session_factory, work)
        self._finish(events, notices)
        logger.info(
            "Invoice created",
            extra={"clinic_id": clinic_id, "invoice_id": invoice.id, "status": invoice.status.value},
        )
        return InvoiceResult(invoice=invoice, warnings=warnings)

    def update_status(
        self,
        clinic_id: str,
        invoice_id: str,
        status: models.InvoiceStatusEnum | str,
        *,
        actor_user_id: Optional[str] = None,
    ) -> models.SupplierInvoice:
        try:
            target = models.InvoiceStatusEnum(status)
        except ValueError:
            target = None
        if target not in STATUS_TARGETS:
            raise ValidationError(
                f"Invalid invoice status {status!r}",
                detail=[{"field": "status", "reason": "must be approved or rejected"}],
            )

        def work(db: Session):
            events: List[EventEnvelope] = []
            invoice = self._load(db, clinic_id=clinic_id, invoice_id=invoice_id, lock=True)
            self._transition(db, invoice, target, actor_user_id=actor_user_id, events=events)
            return invoice, events

        invoice, events = run_in_transaction(self._session_factory, work)
        publish_all(self._publisher, events)
        logger.info(
            "Invoice status updated",
            extra={"clinic_id": clinic_id, "invoice_id": invoice_id, "status": target.value},
        )
        return invoice

    def update(
        self,
        clinic_id: str,
        invoice_id: str,
        payload: schemas.InvoiceUpdate,
        *,
        actor_user_id: Optional[str] = None,
    ) -> InvoiceResult:
        changes = payload.model_dump(exclude_unset=True)
        new_status = changes.pop("status", None)
        new_lines = None
        if "lines" in changes:
            changes.pop("lines")
            new_lines = self._validated(payload.lines or [])
        # Only notes may be cleared; other columns are required.
        changes = {key: value for key, value in changes.items() if value is not None or key == "notes"}
        if "invoice_number" in changes:
            changes["invoice_number"] = changes["invoice_number"].strip()

        def work(db: Session):
            events: List[EventEnvelope] = []
            notices: List[Notice] = []
            warnings: List[str] = []
            invoice = self._load(db, clinic_id=clinic_id, invoice_id=invoice_id, lock=True)

            number = changes.get("invoice_number")
            if number and number != invoice.invoice_number:
                self._ensure_unique_number(db, clinic_id=clinic_id, invoice_number=number, exclude_id=invoice.id)
            for key, value in changes.items():
                setattr(invoice, key, value)

            if new_lines is not None:
                if invoice.stock_applied:
                    raise InvalidOperationError(
                        "Cannot change lines of an invoice whose stock was already applied",
                        detail=[{"field": "lines", "reason": "stock already applied"}],
                    )
                rows, warnings = self._resolve_lines(
                    db,
                    clinic_id=clinic_id,
                    lines=new_lines,
                    events=events,
                    notices=notices,
                )
                invoice.lines.clear()
                db.flush()
                self._append_rows(invoice, rows)

            invoice.updated_at = self._clock()
            db.flush()
            audit_services.log_event(
                db,
                clinic_id=clinic_id,
                actor_user_id=actor_user_id,
                entity_type=ENTITY_TYPE,
                entity_id=invoice.id,
                action="update",
                after={
                    "fields": sorted(changes) + (["lines"] if new_lines is not None else []),
                    "total_value": str(invoice.total_value),
                },
            )
            if new_status is not None and models.InvoiceStatusEnum(new_status) != invoice.status:
                self._transition(
                    db,
                    invoice,
                    models.InvoiceStatusEnum(new_status),
                    actor_user_id=actor_user_id,
                    events=events,
                )
            return invoice, warnings, events, notices

        invoice, warnings, events, notices = run_in_transaction(self._session_factory, work)
        self._finish(events, notices)
        return InvoiceResult(invoice=invoice, warnings=warnings)

    def add_products(
        self,
        clinic_id: str,
        invoice_id: str,
        lines: Iterable[schemas.InvoiceLineIn | dict],
        *,
        actor_user_id: Optional[str] = None,
    ) -> InvoiceResult:
        new_lines = self._validated(lines)
        if not new_lines:
            raise ValidationError("At least one line is required", detail=[{"field": "lines", "reason": "empty"}])

        def work(db: Session):
            events: List[EventEnvelope] = []
            notices: List[Notice] = []
            invoice = self._load(db, clinic_id=clinic_id, invoice_id=invoice_id, lock=True)
            if invoice.stock_applied:
                raise InvalidOperationError(
                    "Cannot add lines to an invoice whose stock was already applied",
                    detail=[{"field": "lines", "reason": "stock already applied"}],
                )
            rows, warnings = self._resolve_lines(
                db,
                clinic_id=clinic_id,
                lines=new_lines,
                events=events,
                notices=notices,
            )
            self._append_rows(invoice, rows)
            invoice.updated_at = self._clock()
            db.flush()
            audit_services.log_event(
                db,
                clinic_id=clinic_id,
                actor_user_id=actor_user_id,
                entity_type=ENTITY_TYPE,
                entity_id=invoice.id,
                action="add_products",
                after={"added": len(rows), "total_value": str(invoice.total_value)},
            )
            return invoice, warnings, events, notices

        invoice, warnings, events, notices = run_in_transaction(self._session_factory, work)
        self._finish(events, notices)
        return InvoiceResult(invoice=invoice, warnings=warnings)

    def delete(self, clinic_id: str, invoice_id: str, *, actor_user_id: Optional[str] = None) -> None:
        def work(db: Session) -> None:
            invoice = self._load(db, clinic_id=clinic_id, invoice_id=invoice_id, lock=True)
            if invoice.status == models.InvoiceStatusEnum.APPROVED or invoice.stock_applied:
                raise InvalidOperationError(
                    "Cannot delete an invoice whose stock was applied. Reject it instead.",
                    detail=[{"field": "status", "reason": invoice.status.value}],
                )
            snapshot = {"invoice_number": invoice.invoice_number, "status": invoice.status.value}
            db.delete(invoice)
            db.flush()
            audit_services.log_event(
                db,
                clinic_id=clinic_id,
                actor_user_id=actor_user_id,
                entity_type=ENTITY_TYPE,
                entity_id=invoice_id,
                action="delete",
                before=snapshot,
            )

        run_in_transaction(self._session_factory, work)
        logger.info("Invoice deleted", extra={"clinic_id": clinic_id, "invoice_id": invoice_id})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, clinic_id: str, invoice_id: str) -> models.SupplierInvoice:
        with self._session_factory() as db:
            return self._load(db, clinic_id=clinic_id, invoice_id=invoice_id)

    def list(
        self,
        clinic_id: str,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[models.SupplierInvoice]:
        with self._session_factory() as db:
            query = db.query(models.SupplierInvoice).filter(models.SupplierInvoice.clinic_id == clinic_id)
            if start is not None:
                query = query.filter(models.SupplierInvoice.emission_date >= start)
            if end is not None:
                query = query.filter(models.SupplierInvoice.emission_date <= end)
            return query.order_by(models.SupplierInvoice.created_at.desc()).all()

    def list_by_status(self, clinic_id: str, status: models.InvoiceStatusEnum) -> List[models.SupplierInvoice]:
        with self._session_factory() as db:
            return (
                db.query(models.SupplierInvoice)
                .filter(
                    models.SupplierInvoice.clinic_id == clinic_id,
                    models.SupplierInvoice.status == status,
                )
                .order_by(models.SupplierInvoice.created_at.desc())
                .all()
            )

    def pending_products(self, clinic_id: str, invoice_id: str) -> List[catalog_models.Product]:
        """Products on the invoice still awaiting approval that this clinic requested."""
        with self._session_factory() as db:
            invoice = self._load(db, clinic_id=clinic_id, invoice_id=invoice_id)
            product_ids = {line.product_id for line in invoice.lines}
            if not product_ids:
                return []
            return (
                db.query(catalog_models.Product)
                .filter(
                    catalog_models.Product.id.in_(product_ids),
                    catalog_models.Product.status == catalog_models.ProductStatusEnum.PENDING,
                    catalog_models.Product.requested_by_clinic_id == clinic_id,
                )
                .order_by(catalog_models.Product.external_code.asc())
                .all()
            )

    def validate_lines(self, lines: Iterable[schemas.InvoiceLineIn | dict]) -> schemas.LineValidationResult:
        """Preview of what `create` would accept. Never writes."""
        coerced = coerce_invoice_lines(lines)
        issues = [item["reason"] for item in line_issues(coerced, today=self._clock().date())]
        pending: List[str] = []
        with self._session_factory() as db:
            for line in coerced:
                product = self._catalog.find_in(db, line.product_id.strip())
                if product is None:
                    pending.append(line.product_id)
                elif not product.is_approved:
                    issues.append(f"Product {line.product_id} is not approved")
        return schemas.LineValidationResult(valid=not issues, issues=issues, pending_products=pending)
