from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from clinicdb.apps.events.broker import (
    PRODUCT_APPROVED,
    PRODUCT_PROVISIONED,
    EventEnvelope,
    Publisher,
    publish_all,
    publish_event,
)
from clinicdb.apps.notifications.service import (
    PRODUCT_APPROVED_TEMPLATE,
    PRODUCT_PENDING_TEMPLATE,
    NotificationSink,
)
from clinicdb.apps.workflow import apply_transition, ensure_transition
from clinicdb.database import run_in_transaction
from clinicdb.errors import (
    AlreadyApprovedError,
    DuplicateError,
    NotFoundError,
    ProductNotApprovedError,
    ValidationError,
)
from clinicdb.utils.identifiers import normalize_code

from . import models, schemas

logger = logging.getLogger(__name__)

PRODUCT_CODE_PATTERN = re.compile(r"^[A-Z0-9-]+$")
PRODUCT_NAME_MAX_LENGTH = 100
PRODUCT_DESCRIPTION_MAX_LENGTH = 500

# Ledger rows opened on approval for the requesting clinic start with this
# minimum level so the product shows up in low-stock alerts at zero.
APPROVAL_MINIMUM_STOCK_LEVEL = 1

PROVISIONED_DESCRIPTION = "Product requested via invoice"
PROVISIONED_CATEGORY = "General"

# (template_key, clinic_id, payload) delivered after commit
Notice = Tuple[str, Optional[str], Dict[str, Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ResolvedProduct:
    product: models.Product
    provisioned: bool = False

    @property
    def warning(self) -> Optional[str]:
        if not self.provisioned:
            return None
        return (
            f"Product {self.product.external_code} was not in the catalog; "
            "it has been submitted for approval"
        )


def validate_product_data(data: Mapping[str, Any]) -> None:
    """
    Validate the product fields present in `data`.

    Absent keys are not checked, so the same rules serve creation and
    partial updates. Raises ValidationError listing every failing field.
    """
    detail: List[Dict[str, str]] = []

    if "name" in data:
        name = data["name"]
        if not name or not str(name).strip():
            detail.append({"field": "name", "reason": "Product name is required"})
        elif len(name) > PRODUCT_NAME_MAX_LENGTH:
            detail.append({"field": "name", "reason": f"Product name must be {PRODUCT_NAME_MAX_LENGTH} characters or less"})

    if "description" in data and data["description"] is not None:
        description = data["description"]
        if not str(description).strip():
            detail.append({"field": "description", "reason": "Product description is required"})
        elif len(description) > PRODUCT_DESCRIPTION_MAX_LENGTH:
            detail.append(
                {
                    "field": "description",
                    "reason": f"Product description must be {PRODUCT_DESCRIPTION_MAX_LENGTH} characters or less",
                }
            )

    if "external_code" in data:
        code = data["external_code"]
        if not code or not str(code).strip():
            detail.append({"field": "external_code", "reason": "Product code is required"})
        elif not PRODUCT_CODE_PATTERN.match(code):
            detail.append(
                {
                    "field": "external_code",
                    "reason": "Product code must contain only uppercase letters, numbers, and hyphens",
                }
            )

    if "category" in data:
        category = data["category"]
        if not category or not str(category).strip():
            detail.append({"field": "category", "reason": "Product category is required"})

    if "unit_type" in data and data["unit_type"] is not None:
        try:
            models.UnitTypeEnum(data["unit_type"])
        except ValueError:
            detail.append({"field": "unit_type", "reason": "Unit type must be one of: ml, units, vials"})

    if detail:
        raise ValidationError("Invalid product data", detail=detail)


class ProductCatalogGate:
    """
    Approval gate for the shared product catalog.

    Clinics never add products directly: an unknown product on an invoice is
    provisioned as `pending` and only becomes usable once approved.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        ledger,
        clock: Callable[[], datetime] = _utcnow,
        publisher: Publisher = publish_event,
        notifier: Optional[NotificationSink] = None,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._clock = clock
        self._publisher = publisher
        self._notifier = notifier or NotificationSink()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_in(self, db: Session, product_ref: str, *, lock: bool = False) -> Optional[models.Product]:
        """Find a product by id, then by external code."""
        query = db.query(models.Product)
        if lock:
            query = query.with_for_update(of=models.Product)
        product = query.filter(models.Product.id == product_ref).populate_existing().first()
        if product is None:
            product = query.filter(models.Product.external_code == normalize_code(product_ref)).populate_existing().first()
        return product

    def get(self, product_id: str) -> models.Product:
        with self._session_factory() as db:
            product = db.get(models.Product, product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        return product

    def get_by_code(self, external_code: str) -> models.Product:
        with self._session_factory() as db:
            product = (
                db.query(models.Product)
                .filter(models.Product.external_code == normalize_code(external_code))
                .first()
            )
        if product is None:
            raise NotFoundError(f"Product with code {external_code} not found")
        return product

    def list(self, status: Optional[models.ProductStatusEnum] = None) -> List[models.Product]:
        with self._session_factory() as db:
            query = db.query(models.Product)
            if status is not None:
                query = query.filter(models.Product.status == status)
            return query.order_by(models.Product.name.asc()).all()

    # ------------------------------------------------------------------
    # Catalog maintenance
    # ------------------------------------------------------------------

    def create_product(
        self,
        payload: schemas.ProductCreate,
        *,
        actor_user_id: Optional[str] = None,
    ) -> models.Product:
        data = payload.model_dump()
        data["external_code"] = normalize_code(data["external_code"])
        validate_product_data(data)

        def work(db: Session) -> models.Product:
            if db.query(models.Product).filter(models.Product.external_code == data["external_code"]).first():
                raise DuplicateError(
                    f"Product with code {data['external_code']} already exists",
                    detail=[{"field": "external_code", "reason": "duplicate"}],
                )
            product = models.Product(**data, approval_history=[])
            if product.status == models.ProductStatusEnum.APPROVED:
                product.approval_history.append(
                    models.ProductApproval(
                        approved_by=actor_user_id or "system",
                        approved_at=self._clock(),
                        notes="Created as approved",
                    )
                )
            db.add(product)
            db.flush()
            return product

        product = run_in_transaction(self._session_factory, work)
        logger.info(
            "Product created",
            extra={"product_id": product.id, "external_code": product.external_code, "status": product.status.value},
        )
        if product.status == models.ProductStatusEnum.PENDING and product.requested_by_clinic_id:
            self._notifier.notify(
                PRODUCT_PENDING_TEMPLATE,
                clinic_id=product.requested_by_clinic_id,
                payload={"product_id": product.id, "external_code": product.external_code, "name": product.name},
            )
        return product

    def update_product(self, product_id: str, payload: schemas.ProductUpdate) -> models.Product:
        changes = payload.model_dump(exclude_unset=True)
        validate_product_data(changes)

        def work(db: Session) -> models.Product:
            product = self.find_in(db, product_id, lock=True)
            if product is None:
                raise NotFoundError(f"Product {product_id} not found")
            for field, value in changes.items():
                setattr(product, field, value)
            product.updated_at = self._clock()
            db.flush()
            return product

        return run_in_transaction(self._session_factory, work)

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    def resolve_or_provision_in(
        self,
        db: Session,
        *,
        clinic_id: str,
        product_ref: str,
        events: Optional[List[EventEnvelope]] = None,
        notices: Optional[List[Notice]] = None,
    ) -> ResolvedProduct:
        product = self.find_in(db, product_ref)
        if product is not None:
            if not product.is_approved:
                raise ProductNotApprovedError(
                    f"Product {product.external_code} is pending approval",
                    detail=[{"field": "product_id", "reason": "pending approval"}],
                )
            return ResolvedProduct(product=product)

        external_code = normalize_code(product_ref)
        data = {
            "name": f"Product {external_code}",
            "description": PROVISIONED_DESCRIPTION,
            "external_code": external_code,
            "category": PROVISIONED_CATEGORY,
            "unit_type": models.UnitTypeEnum.UNITS,
        }
        validate_product_data(data)
        product = models.Product(
            **data,
            status=models.ProductStatusEnum.PENDING,
            requested_by_clinic_id=clinic_id,
            approval_history=[],
        )
        try:
            with db.begin_nested():
                db.add(product)
                db.flush()
        except IntegrityError:
            # Provisioned concurrently by another clinic's invoice.
            raise ProductNotApprovedError(
                f"Product {external_code} is pending approval",
                detail=[{"field": "product_id", "reason": "pending approval"}],
            )

        logger.info(
            "Product provisioned for approval",
            extra={"clinic_id": clinic_id, "product_id": product.id, "external_code": external_code},
        )
        if events is not None:
            events.append(
                EventEnvelope(
                    type=PRODUCT_PROVISIONED,
                    entityType="product",
                    entityId=product.id,
                    action="provisioned",
                    clinicId=clinic_id,
                    timestamp=self._clock().isoformat(),
                    metadata={"external_code": external_code},
                )
            )
        if notices is not None:
            notices.append(
                (
                    PRODUCT_PENDING_TEMPLATE,
                    clinic_id,
                    {"product_id": product.id, "external_code": external_code, "name": product.name},
                )
            )
        return ResolvedProduct(product=product, provisioned=True)

    def resolve_or_provision(self, clinic_id: str, product_ref: str) -> ResolvedProduct:
        def work(db: Session):
            events: List[EventEnvelope] = []
            notices: List[Notice] = []
            resolved = self.resolve_or_provision_in(
                db,
                clinic_id=clinic_id,
                product_ref=product_ref,
                events=events,
                notices=notices,
            )
            return resolved, events, notices

        resolved, events, notices = run_in_transaction(self._session_factory, work)
        publish_all(self._publisher, events)
        self.send_notices(notices)
        return resolved

    def approve(self, product_id: str, approver_id: str, notes: Optional[str] = None) -> models.Product:
        def work(db: Session):
            product = self.find_in(db, product_id, lock=True)
            if product is None:
                raise NotFoundError(f"Product {product_id} not found")
            if product.is_approved:
                raise AlreadyApprovedError(
                    f"Product {product.external_code} is already approved",
                    detail=[{"field": "status", "reason": "already approved"}],
                )
            from_state = product.status.value
            ensure_transition(entity_type="product", from_state=from_state, to_state="approved")

            product.approval_history.append(
                models.ProductApproval(
                    approved_by=approver_id,
                    approved_at=self._clock(),
                    notes=notes,
                )
            )
            product.status = models.ProductStatusEnum.APPROVED
            product.updated_at = self._clock()
            db.flush()

            if product.requested_by_clinic_id:
                self._ledger.get_or_create_in(
                    db,
                    clinic_id=product.requested_by_clinic_id,
                    product_id=product.id,
                    minimum_stock_level=APPROVAL_MINIMUM_STOCK_LEVEL,
                    reference_id="product_approval",
                )

            apply_transition(
                db,
                clinic_id=product.requested_by_clinic_id,
                actor_user_id=approver_id,
                entity_type="product",
                entity_id=product.id,
                from_state=from_state,
                to_state="approved",
                after_obj={"notes": notes},
            )
            event = EventEnvelope(
                type=PRODUCT_APPROVED,
                entityType="product",
                entityId=product.id,
                action="approved",
                clinicId=product.requested_by_clinic_id,
                actor={"userId": approver_id},
                timestamp=self._clock().isoformat(),
                metadata={"external_code": product.external_code},
            )
            return product, [event]

        product, events = run_in_transaction(self._session_factory, work)
        publish_all(self._publisher, events)
        logger.info("Product approved", extra={"product_id": product.id, "approved_by": approver_id})
        if product.requested_by_clinic_id:
            self._notifier.notify(
                PRODUCT_APPROVED_TEMPLATE,
                clinic_id=product.requested_by_clinic_id,
                payload={"product_id": product.id, "external_code": product.external_code, "name": product.name},
            )
        return product

    def send_notices(self, notices: List[Notice]) -> int:
        sent = 0
        for template_key, clinic_id, payload in notices:
            if self._notifier.notify(template_key, clinic_id=clinic_id, payload=payload):
                sent += 1
        return sent
