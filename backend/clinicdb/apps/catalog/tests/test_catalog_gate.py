from __future__ import annotations

import pytest

from clinicdb.apps.audit import models as audit_models
from clinicdb.apps.catalog import models as catalog_models
from clinicdb.apps.catalog import schemas as catalog_schemas
from clinicdb.apps.catalog.services import APPROVAL_MINIMUM_STOCK_LEVEL, validate_product_data
from clinicdb.apps.events.broker import PRODUCT_APPROVED, PRODUCT_PROVISIONED
from clinicdb.apps.notifications.service import PRODUCT_APPROVED_TEMPLATE, PRODUCT_PENDING_TEMPLATE
from clinicdb.errors import (
    AlreadyApprovedError,
    DuplicateError,
    NotFoundError,
    ProductNotApprovedError,
    ValidationError,
)


def test_validate_product_data_itemizes_every_field():
    with pytest.raises(ValidationError) as excinfo:
        validate_product_data(
            {
                "name": "x" * 101,
                "description": "   ",
                "external_code": "bad code",
                "category": "",
                "unit_type": "litres",
            }
        )

    fields = [item["field"] for item in excinfo.value.detail]
    assert fields == ["name", "description", "external_code", "category", "unit_type"]


def test_validate_product_data_skips_absent_fields():
    validate_product_data({"name": "Hyaluronic acid"})
    validate_product_data({})


def test_create_product_normalizes_code_and_rejects_duplicates(core):
    product = core.catalog.create_product(
        catalog_schemas.ProductCreate(
            name="Hyaluronic acid 1ml",
            external_code=" ha-1ml ",
            category="Fillers",
            unit_type=catalog_models.UnitTypeEnum.ML,
            status=catalog_models.ProductStatusEnum.APPROVED,
        ),
        actor_user_id="admin-1",
    )

    assert product.external_code == "HA-1ML"
    assert product.is_approved
    assert [entry.notes for entry in product.approval_history] == ["Created as approved"]
    assert core.catalog.get_by_code("ha-1ml").id == product.id

    with pytest.raises(DuplicateError):
        core.catalog.create_product(
            catalog_schemas.ProductCreate(name="Other", external_code="HA-1ML", category="Fillers"),
        )


def test_create_pending_product_notifies_requesting_clinic(core, clinic, provider):
    core.catalog.create_product(
        catalog_schemas.ProductCreate(
            name="New filler",
            external_code="NF-1",
            category="Fillers",
            requested_by_clinic_id=clinic.id,
        ),
    )

    assert provider.templates() == [PRODUCT_PENDING_TEMPLATE]
    assert provider.sent[0]["clinic_id"] == clinic.id


def test_update_product_applies_partial_changes(core, product):
    updated = core.catalog.update_product(product.id, catalog_schemas.ProductUpdate(name="Renamed"))

    assert updated.name == "Renamed"
    assert updated.category == "Toxins"

    with pytest.raises(ValidationError):
        core.catalog.update_product(product.id, catalog_schemas.ProductUpdate(name=" "))
    with pytest.raises(NotFoundError):
        core.catalog.update_product("missing", catalog_schemas.ProductUpdate(name="Renamed"))


def test_resolve_returns_approved_product_by_id_or_code(core, clinic, product):
    by_id = core.catalog.resolve_or_provision(clinic.id, product.id)
    by_code = core.catalog.resolve_or_provision(clinic.id, "btx-100")

    assert by_id.product.id == product.id
    assert by_code.product.id == product.id
    assert by_id.provisioned is False and by_id.warning is None


def test_resolve_unknown_reference_provisions_pending_product(core, clinic, published, provider):
    resolved = core.catalog.resolve_or_provision(clinic.id, "nx-77")

    assert resolved.provisioned is True
    assert resolved.product.status == catalog_models.ProductStatusEnum.PENDING
    assert resolved.product.external_code == "NX-77"
    assert resolved.product.requested_by_clinic_id == clinic.id
    assert "NX-77" in resolved.warning
    assert [event.type for event in published] == [PRODUCT_PROVISIONED]
    assert provider.templates() == [PRODUCT_PENDING_TEMPLATE]

    with pytest.raises(ProductNotApprovedError):
        core.catalog.resolve_or_provision(clinic.id, "NX-77")


def test_approve_opens_ledger_row_for_requesting_clinic(core, clinic, make_product, published, provider, session_factory):
    pending = make_product(
        "PEND-1",
        status=catalog_models.ProductStatusEnum.PENDING,
        requested_by_clinic_id=clinic.id,
    )

    approved = core.catalog.approve(pending.id, "admin-1", notes="Checked with supplier")

    assert approved.is_approved
    assert [(entry.approved_by, entry.notes) for entry in approved.approval_history] == [
        ("admin-1", "Checked with supplier")
    ]
    item = core.ledger.get_item(clinic.id, pending.id)
    assert item.quantity_in_stock == 0
    assert item.minimum_stock_level == APPROVAL_MINIMUM_STOCK_LEVEL
    assert published[-1].type == PRODUCT_APPROVED
    assert provider.templates() == [PRODUCT_APPROVED_TEMPLATE]

    with session_factory() as db:
        transitions = (
            db.query(audit_models.AuditEvent)
            .filter(audit_models.AuditEvent.entity_id == pending.id)
            .filter(audit_models.AuditEvent.action == "transition")
            .all()
        )
    assert [row.after["status"] for row in transitions] == ["approved"]

    with pytest.raises(AlreadyApprovedError):
        core.catalog.approve(pending.id, "admin-2")


def test_approve_unknown_product(core):
    with pytest.raises(NotFoundError):
        core.catalog.approve("missing", "admin-1")


def test_list_filters_by_status(core, make_product):
    make_product("A-1")
    make_product("P-1", status=catalog_models.ProductStatusEnum.PENDING)

    pending = core.catalog.list(catalog_models.ProductStatusEnum.PENDING)

    assert [product.external_code for product in pending] == ["P-1"]
    assert len(core.catalog.list()) == 2
