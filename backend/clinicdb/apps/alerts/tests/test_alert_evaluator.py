from __future__ import annotations

from datetime import date, datetime, timezone

from clinicdb.apps.alerts.services import days_until
from clinicdb.apps.clinics import models as clinic_models
from clinicdb.apps.notifications.service import EXPIRATION_TEMPLATE, LOW_STOCK_TEMPLATE
from conftest import NOW, days_from_today


def test_days_until_rounds_partial_days_up():
    noon = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)

    assert days_until(date(2025, 3, 11), noon) == 1
    assert days_until(date(2025, 3, 20), noon) == 10
    assert days_until(date(2025, 3, 10), noon) == 0
    assert days_until(date(2025, 3, 8), noon) == -2
    assert days_until(date(2025, 3, 11), datetime(2025, 3, 10, 0, 0)) == 1


def test_scan_reports_low_stock_and_expiring_lots(core, clinic, make_product):
    low = make_product("LOW-1")
    healthy = make_product("OK-1")
    core.ledger.add_stock(clinic.id, low.id, 2, days_from_today(200), "L-FAR", "inv")
    core.ledger.add_stock(clinic.id, healthy.id, 40, days_from_today(5), "H-SOON", "inv")
    core.ledger.add_stock(clinic.id, healthy.id, 10, days_from_today(-1), "H-OLD", "inv")
    core.ledger.update_minimum_level(clinic.id, low.id, 5)
    core.ledger.update_minimum_level(clinic.id, healthy.id, 5)

    result = core.alerts.scan(clinic.id, 30)

    assert result.scanned_at == NOW
    assert result.expiration_threshold_days == 30
    assert [(f.product_id, f.current_stock, f.minimum_level) for f in result.low_stock] == [(low.id, 2, 5)]
    assert result.low_stock[0].product_name == "Product LOW-1"
    assert [(f.lot_code, f.days_until_expiration) for f in result.expiring] == [("H-OLD", -1), ("H-SOON", 5)]
    assert result.notifications_sent == 0


def test_scan_defaults_to_clinic_threshold(core, clinic, product, session_factory):
    core.ledger.add_stock(clinic.id, product.id, 3, days_from_today(45), "L1", "inv")

    assert core.alerts.scan(clinic.id).expiring == []

    with session_factory() as db:
        db.get(clinic_models.Clinic, clinic.id).alert_threshold_days = 60
        db.commit()

    result = core.alerts.scan(clinic.id)
    assert result.expiration_threshold_days == 60
    assert [f.lot_code for f in result.expiring] == ["L1"]


def test_scan_is_stateless_and_read_only(core, clinic, product, provider):
    core.ledger.add_stock(clinic.id, product.id, 1, days_from_today(3), "L1", "inv")
    core.ledger.update_minimum_level(clinic.id, product.id, 2)

    first = core.alerts.scan_and_notify(clinic.id, 30)
    second = core.alerts.scan_and_notify(clinic.id, 30)

    assert first.notifications_sent == second.notifications_sent == 2
    assert provider.templates() == [LOW_STOCK_TEMPLATE, EXPIRATION_TEMPLATE] * 2
    assert provider.sent[1]["payload"]["lot_code"] == "L1"
    assert core.ledger.get_item(clinic.id, product.id).quantity_in_stock == 1


def test_scan_and_notify_respects_clinic_preferences(core, clinic, product, provider, session_factory):
    core.ledger.add_stock(clinic.id, product.id, 1, days_from_today(3), "L1", "inv")
    core.ledger.update_minimum_level(clinic.id, product.id, 2)
    with session_factory() as db:
        db.get(clinic_models.Clinic, clinic.id).low_stock_alerts = False
        db.commit()

    result = core.alerts.scan_and_notify(clinic.id, 30)

    assert len(result.low_stock) == 1
    assert result.notifications_sent == 1
    assert provider.templates() == [EXPIRATION_TEMPLATE]
