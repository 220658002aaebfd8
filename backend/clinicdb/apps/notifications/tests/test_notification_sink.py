from __future__ import annotations

import pytest

from clinicdb.apps.notifications import providers
from clinicdb.apps.notifications.service import LOW_STOCK_TEMPLATE, NotificationSink


class FailingProvider(providers.NotificationProvider):
    def send(self, *, template_key, clinic_id, payload, correlation_id) -> None:
        raise RuntimeError("smtp down")


def test_provider_selection(monkeypatch):
    monkeypatch.setenv("NOTIFICATIONS_PROVIDER", "log")
    provider, configured = providers.get_notification_provider()
    assert isinstance(provider, providers.LoggingProvider) and configured

    monkeypatch.setenv("NOTIFICATIONS_PROVIDER", "none")
    provider, configured = providers.get_notification_provider()
    assert isinstance(provider, providers.NoopProvider) and not configured

    monkeypatch.setenv("NOTIFICATIONS_PROVIDER", "pigeon")
    with pytest.raises(ValueError):
        providers.get_notification_provider()


def test_notify_many_counts_deliveries(provider):
    sink = NotificationSink(provider)

    sent = sink.notify_many(LOW_STOCK_TEMPLATE, clinic_id="clinic-1", payloads=[{"a": 1}, {"a": 2}])

    assert sent == 2
    assert [item["payload"] for item in provider.sent] == [{"a": 1}, {"a": 2}]


def test_delivery_failures_are_swallowed():
    sink = NotificationSink(FailingProvider())

    assert sink.notify(LOW_STOCK_TEMPLATE, clinic_id="clinic-1", payload={}) is False
    assert sink.notify_many(LOW_STOCK_TEMPLATE, clinic_id="clinic-1", payloads=[{}, {}]) == 0
