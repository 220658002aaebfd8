from __future__ import annotations

import logging
import os
from typing import Tuple

logger = logging.getLogger(__name__)


class NotificationProvider:
    def send(
        self,
        *,
        template_key: str,
        clinic_id: str | None,
        payload: dict,
        correlation_id: str | None,
    ) -> None:
        raise NotImplementedError


class NoopProvider(NotificationProvider):
    def send(
        self,
        *,
        template_key: str,
        clinic_id: str | None,
        payload: dict,
        correlation_id: str | None,
    ) -> None:
        return None


class LoggingProvider(NotificationProvider):
    def send(
        self,
        *,
        template_key: str,
        clinic_id: str | None,
        payload: dict,
        correlation_id: str | None,
    ) -> None:
        logger.info(
            "Notification %s",
            template_key,
            extra={"clinic_id": clinic_id, "payload": payload, "correlation_id": correlation_id},
        )


def get_notification_provider() -> Tuple[NotificationProvider, bool]:
    provider_name = (os.getenv("NOTIFICATIONS_PROVIDER") or "").strip().lower()
    if not provider_name or provider_name in {"none", "noop", "disabled"}:
        return NoopProvider(), False
    if provider_name == "log":
        return LoggingProvider(), True
    raise ValueError(f"Unsupported notification provider: {provider_name}")
