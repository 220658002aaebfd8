from __future__ import annotations

import logging
from typing import Iterable, Optional

from . import providers

logger = logging.getLogger(__name__)

LOW_STOCK_TEMPLATE = "low_stock_alert"
EXPIRATION_TEMPLATE = "expiration_alert"
PRODUCT_PENDING_TEMPLATE = "product_pending_review"
PRODUCT_APPROVED_TEMPLATE = "product_approved"


class NotificationSink:
    """
    Fire-and-forget delivery of alert findings and catalog notices.

    Delivery failures are logged and swallowed; the operation that produced
    the notification has already committed by the time it is sent.
    """

    def __init__(self, provider: Optional[providers.NotificationProvider] = None) -> None:
        if provider is None:
            provider, _configured = providers.get_notification_provider()
        self.provider = provider

    def notify(
        self,
        template_key: str,
        *,
        clinic_id: Optional[str],
        payload: dict,
        correlation_id: Optional[str] = None,
    ) -> bool:
        try:
            self.provider.send(
                template_key=template_key,
                clinic_id=clinic_id,
                payload=payload,
                correlation_id=correlation_id,
            )
            return True
        except Exception:
            logger.warning(
                "Failed to dispatch notification",
                extra={"template_key": template_key, "clinic_id": clinic_id, "correlation_id": correlation_id},
            )
            return False

    def notify_many(self, template_key: str, *, clinic_id: Optional[str], payloads: Iterable[dict]) -> int:
        sent = 0
        for payload in payloads:
            if self.notify(template_key, clinic_id=clinic_id, payload=payload):
                sent += 1
        return sent
