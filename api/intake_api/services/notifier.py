from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

import httpx

from intake_api.core.config import get_settings

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when the confirmation could not be handed to the dispatcher."""


class ConfirmationNotifier:
    def __init__(
        self,
        webhook_url: str | None,
        *,
        api_key: str | None = None,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def send(self, address: str, template_ref: str, data: dict[str, Any]) -> None:
        if not self.webhook_url:
            logger.info("notification dispatcher not configured; skipped template=%s to=%s", template_ref, address)
            return

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {"to": address, "template": template_ref, "data": data}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(self.webhook_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise NotificationError(f"notification dispatch failed: {exc}") from exc

        if response.status_code >= 300:
            raise NotificationError(f"notification dispatcher returned status={response.status_code}")
        logger.info("notification dispatched template=%s to=%s", template_ref, address)


@lru_cache
def get_notifier() -> ConfirmationNotifier:
    settings = get_settings()
    return ConfirmationNotifier(
        settings.notification_webhook_url,
        api_key=settings.notification_api_key,
        timeout_seconds=settings.notification_timeout_seconds,
    )
