"""
Outbound reminder notification channels.

The reminder scheduler only knows the `Notifier` protocol. Delivery is best-effort:
a notifier reports failure by returning False, it never raises into the scheduler.
"""

from datetime import UTC, datetime
from typing import Protocol

import httpx
import structlog

from healthstream.config import NotifierConfig

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    async def notify(self, target_id: str, message: str) -> bool: ...


class LogNotifier:
    """Writes reminders to the structured log. Development default."""

    def __init__(self) -> None:
        self.logger = logger.bind(component="log_notifier")
        self.sent = 0

    async def notify(self, target_id: str, message: str) -> bool:
        self.sent += 1
        self.logger.info("reminder_notification", target_id=target_id, message=message)
        return True


class WebhookNotifier:
    """POSTs `{target_id, message, sent_at}` as JSON to a configured URL."""

    def __init__(self, url: str, timeout_seconds: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client
        self.logger = logger.bind(component="webhook_notifier")

    async def notify(self, target_id: str, message: str) -> bool:
        payload = {
            "target_id": target_id,
            "message": message,
            "sent_at": datetime.now(UTC).isoformat(),
        }
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, timeout=self.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            self.logger.warning("webhook_request_failed", target_id=target_id, error=str(e))
            return False

        if not response.is_success:
            self.logger.warning(
                "webhook_rejected", target_id=target_id, status_code=response.status_code
            )
            return False
        return True


def build_notifier(config: NotifierConfig) -> Notifier:
    """Webhook delivery when a URL is configured, log delivery otherwise."""
    if config.webhook_url:
        return WebhookNotifier(config.webhook_url, config.timeout_seconds)
    return LogNotifier()
