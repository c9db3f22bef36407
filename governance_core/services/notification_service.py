"""Outbound governance notifications over a webhook.

Delivery retries with exponential backoff and never raises: an exhausted
notification is logged and the governance outcome stands.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from governance_core.core.clock import utcnow
from governance_core.core.config import Settings

logger = logging.getLogger("governance_core")


class NotificationService:
    """Posts governance events to the configured webhook."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.enabled = settings.ENABLE_NOTIFICATIONS
        self.url = settings.NOTIFICATION_WEBHOOK_URL
        self.max_attempts = max(1, settings.NOTIFICATION_MAX_ATTEMPTS)
        self.backoff = settings.NOTIFICATION_BACKOFF_SECONDS
        self.timeout = settings.NOTIFICATION_TIMEOUT_SECONDS
        self._transport = transport
        self._sleep = sleep

    def deliver(self, event: str, payload: Dict[str, Any]) -> bool:
        """Send one event, retrying transient failures. Returns whether it landed."""
        if not self.url:
            logger.debug("No notification webhook configured, dropping %s", event)
            return False

        body = {"event": event, "payload": payload, "sent_at": utcnow().isoformat()}
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                    resp = client.post(self.url, json=body)
                    resp.raise_for_status()
                return True
            except httpx.HTTPError as e:
                last_error = e
                logger.warning("Notification %s attempt %s/%s failed: %s", event, attempt, self.max_attempts, e)
                if attempt < self.max_attempts:
                    self._sleep(self.backoff * (2 ** (attempt - 1)))

        logger.error("Notification %s dropped after %s attempts: %s", event, self.max_attempts, last_error)
        return False

    def dispatch(self, event: str, payload: Dict[str, Any]) -> None:
        """Queue an event for background delivery when notifications are on."""
        if not self.enabled:
            return
        try:
            from governance_core.tasks.celery_app import deliver_notification
            deliver_notification.delay(event, payload)
        except Exception as e:
            logger.warning("Could not queue notification %s: %s", event, e)
