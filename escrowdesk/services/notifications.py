"""User notification sinks.

Each lifecycle operation reports pending, success and failure under one
correlation id, so a sink can update a single notification in place instead of
stacking three. Sinks never raise: a lost notification must not fail the
operation it describes.
"""

import enum
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime

import httpx

from escrowdesk.config import Settings

logger = logging.getLogger(__name__)


class Severity(enum.Enum):
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


_LOG_LEVELS = {
    Severity.LOADING: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.INFO: logging.INFO,
    Severity.ERROR: logging.WARNING,
}


class Notifier(ABC):
    @abstractmethod
    async def notify(
        self,
        severity: Severity,
        message: str,
        correlation_id: str,
        description: str | None = None,
    ) -> None: ...

    async def aclose(self) -> None:
        pass


class LoggingNotifier(Notifier):
    async def notify(
        self,
        severity: Severity,
        message: str,
        correlation_id: str,
        description: str | None = None,
    ) -> None:
        logger.log(
            _LOG_LEVELS[severity],
            "[%s] %s: %s%s",
            correlation_id,
            severity.value,
            message,
            f" ({description})" if description else "",
        )


def sign_notification_payload(secret: str, timestamp: str, body: str) -> str:
    """Generate HMAC-SHA256 signature for a notification payload."""
    message = f"{timestamp}.{body}"
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def build_notification(
    severity: Severity,
    message: str,
    correlation_id: str,
    description: str | None = None,
) -> dict:
    return {
        "id": correlation_id,
        "severity": severity.value,
        "message": message,
        "description": description,
        "timestamp": datetime.now(UTC).isoformat(),
    }


class WebhookNotifier(Notifier):
    """POSTs each notification as JSON. Signed when a secret is configured."""

    def __init__(
        self,
        url: str,
        secret: str = "",
        timeout: float = 10,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self._secret = secret
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def notify(
        self,
        severity: Severity,
        message: str,
        correlation_id: str,
        description: str | None = None,
    ) -> None:
        payload = build_notification(severity, message, correlation_id, description)
        body = json.dumps(payload, separators=(",", ":"))
        headers = {"Content-Type": "application/json"}
        if self._secret:
            timestamp = payload["timestamp"]
            headers["X-Escrowdesk-Timestamp"] = timestamp
            headers["X-Escrowdesk-Signature"] = sign_notification_payload(self._secret, timestamp, body)

        try:
            resp = await self._client.post(self.url, content=body, headers=headers)
        except httpx.RequestError as e:
            logger.error("Notification %s delivery failed: %s", correlation_id, e)
            return

        if resp.status_code >= 400:
            logger.warning(
                "Notification %s rejected with %d: %s",
                correlation_id, resp.status_code, resp.text[:500],
            )

    async def aclose(self) -> None:
        await self._client.aclose()


def notifier_from_settings(settings: Settings) -> Notifier:
    if settings.notify_webhook_url:
        return WebhookNotifier(
            settings.notify_webhook_url,
            secret=settings.notify_webhook_secret,
            timeout=settings.notify_timeout_seconds,
        )
    return LoggingNotifier()
