"""Tests for notification sinks."""

import hashlib
import hmac
import json
import logging

import httpx
import pytest

from escrowdesk.config import Settings
from escrowdesk.services.notifications import (
    LoggingNotifier,
    Severity,
    WebhookNotifier,
    build_notification,
    notifier_from_settings,
    sign_notification_payload,
)


def test_sign_notification_payload() -> None:
    """HMAC-SHA256 over "<timestamp>.<body>"."""
    secret = "test-secret"
    timestamp = "2026-01-01T00:00:00+00:00"
    body = '{"hello":"world"}'
    sig = sign_notification_payload(secret, timestamp, body)
    expected = hmac.new(secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()
    assert sig == expected


def test_build_notification_structure() -> None:
    payload = build_notification(Severity.SUCCESS, "Job accepted!", "accept-3-abcd1234", "tx 0x12")
    assert payload["id"] == "accept-3-abcd1234"
    assert payload["severity"] == "success"
    assert payload["message"] == "Job accepted!"
    assert payload["description"] == "tx 0x12"
    assert payload["timestamp"].endswith("+00:00")


@pytest.mark.asyncio
async def test_webhook_notifier_posts_signed_json() -> None:
    captured = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(204)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = WebhookNotifier("https://hooks.example.com/escrow", secret="s3cret", client=client)

    await notifier.notify(Severity.LOADING, "Accepting job...", "accept-3-abcd1234")
    await notifier.aclose()

    (request,) = captured
    body = request.content.decode()
    payload = json.loads(body)
    assert payload["severity"] == "loading"
    assert payload["id"] == "accept-3-abcd1234"
    timestamp = request.headers["X-Escrowdesk-Timestamp"]
    assert timestamp == payload["timestamp"]
    assert request.headers["X-Escrowdesk-Signature"] == sign_notification_payload("s3cret", timestamp, body)


@pytest.mark.asyncio
async def test_webhook_notifier_unsigned_without_secret() -> None:
    captured = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    notifier = WebhookNotifier("https://hooks.example.com/escrow", client=client)
    await notifier.notify(Severity.INFO, "hello", "info-1")

    assert "X-Escrowdesk-Signature" not in captured[0].headers


@pytest.mark.asyncio
async def test_webhook_notifier_never_raises(caplog: pytest.LogCaptureFixture) -> None:
    """Delivery failures are logged; the operation being reported is unaffected."""

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    notifier = WebhookNotifier(
        "https://hooks.example.com/escrow",
        client=httpx.AsyncClient(transport=httpx.MockTransport(refuse)),
    )
    with caplog.at_level(logging.ERROR):
        await notifier.notify(Severity.ERROR, "Failed to accept job", "accept-3-abcd1234")
    assert "delivery failed" in caplog.text

    rejecting = WebhookNotifier(
        "https://hooks.example.com/escrow",
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="oops"))),
    )
    with caplog.at_level(logging.WARNING):
        await rejecting.notify(Severity.SUCCESS, "Job accepted!", "accept-3-abcd1234")
    assert "rejected with 500" in caplog.text


@pytest.mark.asyncio
async def test_logging_notifier(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO):
        await LoggingNotifier().notify(Severity.SUCCESS, "Escrow created!", "create-abcd1234", "tx 0x12")
    assert "[create-abcd1234] success: Escrow created! (tx 0x12)" in caplog.text


def test_notifier_from_settings() -> None:
    assert isinstance(notifier_from_settings(Settings(notify_webhook_url="")), LoggingNotifier)
    webhook = notifier_from_settings(Settings(notify_webhook_url="https://hooks.example.com/x"))
    assert isinstance(webhook, WebhookNotifier)
    assert webhook.url == "https://hooks.example.com/x"
