"""
Unit tests for webhook notification delivery.
"""

import json

import httpx
import pytest

from governance_core.services.notification_service import NotificationService


@pytest.fixture
def webhook_settings(settings):
    return settings.model_copy(update={
        "NOTIFICATION_WEBHOOK_URL": "https://hooks.example.test/governance",
        "NOTIFICATION_MAX_ATTEMPTS": 3,
        "NOTIFICATION_BACKOFF_SECONDS": 1.0,
    })


def _service(settings, responses, calls, sleeps):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content))
        return httpx.Response(responses.pop(0))

    return NotificationService(settings, transport=httpx.MockTransport(handler), sleep=sleeps.append)


def test_delivers_on_first_try(webhook_settings):
    calls, sleeps = [], []
    service = _service(webhook_settings, [200], calls, sleeps)

    assert service.deliver("approval.created", {"id": 1})
    assert calls[0]["event"] == "approval.created"
    assert calls[0]["payload"] == {"id": 1}
    assert "sent_at" in calls[0]
    assert sleeps == []


def test_retries_with_exponential_backoff(webhook_settings):
    calls, sleeps = [], []
    service = _service(webhook_settings, [503, 502, 200], calls, sleeps)

    assert service.deliver("approval.escalated", {"id": 2})
    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]


def test_gives_up_without_raising(webhook_settings):
    calls, sleeps = [], []
    service = _service(webhook_settings, [500, 500, 500], calls, sleeps)

    assert service.deliver("approval.expired", {"id": 3}) is False
    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]


def test_transport_errors_are_retried(webhook_settings):
    attempts, sleeps = [], []

    def handler(request):
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(204)

    service = NotificationService(webhook_settings, transport=httpx.MockTransport(handler), sleep=sleeps.append)
    assert service.deliver("approval.approved", {"id": 4})
    assert sleeps == [1.0]


def test_no_webhook_configured(settings):
    service = NotificationService(settings, sleep=lambda s: None)
    assert service.deliver("approval.created", {}) is False


def test_dispatch_is_silent_when_disabled(settings):
    service = NotificationService(settings)
    assert service.dispatch("approval.created", {"id": 1}) is None
