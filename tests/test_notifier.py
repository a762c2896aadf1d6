"""Tests for failure notification sinks."""

import json

import httpx
import pytest

from process_queue.notifier import (
    MAX_CONTENT_LENGTH,
    LoggingNotifier,
    WebhookNotifier,
    build_notifier,
    safe_notify,
    truncate_content,
)

from conftest import BrokenNotifier, RecordingNotifier

WEBHOOK_URL = "https://chat.example.com/api/webhooks/1/abc"


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_webhook_posts_content():
    """Test message is posted as {"content": ...}."""
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(204)

    notifier = WebhookNotifier(WEBHOOK_URL, client=_client(handler))
    notifier.notify("**Queue Processor Failed**")
    notifier.close()

    assert len(requests) == 1
    assert str(requests[0].url) == WEBHOOK_URL
    assert requests[0].method == "POST"
    assert json.loads(requests[0].content) == {"content": "**Queue Processor Failed**"}


def test_webhook_truncates_long_messages():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(204)

    notifier = WebhookNotifier(WEBHOOK_URL, client=_client(handler))
    notifier.notify("x" * 5000)

    content = bodies[0]["content"]
    assert len(content) == MAX_CONTENT_LENGTH
    assert content.endswith("...")


def test_webhook_error_status_raises():
    notifier = WebhookNotifier(WEBHOOK_URL, client=_client(lambda request: httpx.Response(500)))

    with pytest.raises(httpx.HTTPStatusError):
        notifier.notify("boom")


def test_safe_notify_swallows_webhook_errors():
    """Test a failing channel never propagates."""
    notifier = WebhookNotifier(WEBHOOK_URL, client=_client(lambda request: httpx.Response(500)))

    assert safe_notify(notifier, "boom") is False
    assert safe_notify(BrokenNotifier(), "boom") is False


def test_safe_notify_delivers():
    notifier = RecordingNotifier()

    assert safe_notify(notifier, "hello") is True
    assert notifier.messages == ["hello"]


def test_safe_notify_without_notifier():
    assert safe_notify(None, "hello") is False


def test_truncate_content_short_message_unchanged():
    assert truncate_content("short", 10) == "short"
    assert truncate_content("abcdefghijk", 10) == "abcdefg..."


def test_build_notifier():
    assert isinstance(build_notifier(None), LoggingNotifier)
    webhook = build_notifier(WEBHOOK_URL, timeout_s=2.0)
    assert isinstance(webhook, WebhookNotifier)
    webhook.close()


def test_logging_notifier_does_not_raise():
    LoggingNotifier().notify("logged only")


def test_webhook_close_closes_client():
    client = _client(lambda request: httpx.Response(204))
    notifier = WebhookNotifier(WEBHOOK_URL, client=client)

    notifier.close()

    assert client.is_closed
