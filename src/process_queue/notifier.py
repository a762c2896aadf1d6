"""Failure notification sinks.

Notifications are best-effort: ``safe_notify`` logs and swallows any error a
sink raises so a broken channel never aborts a dispatch run.
"""

from abc import ABC, abstractmethod
from typing import Optional

import httpx
import structlog

logger = structlog.get_logger()

# Discord-compatible webhooks reject longer message bodies
MAX_CONTENT_LENGTH = 2000


class Notifier(ABC):
    """Channel used to report processing failures to operators."""

    @abstractmethod
    def notify(self, message: str) -> None:
        pass

    def close(self) -> None:
        """Release any resources held by the channel."""


class LoggingNotifier(Notifier):
    """Writes notifications to the log only."""

    def notify(self, message: str) -> None:
        logger.warning("failure_notification", message=message)


class WebhookNotifier(Notifier):
    """Posts notifications as ``{"content": message}`` to a chat webhook."""

    def __init__(
        self,
        webhook_url: str,
        timeout_s: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.webhook_url = webhook_url
        self._client = client or httpx.Client(timeout=timeout_s)

    def notify(self, message: str) -> None:
        content = truncate_content(message, MAX_CONTENT_LENGTH)
        response = self._client.post(self.webhook_url, json={"content": content})
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


def truncate_content(content: str, max_length: int) -> str:
    if len(content) <= max_length:
        return content
    return content[: max_length - 3] + "..."


def safe_notify(notifier: Optional[Notifier], message: str) -> bool:
    """Send a notification, never raising.

    Returns:
        True if the notifier accepted the message
    """
    if notifier is None:
        return False

    try:
        notifier.notify(message)
        return True
    except Exception as e:
        logger.error("notification_failed", notifier=type(notifier).__name__, error=str(e))
        return False


def build_notifier(webhook_url: Optional[str], timeout_s: float = 10.0) -> Notifier:
    if webhook_url:
        return WebhookNotifier(webhook_url, timeout_s=timeout_s)
    return LoggingNotifier()
