"""Notification delivery channels."""

from __future__ import annotations

import logging
from typing import Protocol

import requests

from changegate.core.config import settings
from changegate.models.domain import Notification

_logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivers one notification; raising marks the delivery as failed."""

    def deliver(self, notification: Notification) -> None:  # pragma: no cover - interface
        ...


class LoggingNotifier:
    """Writes notifications to the service log."""

    def deliver(self, notification: Notification) -> None:
        _logger.info(
            "Notify %s [%s] %s: %s",
            notification.user_id,
            notification.type.value,
            notification.title,
            notification.message,
        )


class WebhookNotifier:
    """Posts notifications as JSON to an external fan-out endpoint."""

    def __init__(self, url: str, *, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self._url = url
        self._timeout = timeout
        self._session = session or requests.Session()

    def deliver(self, notification: Notification) -> None:
        response = self._session.post(
            self._url,
            data=notification.model_dump_json(),
            headers={"Content-Type": "application/json"},
            timeout=self._timeout,
        )
        if response.status_code >= 400:
            raise RuntimeError(f"Notification webhook failed ({response.status_code}): {response.text}")

    def close(self) -> None:
        self._session.close()


def channels_from_settings() -> list[Notifier]:
    channels: list[Notifier] = [LoggingNotifier()]
    if settings.notification_webhook_url:
        channels.append(WebhookNotifier(settings.notification_webhook_url))
    return channels
