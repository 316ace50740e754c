"""Notification fan-out for lifecycle events."""

from .channels import LoggingNotifier, Notifier, WebhookNotifier, channels_from_settings
from .dispatcher import NotificationDispatcher

__all__ = [
    "LoggingNotifier",
    "Notifier",
    "WebhookNotifier",
    "channels_from_settings",
    "NotificationDispatcher",
]
