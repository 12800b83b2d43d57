"""Pipeline run notifications."""

from .channels import (
    Notification,
    NotificationChannel,
    SlackChannel,
    WebhookChannel,
    LogChannel,
    create_channel,
)
from .notifier import Notifier

__all__ = [
    "Notification",
    "NotificationChannel",
    "SlackChannel",
    "WebhookChannel",
    "LogChannel",
    "create_channel",
    "Notifier",
]
