"""
Notification channels for pipeline run status.

Supported channels:
- Slack incoming webhooks
- Generic JSON webhooks
- The process logger (default when nothing else is configured)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests


logger = logging.getLogger(__name__)


@dataclass
class Notification:
    """Terminal status of a pipeline run, ready for delivery."""

    run_id: str
    pipeline_name: str
    status: str
    title: str
    message: str
    timestamp: datetime
    duration: Optional[float] = None
    artifact_count: int = 0
    stages: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline_name": self.pipeline_name,
            "status": self.status,
            "title": self.title,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "duration": self.duration,
            "artifact_count": self.artifact_count,
            "stages": self.stages,
            "metadata": self.metadata,
        }


class NotificationChannel(ABC):
    """Abstract base class for notification channels."""

    def __init__(self, name: str, config: Dict[str, Any]):
        self.name = name
        self.config = config
        self.enabled = config.get('enabled', True)

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Deliver a notification. Returns False on delivery failure."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test if the channel is properly configured and reachable."""
        pass


class SlackChannel(NotificationChannel):
    """Slack channel using incoming webhooks."""

    STATUS_COLORS = {
        'succeeded': 'good',
        'failed': 'danger',
        'cancelled': 'warning',
    }

    STAGE_ICONS = {
        'success': ':white_check_mark:',
        'failure': ':x:',
        'skipped': ':fast_forward:',
    }

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)
        self.webhook_url = config.get('webhook_url')
        self.channel = config.get('channel')
        self.username = config.get('username', 'cipipeline')
        self.timeout = config.get('timeout', 10)

    def send(self, notification: Notification) -> bool:
        """Send notification to Slack."""
        if not self.enabled or not self.webhook_url:
            return False

        try:
            payload = self._create_slack_payload(notification)
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)

            if response.status_code == 200:
                logger.info(f"Slack notification sent for run {notification.run_id}")
                return True

            logger.error(f"Slack notification failed with status {response.status_code}")
            return False

        except requests.RequestException as e:
            logger.error(f"Failed to send Slack notification: {e}")
            return False

    def test_connection(self) -> bool:
        """Test Slack webhook."""
        if not self.webhook_url:
            return False

        try:
            response = requests.post(
                self.webhook_url,
                json={"text": "cipipeline - connection test", "username": self.username},
                timeout=self.timeout,
            )
            return response.status_code == 200
        except requests.RequestException as e:
            logger.error(f"Slack connection test failed: {e}")
            return False

    def _create_slack_payload(self, notification: Notification) -> Dict[str, Any]:
        """Create Slack message payload."""
        color = self.STATUS_COLORS.get(notification.status, 'warning')

        fields = [
            {"title": "Status", "value": notification.status.upper(), "short": True},
            {"title": "Run", "value": notification.run_id, "short": True},
        ]
        if notification.duration is not None:
            fields.append({"title": "Duration", "value": f"{notification.duration:.1f}s", "short": True})
        fields.append({"title": "Artifacts", "value": str(notification.artifact_count), "short": True})

        text = notification.message
        if notification.stages:
            lines = []
            for stage in notification.stages:
                icon = self.STAGE_ICONS.get(stage['status'], ':grey_question:')
                line = f"{icon} `{stage['stage_id']}` {stage['status']}"
                if stage.get('reason'):
                    line += f" ({stage['reason']})"
                lines.append(line)
            text = f"{text}\n" + "\n".join(lines)

        attachment = {
            "color": color,
            "title": notification.title,
            "text": text,
            "fields": fields,
            "footer": "cipipeline",
            "ts": int(notification.timestamp.timestamp()),
        }

        payload = {
            "username": self.username,
            "text": notification.title,
            "attachments": [attachment],
        }

        if self.channel:
            payload["channel"] = self.channel

        return payload


class WebhookChannel(NotificationChannel):
    """Generic webhook channel posting the notification as JSON."""

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)
        self.webhook_url = config.get('webhook_url')
        self.headers = config.get('headers', {})
        self.timeout = config.get('timeout', 30)

    def send(self, notification: Notification) -> bool:
        """Send notification via webhook."""
        if not self.enabled or not self.webhook_url:
            return False

        try:
            response = requests.post(
                self.webhook_url,
                json=notification.to_dict(),
                headers=self.headers,
                timeout=self.timeout,
            )

            if 200 <= response.status_code < 300:
                logger.info(f"Webhook notification sent to {self.webhook_url}")
                return True

            logger.error(f"Webhook notification failed with status {response.status_code}")
            return False

        except requests.RequestException as e:
            logger.error(f"Failed to send webhook notification: {e}")
            return False

    def test_connection(self) -> bool:
        """Test webhook endpoint."""
        if not self.webhook_url:
            return False

        try:
            response = requests.post(
                self.webhook_url,
                json={"test": True, "message": "Connection test"},
                headers=self.headers,
                timeout=self.timeout,
            )
            return 200 <= response.status_code < 300
        except requests.RequestException as e:
            logger.error(f"Webhook connection test failed: {e}")
            return False


class LogChannel(NotificationChannel):
    """Writes notifications to the logger."""

    def __init__(self, name: str = "log", config: Optional[Dict[str, Any]] = None):
        super().__init__(name, config or {})
        self.logger = logging.getLogger(self.config.get('logger', 'cipipeline.notifications'))

    def send(self, notification: Notification) -> bool:
        if not self.enabled:
            return False
        level = logging.INFO if notification.succeeded else logging.ERROR
        self.logger.log(level, f"{notification.title}: {notification.message}")
        for stage in notification.stages:
            reason = f" ({stage['reason']})" if stage.get('reason') else ""
            self.logger.log(level, f"  {stage['stage_id']}: {stage['status']}{reason}")
        return True

    def test_connection(self) -> bool:
        return True


CHANNEL_TYPES = {
    "slack": SlackChannel,
    "webhook": WebhookChannel,
    "log": LogChannel,
}


def create_channel(channel_type: str, name: str, config: Dict[str, Any]) -> NotificationChannel:
    """Instantiate a channel by type name."""
    channel_class = CHANNEL_TYPES.get(channel_type)
    if channel_class is None:
        raise ValueError(f"Unknown notification channel type: {channel_type}")
    return channel_class(name, config)
