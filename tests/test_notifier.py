"""Tests for run notifications and delivery channels."""

import threading
from datetime import datetime
from unittest.mock import Mock, patch

import pytest
import requests

from cipipeline.core.interfaces import StageReason, StageResult
from cipipeline.core.run import PipelineRun
from cipipeline.notifications import (
    LogChannel, Notification, NotificationChannel, Notifier, SlackChannel, WebhookChannel,
    create_channel
)


def finished_run(run_id="run-1", failed=False):
    run = PipelineRun(run_id=run_id, pipeline_name="delivery", stage_order=["build", "deploy"])
    run.start()
    if failed:
        run.record("build", StageResult.failure(StageReason.GATE_FAILURE, "1 CRITICAL"))
        run.record("deploy", StageResult.skipped(StageReason.UPSTREAM_FAILURE))
    else:
        run.record("build", StageResult.success())
        run.record("deploy", StageResult.success())
    run.artifacts = {"build.image": {"value": "sha256:abc"}}
    run.finish()
    return run


class RecordingChannel(NotificationChannel):
    """Channel that keeps what it was sent."""

    def __init__(self, name="recording", result=True, error=None):
        super().__init__(name, {})
        self.result = result
        self.error = error
        self.sent = []

    def send(self, notification):
        self.sent.append(notification)
        if self.error:
            raise self.error
        return self.result

    def test_connection(self):
        return self.result


class TestNotifier:
    """Test notifier delivery semantics."""

    def setup_method(self):
        """Set up test fixtures."""
        self.channel = RecordingChannel()
        self.notifier = Notifier([self.channel])

    def test_build_notification(self):
        """Test summarising a finished run."""
        notification = self.notifier.build_notification(finished_run(failed=True))

        assert notification.status == "failed"
        assert notification.title == "Pipeline delivery failed"
        assert notification.artifact_count == 1
        assert [s["stage_id"] for s in notification.stages] == ["build", "deploy"]
        assert notification.stages[0]["reason"] == "gate-failure"
        assert notification.stages[1]["status"] == "skipped"
        assert not notification.succeeded

    def test_notify_once_per_run(self):
        """Test duplicate notify calls for the same run are ignored."""
        run = finished_run()

        assert self.notifier.notify(run) == {"recording": True}
        assert self.notifier.notify(run) == {}

        assert len(self.channel.sent) == 1
        assert self.notifier.has_notified("run-1")

    def test_notify_once_under_concurrency(self):
        """Test concurrent notify calls deliver a single notification."""
        run = finished_run()
        threads = [threading.Thread(target=self.notifier.notify, args=(run,)) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(self.channel.sent) == 1

    def test_distinct_runs_notified(self):
        """Test each run id gets its own notification."""
        self.notifier.notify(finished_run("run-1"))
        self.notifier.notify(finished_run("run-2"))

        assert [n.run_id for n in self.channel.sent] == ["run-1", "run-2"]
        assert len(self.notifier.delivery_history) == 2

    def test_channel_failures_never_raise(self):
        """Test failing channels are reported, not raised."""
        broken = RecordingChannel("broken", error=RuntimeError("boom"))
        refused = RecordingChannel("refused", result=False)
        notifier = Notifier([broken, refused, self.channel])

        results = notifier.notify(finished_run())

        assert results == {"broken": False, "refused": False, "recording": True}

    def test_default_log_channel(self):
        """Test the logger is used when no channel is configured."""
        notifier = Notifier()

        assert len(notifier.channels) == 1
        assert isinstance(notifier.channels[0], LogChannel)
        assert notifier.notify(finished_run()) == {"log": True}

    def test_exclude_stages(self):
        """Test per-stage lines can be turned off."""
        notifier = Notifier([self.channel], include_stages=False)

        assert notifier.build_notification(finished_run()).stages == []

    def test_test_channels(self):
        """Test connection checks across channels."""
        notifier = Notifier([self.channel, RecordingChannel("down", result=False)])

        assert notifier.test_channels() == {"recording": True, "down": False}


class TestSlackChannel:
    """Test Slack webhook delivery."""

    def setup_method(self):
        """Set up test fixtures."""
        self.channel = SlackChannel("slack", {
            "webhook_url": "https://hooks.slack.com/services/T/B/X",
            "channel": "#deployments",
        })
        self.notification = Notifier([self.channel]).build_notification(finished_run(failed=True))

    @patch('cipipeline.notifications.channels.requests.post')
    def test_send_success(self, mock_post):
        """Test a successful Slack delivery."""
        mock_post.return_value = Mock(status_code=200)

        assert self.channel.send(self.notification)

        args, kwargs = mock_post.call_args
        assert args[0] == "https://hooks.slack.com/services/T/B/X"
        payload = kwargs["json"]
        assert payload["channel"] == "#deployments"
        assert payload["attachments"][0]["color"] == "danger"
        assert "`deploy` skipped (upstream-failure)" in payload["attachments"][0]["text"]
        assert kwargs["timeout"] == 10

    @patch('cipipeline.notifications.channels.requests.post')
    def test_send_http_error(self, mock_post):
        """Test a non-200 response is a delivery failure."""
        mock_post.return_value = Mock(status_code=500)

        assert not self.channel.send(self.notification)

    @patch('cipipeline.notifications.channels.requests.post')
    def test_send_network_error(self, mock_post):
        """Test network errors are swallowed into False."""
        mock_post.side_effect = requests.ConnectionError("unreachable")

        assert not self.channel.send(self.notification)

    def test_missing_webhook(self):
        """Test an unconfigured channel does not deliver."""
        assert not SlackChannel("slack", {}).send(self.notification)

    def test_success_color(self):
        """Test succeeded runs are coloured good."""
        notification = Notifier([self.channel]).build_notification(finished_run())

        assert self.channel._create_slack_payload(notification)["attachments"][0]["color"] == "good"


class TestWebhookChannel:
    """Test generic webhook delivery."""

    @patch('cipipeline.notifications.channels.requests.post')
    def test_send(self, mock_post):
        """Test JSON payload and headers."""
        mock_post.return_value = Mock(status_code=202)
        channel = WebhookChannel("hook", {
            "webhook_url": "https://example.com/hook",
            "headers": {"Authorization": "Bearer x"},
        })
        notification = Notification(
            run_id="run-1", pipeline_name="delivery", status="succeeded",
            title="Pipeline delivery succeeded", message="ok", timestamp=datetime(2024, 1, 1),
        )

        assert channel.send(notification)

        kwargs = mock_post.call_args[1]
        assert kwargs["json"]["run_id"] == "run-1"
        assert kwargs["json"]["timestamp"] == "2024-01-01T00:00:00"
        assert kwargs["headers"] == {"Authorization": "Bearer x"}


class TestCreateChannel:
    """Test channel factory."""

    def test_known_types(self):
        """Test building channels by type name."""
        assert isinstance(create_channel("slack", "s", {"webhook_url": "x"}), SlackChannel)
        assert isinstance(create_channel("webhook", "w", {}), WebhookChannel)
        assert isinstance(create_channel("log", "l", {}), LogChannel)

    def test_unknown_type(self):
        """Test unknown channel types are rejected."""
        with pytest.raises(ValueError):
            create_channel("email", "e", {})

    def test_disabled_channel(self):
        """Test disabled channels do not deliver."""
        channel = create_channel("log", "quiet", {"enabled": False})
        notification = Notifier().build_notification(finished_run())

        assert not channel.send(notification)
