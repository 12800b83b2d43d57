"""Exactly-once delivery of pipeline run status."""

import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional, Set

from ..core.run import PipelineRun
from .channels import LogChannel, Notification, NotificationChannel


logger = logging.getLogger(__name__)


class Notifier:
    """
    Delivers the terminal status of each pipeline run to its channels.

    Each run id is notified once; later calls for the same run are ignored.
    Channel failures are logged and reported in the return value, never
    raised, so notification can never fail a pipeline.
    """

    def __init__(self, channels: Optional[List[NotificationChannel]] = None,
                 include_stages: bool = True):
        self.channels = list(channels) if channels else [LogChannel()]
        self.include_stages = include_stages
        self._notified: Set[str] = set()
        self._lock = threading.Lock()
        self.delivery_history: List[Dict[str, object]] = []

    def add_channel(self, channel: NotificationChannel) -> None:
        self.channels.append(channel)
        logger.info(f"Added notification channel: {channel.name}")

    def has_notified(self, run_id: str) -> bool:
        return run_id in self._notified

    def build_notification(self, run: PipelineRun) -> Notification:
        """Summarise a finished run."""
        counts = run.counts()
        status = run.status.value
        summary = ", ".join(f"{count} {name}" for name, count in counts.items() if count)

        stages = []
        if self.include_stages:
            for stage_id in run.stage_order:
                result = run.result(stage_id)
                stages.append({
                    "stage_id": stage_id,
                    "status": result.status.value if result else run.stage_status(stage_id).value,
                    "reason": result.reason.value if result and result.reason else None,
                    "message": result.message if result else None,
                    "duration": result.duration if result else None,
                })

        return Notification(
            run_id=run.run_id,
            pipeline_name=run.pipeline_name,
            status=status,
            title=f"Pipeline {run.pipeline_name} {status}",
            message=f"Run {run.run_id}: {summary}" if summary else f"Run {run.run_id}",
            timestamp=datetime.now(),
            duration=run.duration,
            artifact_count=len(run.artifacts),
            stages=stages,
            metadata={"error": run.metadata["error"]} if "error" in run.metadata else {},
        )

    def notify(self, run: PipelineRun) -> Dict[str, bool]:
        """
        Deliver run status to every channel.

        Returns:
            Dict[str, bool]: Delivery success per channel name; empty if the
            run was already notified
        """
        with self._lock:
            if run.run_id in self._notified:
                logger.warning(f"Run {run.run_id} already notified; ignoring duplicate call")
                return {}
            self._notified.add(run.run_id)

        try:
            notification = self.build_notification(run)
        except Exception as e:
            logger.error(f"Failed to build notification for run {run.run_id}: {e}")
            return {}

        results = {}
        for channel in self.channels:
            try:
                results[channel.name] = bool(channel.send(notification))
            except Exception as e:
                logger.error(f"Error sending notification via {channel.name}: {e}")
                results[channel.name] = False

            if not results[channel.name]:
                logger.error(f"Failed to deliver notification for run {run.run_id} via {channel.name}")

        self.delivery_history.append({
            "run_id": run.run_id,
            "status": notification.status,
            "timestamp": notification.timestamp.isoformat(),
            "results": results,
        })
        return results

    def test_channels(self) -> Dict[str, bool]:
        """Test all configured channels."""
        results = {}
        for channel in self.channels:
            try:
                results[channel.name] = channel.test_connection()
            except Exception as e:
                logger.error(f"Error testing channel {channel.name}: {e}")
                results[channel.name] = False
        return results
