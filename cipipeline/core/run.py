"""Pipeline run record: the mutable aggregate of one execution."""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import StageStateError
from .interfaces import PipelineStatus, StageReason, StageResult, StageStatus


@dataclass
class PipelineRun:
    """One execution instance of a stage graph."""
    run_id: str
    pipeline_name: str
    stage_order: List[str]
    status: PipelineStatus = PipelineStatus.PENDING
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    cancelled: bool = False
    results: Dict[str, StageResult] = field(default_factory=dict)
    running: Dict[str, float] = field(default_factory=dict)
    artifacts: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self._lock = threading.Lock()

    def start(self) -> None:
        self.status = PipelineStatus.RUNNING
        self.started_at = time.time()

    def mark_running(self, stage_id: str) -> None:
        with self._lock:
            if stage_id in self.results:
                raise StageStateError(f"Stage {stage_id} already finished; cannot start it again",
                                      {"stage_id": stage_id})
            self.running[stage_id] = time.time()

    def record(self, stage_id: str, result: StageResult) -> StageResult:
        """Write a stage's terminal result. At most once per stage per run."""
        if not result.is_terminal:
            raise StageStateError(f"Stage {stage_id} result must be terminal, got {result.status.value}",
                                  {"stage_id": stage_id})
        with self._lock:
            if stage_id in self.results:
                raise StageStateError(f"Result already recorded for stage {stage_id}",
                                      {"stage_id": stage_id})
            self.running.pop(stage_id, None)
            self.results[stage_id] = result
        return result

    def stage_status(self, stage_id: str) -> StageStatus:
        if stage_id in self.results:
            return self.results[stage_id].status
        if stage_id in self.running:
            return StageStatus.RUNNING
        return StageStatus.PENDING

    def result(self, stage_id: str) -> Optional[StageResult]:
        return self.results.get(stage_id)

    def unfinished(self) -> List[str]:
        return [s for s in self.stage_order if s not in self.results]

    @property
    def is_finished(self) -> bool:
        return self.status in (PipelineStatus.SUCCEEDED, PipelineStatus.FAILED,
                               PipelineStatus.CANCELLED)

    def compute_status(self) -> PipelineStatus:
        """Cancelled, Failed on any blocking failure, otherwise Succeeded."""
        if self.cancelled:
            return PipelineStatus.CANCELLED
        for result in self.results.values():
            if result.status is StageStatus.FAILURE and result.blocking:
                return PipelineStatus.FAILED
            if result.status is StageStatus.SKIPPED and result.reason is StageReason.CANCELLED:
                return PipelineStatus.CANCELLED
        return PipelineStatus.SUCCEEDED

    def finish(self) -> PipelineStatus:
        self.status = self.compute_status()
        self.finished_at = time.time()
        return self.status

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def counts(self) -> Dict[str, int]:
        """Number of stages per status."""
        counts = {status.value: 0 for status in StageStatus}
        for stage_id in self.stage_order:
            counts[self.stage_status(stage_id).value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline_name": self.pipeline_name,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "cancelled": self.cancelled,
            "stage_order": list(self.stage_order),
            "stages": {stage_id: result.to_dict() for stage_id, result in self.results.items()},
            "artifacts": self.artifacts,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineRun":
        return cls(
            run_id=data["run_id"],
            pipeline_name=data.get("pipeline_name", ""),
            stage_order=list(data.get("stage_order", [])),
            status=PipelineStatus(data.get("status", PipelineStatus.PENDING.value)),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            cancelled=data.get("cancelled", False),
            results={s: StageResult.from_dict(r) for s, r in data.get("stages", {}).items()},
            artifacts=data.get("artifacts", {}),
            metadata=data.get("metadata", {}),
        )
