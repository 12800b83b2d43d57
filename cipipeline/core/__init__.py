"""Core pipeline orchestration components."""

from .executor import PipelineExecutor
from .graph import StageGraph
from .artifacts import ArtifactStore
from .gates import GateEvaluator, GatePolicy, GateOutcome
from .interfaces import (
    AdapterContext, ArtifactRef, Finding, PipelineSettings, PipelineStatus, Severity,
    Stage, StageAdapter, StageReason, StageResult, StageStatus
)
from .registry import AdapterRegistry, adapter_registry
from .run import PipelineRun
from .run_log import RunLog

__all__ = [
    "PipelineExecutor", "StageGraph", "ArtifactStore", "GateEvaluator", "GatePolicy",
    "GateOutcome", "AdapterContext", "ArtifactRef", "Finding", "PipelineSettings",
    "PipelineStatus", "Severity", "Stage", "StageAdapter", "StageReason", "StageResult",
    "StageStatus", "AdapterRegistry", "adapter_registry", "PipelineRun", "RunLog",
]
