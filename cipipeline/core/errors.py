"""Error taxonomy and adapter error handling for pipeline execution."""

import time
import logging
import subprocess
from typing import Dict, Any, Optional, List
from enum import Enum
from dataclasses import dataclass
from pathlib import Path
import json


class ErrorCategory(Enum):
    """Categories of pipeline errors."""
    CONFIGURATION = "configuration"
    GRAPH = "graph"
    ARTIFACT = "artifact"
    ADAPTER = "adapter"
    TIMEOUT = "timeout"
    NETWORK = "network"
    TOOL = "tool"
    GATE = "gate"
    STATE = "state"
    NOTIFICATION = "notification"


@dataclass
class ErrorContext:
    """Context information for an adapter error."""
    error_id: str
    timestamp: float
    run_id: str
    stage_id: str
    adapter_name: Optional[str]
    error_message: str
    exception_type: str
    stack_trace: str
    category: ErrorCategory
    metadata: Dict[str, Any]


class PipelineError(Exception):
    """Base class for pipeline-specific errors."""

    def __init__(self, message: str, category: ErrorCategory,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.category = category
        self.context = context or {}
        self.timestamp = time.time()


class ConfigurationError(PipelineError):
    """Configuration-related errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.CONFIGURATION, context)


class GraphError(PipelineError):
    """Stage graph construction errors. Fatal at definition load."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.GRAPH, context)


class DuplicateStageError(GraphError):
    """A stage id was registered twice."""

    def __init__(self, stage_id: str):
        super().__init__(f"Stage already registered: {stage_id}", {"stage_id": stage_id})
        self.stage_id = stage_id


class UnknownDependencyError(GraphError):
    """A stage refers to a stage that is not registered (or not upstream)."""

    def __init__(self, stage_id: str, dependency: str, message: Optional[str] = None):
        super().__init__(
            message or f"Stage {stage_id} depends on unknown stage: {dependency}",
            {"stage_id": stage_id, "dependency": dependency}
        )
        self.stage_id = stage_id
        self.dependency = dependency


class CycleDetectedError(GraphError):
    """The stage graph is not acyclic."""

    def __init__(self, stages: List[str]):
        super().__init__(
            f"Circular dependency detected involving stages: {', '.join(stages)}",
            {"stages": stages}
        )
        self.stages = stages


class ArtifactError(PipelineError):
    """Artifact store misuse."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.ARTIFACT, context)


class DuplicateArtifactError(ArtifactError):
    """An artifact key was written twice."""

    def __init__(self, stage_id: str, name: str):
        super().__init__(f"Artifact already recorded: {stage_id}.{name}",
                         {"stage_id": stage_id, "name": name})
        self.stage_id = stage_id
        self.name = name


class ArtifactNotFoundError(ArtifactError):
    """An artifact key is absent from the store."""

    def __init__(self, stage_id: str, name: str):
        super().__init__(f"Artifact not found: {stage_id}.{name}",
                         {"stage_id": stage_id, "name": name})
        self.stage_id = stage_id
        self.name = name


class AdapterError(PipelineError):
    """External tool or service failure raised from inside an adapter."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.ADAPTER,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message, category, context)


class AdapterTimeoutError(AdapterError):
    """An adapter invocation exceeded its deadline."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.TIMEOUT, context)


class GateFailure(PipelineError):
    """A stage result violated its gate policy.

    This is an expected business outcome, not a system error. The executor
    never raises it; it exists for callers that want an exception, such as
    the ``check-report`` command.
    """

    def __init__(self, policy_name: str, reasons: List[str]):
        super().__init__(
            f"Gate '{policy_name}' failed: {'; '.join(reasons)}",
            ErrorCategory.GATE,
            {"policy": policy_name, "reasons": reasons}
        )
        self.policy_name = policy_name
        self.reasons = reasons


class StageStateError(PipelineError):
    """A stage result was written more than once."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.STATE, context)


class NotificationError(PipelineError):
    """Notification delivery failure. Logged, never escalated."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCategory.NOTIFICATION, context)


class ErrorHandler:
    """Classifies and records adapter errors.

    Adapter failures are never retried here; retries, if any, belong to the
    adapter itself.
    """

    def __init__(self, error_log_path: Optional[str] = None):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.error_log_path = Path(error_log_path) if error_log_path else None
        self.error_history: List[ErrorContext] = []

        if self.error_log_path:
            self.error_log_path.parent.mkdir(parents=True, exist_ok=True)

    def classify_error(self, exception: BaseException, context: Dict[str, Any]) -> ErrorContext:
        """Classify an error and create error context."""
        import traceback
        import uuid

        category = self._categorize_error(exception)

        error_context = ErrorContext(
            error_id=str(uuid.uuid4()),
            timestamp=time.time(),
            run_id=context.get('run_id', 'unknown'),
            stage_id=context.get('stage_id', 'unknown'),
            adapter_name=context.get('adapter_name'),
            error_message=str(exception),
            exception_type=type(exception).__name__,
            stack_trace="".join(traceback.format_exception(
                type(exception), exception, exception.__traceback__)),
            category=category,
            metadata=context.copy()
        )

        self._log_error(error_context)
        self.error_history.append(error_context)

        return error_context

    def _categorize_error(self, exception: BaseException) -> ErrorCategory:
        """Categorize an error based on its type and message."""
        if isinstance(exception, PipelineError):
            return exception.category

        if isinstance(exception, (subprocess.TimeoutExpired, TimeoutError)):
            return ErrorCategory.TIMEOUT

        if isinstance(exception, FileNotFoundError):
            return ErrorCategory.TOOL

        if isinstance(exception, ConnectionError):
            return ErrorCategory.NETWORK

        error_message = str(exception).lower()
        if any(keyword in error_message for keyword in ['connection', 'network', 'http', 'dns']):
            return ErrorCategory.NETWORK
        if 'timeout' in error_message or 'timed out' in error_message:
            return ErrorCategory.TIMEOUT

        return ErrorCategory.ADAPTER

    def _log_error(self, error_context: ErrorContext) -> None:
        """Log error to file and logger."""
        log_entry = {
            'error_id': error_context.error_id,
            'timestamp': error_context.timestamp,
            'run_id': error_context.run_id,
            'stage_id': error_context.stage_id,
            'adapter_name': error_context.adapter_name,
            'error_message': error_context.error_message,
            'exception_type': error_context.exception_type,
            'category': error_context.category.value,
        }

        self.logger.error(
            f"Stage {error_context.stage_id} adapter error [{error_context.error_id}]: "
            f"{error_context.error_message}"
        )

        if self.error_log_path:
            try:
                with open(self.error_log_path, 'a') as f:
                    f.write(json.dumps(log_entry) + '\n')
            except OSError as e:
                self.logger.error(f"Failed to write error log: {str(e)}")

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics from history."""
        if not self.error_history:
            return {"total_errors": 0}

        stats = {
            "total_errors": len(self.error_history),
            "by_category": {},
            "by_stage": {},
        }

        for error in self.error_history:
            category = error.category.value
            stats["by_category"][category] = stats["by_category"].get(category, 0) + 1

            stage = error.stage_id
            stats["by_stage"][stage] = stats["by_stage"].get(stage, 0) + 1

        return stats

    def clear_error_history(self) -> None:
        """Clear the error history."""
        self.error_history.clear()
        self.logger.info("Error history cleared")
