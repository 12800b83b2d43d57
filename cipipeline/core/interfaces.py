"""Core data model and abstract base classes for pipeline stages."""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, FrozenSet, List, Optional, TYPE_CHECKING
from dataclasses import dataclass, field
from enum import Enum
import logging
import threading
import time

from .errors import ArtifactNotFoundError, ConfigurationError, UnknownDependencyError

if TYPE_CHECKING:
    from .gates import GatePolicy


class Severity(str, Enum):
    """Finding severity levels, ordered from least to most severe."""
    UNKNOWN = "UNKNOWN"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        """Parse a severity from any casing; unrecognised values are UNKNOWN."""
        if isinstance(value, Severity):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.UNKNOWN

    def __ge__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank

    def __gt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __le__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __lt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank


_SEVERITY_RANK = {
    Severity.UNKNOWN: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class StageStatus(Enum):
    """Stage execution status."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StageStatus.SUCCESS, StageStatus.FAILURE, StageStatus.SKIPPED)


class StageReason(Enum):
    """Why a stage failed or was skipped."""
    ADAPTER_ERROR = "adapter-error"
    TIMEOUT = "timeout"
    GATE_FAILURE = "gate-failure"
    UPSTREAM_FAILURE = "upstream-failure"
    CANCELLED = "cancelled"
    DISABLED = "disabled"


class PipelineStatus(Enum):
    """Pipeline execution status."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Finding:
    """A severity-tagged observation reported by a stage."""
    severity: Severity
    category: str
    title: str = ""
    count: int = 1
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.severity = Severity.parse(self.severity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.value,
            "category": self.category,
            "title": self.title,
            "count": self.count,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Finding":
        return cls(
            severity=Severity.parse(data.get("severity")),
            category=data.get("category", "unknown"),
            title=data.get("title", ""),
            count=data.get("count", 1),
            metadata=data.get("metadata", {}),
        )


@dataclass(frozen=True)
class ArtifactRef:
    """Opaque reference to something a stage produced (digest, path, URL)."""
    value: str
    producer: str
    name: str
    created_at: float = field(default_factory=time.time, compare=False)

    def __str__(self) -> str:
        return self.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "producer": self.producer,
            "name": self.name,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArtifactRef":
        return cls(
            value=data["value"],
            producer=data["producer"],
            name=data["name"],
            created_at=data.get("created_at", 0.0),
        )


@dataclass
class StageResult:
    """Result of one stage in one run. Written once by the executor."""
    status: StageStatus
    findings: List[Finding] = field(default_factory=list)
    artifacts: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[StageReason] = None
    message: Optional[str] = None
    blocking: bool = True
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, artifacts: Optional[Dict[str, Any]] = None,
                findings: Optional[List[Finding]] = None,
                message: Optional[str] = None, **metadata) -> "StageResult":
        return cls(
            status=StageStatus.SUCCESS,
            findings=list(findings or []),
            artifacts=dict(artifacts or {}),
            message=message,
            metadata=metadata,
        )

    @classmethod
    def failure(cls, reason: StageReason = StageReason.ADAPTER_ERROR,
                message: Optional[str] = None,
                findings: Optional[List[Finding]] = None,
                artifacts: Optional[Dict[str, Any]] = None,
                blocking: bool = True, **metadata) -> "StageResult":
        return cls(
            status=StageStatus.FAILURE,
            findings=list(findings or []),
            artifacts=dict(artifacts or {}),
            reason=reason,
            message=message,
            blocking=blocking,
            metadata=metadata,
        )

    @classmethod
    def skipped(cls, reason: StageReason, message: Optional[str] = None) -> "StageResult":
        now = time.time()
        return cls(
            status=StageStatus.SKIPPED,
            reason=reason,
            message=message,
            blocking=reason is not StageReason.DISABLED,
            started_at=now,
            finished_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def permits_dependents(self) -> bool:
        """Whether stages depending on this one may run."""
        if self.status is StageStatus.SUCCESS:
            return True
        if self.status is StageStatus.SKIPPED:
            return self.reason is StageReason.DISABLED
        if self.status is StageStatus.FAILURE:
            return not self.blocking
        return False

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def severity_counts(self, categories: Optional[List[str]] = None) -> Dict[Severity, int]:
        """Bucket finding counts by severity, optionally limited to categories."""
        counts = {severity: 0 for severity in Severity}
        for finding in self.findings:
            if categories and finding.category not in categories:
                continue
            counts[finding.severity] += finding.count
        return counts

    def max_severity(self, categories: Optional[List[str]] = None) -> Optional[Severity]:
        """Highest severity among findings with a non-zero count."""
        present = [
            finding.severity for finding in self.findings
            if finding.count > 0 and (not categories or finding.category in categories)
        ]
        return max(present, key=lambda s: s.rank) if present else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "blocking": self.blocking,
            "findings": [finding.to_dict() for finding in self.findings],
            "artifacts": {
                name: ref.to_dict() if isinstance(ref, ArtifactRef) else {"value": str(ref)}
                for name, ref in self.artifacts.items()
            },
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageResult":
        artifacts = {}
        for name, ref in data.get("artifacts", {}).items():
            if "producer" in ref:
                artifacts[name] = ArtifactRef.from_dict(ref)
            else:
                artifacts[name] = ref["value"]
        return cls(
            status=StageStatus(data["status"]),
            findings=[Finding.from_dict(f) for f in data.get("findings", [])],
            artifacts=artifacts,
            reason=StageReason(data["reason"]) if data.get("reason") else None,
            message=data.get("message"),
            blocking=data.get("blocking", True),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            metadata=data.get("metadata", {}),
        )


@dataclass
class PipelineSettings:
    """Explicit credentials and variables handed to every adapter invocation."""
    credentials: Dict[str, str] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    workdir: str = "."

    def credential(self, name: str) -> str:
        value = self.credentials.get(name)
        if not value:
            raise ConfigurationError(f"Credential not configured: {name}", {"credential": name})
        return value


@dataclass
class AdapterContext:
    """Runtime context for one adapter invocation."""
    run_id: str
    stage_id: str
    settings: PipelineSettings
    logger: logging.Logger
    timeout: Optional[float] = None
    started_at: float = field(default_factory=time.time)
    inputs: Dict[str, str] = field(default_factory=dict)
    upstream: FrozenSet[str] = frozenset()
    artifact_reader: Optional[Callable[[str, str], ArtifactRef]] = None
    cancel_event: Optional[threading.Event] = None

    def artifact(self, stage_id: str, name: str) -> ArtifactRef:
        """Read an artifact produced by an upstream stage."""
        if stage_id not in self.upstream:
            raise UnknownDependencyError(
                self.stage_id, stage_id,
                f"Stage {self.stage_id} cannot read artifacts of {stage_id}: not upstream"
            )
        if self.artifact_reader is None:
            raise ArtifactNotFoundError(stage_id, name)
        return self.artifact_reader(stage_id, name)

    def has_input(self, name: str) -> bool:
        return name in self.inputs

    def input(self, name: str) -> ArtifactRef:
        """Resolve a declared input (``stage.artifact``) to its artifact."""
        if name not in self.inputs:
            raise ArtifactNotFoundError(self.stage_id, f"input:{name}")
        producer, artifact_name = parse_artifact_address(self.inputs[name])
        return self.artifact(producer, artifact_name)

    def credential(self, name: str) -> str:
        return self.settings.credential(name)

    def remaining_time(self) -> Optional[float]:
        """Seconds left before the stage deadline, or None without a timeout."""
        if self.timeout is None:
            return None
        return max(0.0, self.timeout - (time.time() - self.started_at))

    def is_cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


def parse_artifact_address(address: str) -> tuple:
    """Split ``stage.artifact`` into its stage id and artifact name."""
    stage_id, sep, name = address.partition(".")
    if not sep or not stage_id or not name:
        raise ConfigurationError(
            f"Invalid artifact reference '{address}', expected '<stage>.<artifact>'",
            {"address": address}
        )
    return stage_id, name


class StageAdapter(ABC):
    """Abstract base class for the boundary code wrapping an external tool."""

    adapter_type = "abstract"

    def __init__(self, **parameters):
        self.parameters = parameters
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def name(self) -> str:
        return self.adapter_type

    @abstractmethod
    def execute(self, context: AdapterContext) -> StageResult:
        """Invoke the external tool and describe what happened."""
        pass

    def validate_parameters(self) -> List[str]:
        """Return a list of parameter problems (empty when valid)."""
        return []

    def setup(self, context: AdapterContext) -> None:
        """Setup adapter before execution (optional override)."""
        pass

    def cleanup(self, context: AdapterContext) -> None:
        """Cleanup after adapter execution (optional override)."""
        pass


class CallableAdapter(StageAdapter):
    """Adapter backed by a plain function ``fn(context) -> StageResult``."""

    adapter_type = "callable"

    def __init__(self, func: Callable[[AdapterContext], StageResult], name: Optional[str] = None):
        super().__init__()
        self.func = func
        self._name = name or getattr(func, "__name__", "callable")

    @property
    def name(self) -> str:
        return self._name

    def execute(self, context: AdapterContext) -> StageResult:
        return self.func(context)


def as_adapter(obj: Any) -> StageAdapter:
    """Accept either a StageAdapter or a callable."""
    if isinstance(obj, StageAdapter):
        return obj
    if callable(obj):
        return CallableAdapter(obj)
    raise TypeError(f"Adapter must be a StageAdapter or callable, got {type(obj).__name__}")


@dataclass
class Stage:
    """One unit of pipeline work with declared dependencies."""
    id: str
    adapter: StageAdapter
    depends_on: List[str] = field(default_factory=list)
    gate: Optional["GatePolicy"] = None
    timeout: Optional[float] = None
    inputs: Dict[str, str] = field(default_factory=dict)
    allow_failure: bool = False
    enabled: bool = True
    description: Optional[str] = None
