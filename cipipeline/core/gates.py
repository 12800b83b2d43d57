"""Gate policies and their evaluation over stage findings."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import GateFailure
from .interfaces import Severity, StageResult


@dataclass
class GatePolicy:
    """Threshold rule over a stage result's severity-bucketed findings.

    ``fail_on=HIGH`` fails when any finding is HIGH or worse, i.e. it
    requires ``max_severity < HIGH``. ``max_counts={CRITICAL: 0}`` requires
    ``count(CRITICAL) == 0``.
    """
    name: str = "default"
    fail_on: Optional[Severity] = None
    max_counts: Dict[Severity, int] = field(default_factory=dict)
    categories: List[str] = field(default_factory=list)
    required_artifacts: List[str] = field(default_factory=list)
    blocking: bool = True

    def __post_init__(self):
        if self.fail_on is not None:
            self.fail_on = Severity.parse(self.fail_on)
        self.max_counts = {Severity.parse(k): int(v) for k, v in self.max_counts.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], name: Optional[str] = None) -> "GatePolicy":
        return cls(
            name=data.get("name") or name or "default",
            fail_on=data.get("fail_on"),
            max_counts=data.get("max_counts") or {},
            categories=list(data.get("categories") or []),
            required_artifacts=list(data.get("required_artifacts") or []),
            blocking=data.get("blocking", True),
        )

    def describe(self) -> str:
        parts = []
        if self.fail_on is not None:
            parts.append(f"max severity < {self.fail_on.value}")
        for severity, limit in sorted(self.max_counts.items(), key=lambda kv: kv[0].rank):
            parts.append(f"count({severity.value}) <= {limit}")
        if self.required_artifacts:
            parts.append(f"artifacts {', '.join(self.required_artifacts)}")
        if not parts:
            parts.append("always pass")
        mode = "blocking" if self.blocking else "non-blocking"
        return f"{self.name}: {' and '.join(parts)} ({mode})"


@dataclass
class GateOutcome:
    """Pass, or Fail with reasons."""
    passed: bool
    reasons: List[str] = field(default_factory=list)
    policy_name: Optional[str] = None

    @classmethod
    def ok(cls, policy_name: Optional[str] = None) -> "GateOutcome":
        return cls(passed=True, policy_name=policy_name)

    @classmethod
    def fail(cls, reasons: List[str], policy_name: Optional[str] = None) -> "GateOutcome":
        return cls(passed=False, reasons=reasons, policy_name=policy_name)

    @property
    def reason(self) -> Optional[str]:
        return "; ".join(self.reasons) if self.reasons else None

    def raise_for_failure(self) -> None:
        if not self.passed:
            raise GateFailure(self.policy_name or "default", self.reasons)


class GateEvaluator:
    """Decides whether a completed stage's findings satisfy its policy."""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    def evaluate(self, result: StageResult, policy: Optional[GatePolicy] = None,
                 artifacts: Optional[Dict[str, Any]] = None) -> GateOutcome:
        """
        Evaluate a stage result against a policy.

        Args:
            result: Stage result with findings
            policy: Gate policy; None means an implicit pass
            artifacts: Artifacts the stage recorded (defaults to result.artifacts)

        Returns:
            GateOutcome: Pass or Fail(reasons)
        """
        if policy is None:
            return GateOutcome.ok()

        reasons: List[str] = []
        categories = policy.categories or None
        counts = result.severity_counts(categories)

        if policy.fail_on is not None:
            offending = {
                severity: count for severity, count in counts.items()
                if count > 0 and severity >= policy.fail_on
            }
            if offending:
                summary = ", ".join(
                    f"{count} {severity.value}"
                    for severity, count in sorted(offending.items(), key=lambda kv: -kv[0].rank)
                )
                reasons.append(f"findings at or above {policy.fail_on.value}: {summary}")

        for severity, limit in policy.max_counts.items():
            if counts.get(severity, 0) > limit:
                reasons.append(
                    f"{counts[severity]} {severity.value} findings exceed limit of {limit}"
                )

        if policy.required_artifacts:
            produced = artifacts if artifacts is not None else result.artifacts
            missing = [name for name in policy.required_artifacts if name not in produced]
            if missing:
                reasons.append(f"missing required artifacts: {', '.join(missing)}")

        if reasons:
            self.logger.info(f"Gate '{policy.name}' failed: {'; '.join(reasons)}")
            return GateOutcome.fail(reasons, policy.name)

        return GateOutcome.ok(policy.name)
