"""Security-scan adapters wrapping the Trivy scanner."""

import json
from abc import abstractmethod
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Tuple

from ..core.errors import AdapterError, ConfigurationError
from ..core.interfaces import AdapterContext, Finding, Severity, StageResult
from .base import CommandAdapter


# Trivy report section -> finding category
REPORT_SECTIONS = {
    "Vulnerabilities": ("vulnerability", "VulnerabilityID"),
    "Secrets": ("secret", "RuleID"),
    "Misconfigurations": ("misconfiguration", "ID"),
}

MAX_IDS_PER_FINDING = 20


def parse_trivy_report(report: Dict[str, Any]) -> List[Finding]:
    """
    Bucket a Trivy JSON report into severity-tagged findings.

    One Finding is produced per (category, severity) pair, with ``count`` set
    to the number of entries and a sample of ids in its metadata. Passing
    misconfiguration checks are not counted.
    """
    buckets: Dict[Tuple[str, Severity], List[str]] = defaultdict(list)

    for result in report.get("Results") or []:
        target = result.get("Target", "")
        for section, (category, id_field) in REPORT_SECTIONS.items():
            for entry in result.get(section) or []:
                if section == "Misconfigurations" and entry.get("Status", "FAIL") != "FAIL":
                    continue
                severity = Severity.parse(entry.get("Severity"))
                identifier = entry.get(id_field) or entry.get("Title") or target
                buckets[(category, severity)].append(identifier)

    findings = []
    for (category, severity), ids in sorted(buckets.items(), key=lambda kv: (kv[0][0], -kv[0][1].rank)):
        findings.append(Finding(
            severity=severity,
            category=category,
            title=f"{len(ids)} {severity.value} {category} finding(s)",
            count=len(ids),
            metadata={"ids": sorted(set(ids))[:MAX_IDS_PER_FINDING]},
        ))
    return findings


def load_trivy_report(path: str) -> List[Finding]:
    """Load a Trivy JSON report from disk and parse it."""
    with open(path, 'r', encoding='utf-8') as f:
        return parse_trivy_report(json.load(f))


class TrivyAdapter(CommandAdapter):
    """Common Trivy invocation; subclasses choose the scan target.

    Parameters:
        severity: Severities to report (all by default)
        scanners: e.g. ``["vuln", "secret", "misconfig"]``
        report_dir: Where JSON reports are written
        ignore_unfixed: Skip vulnerabilities without a fix
        extra_args: Additional CLI arguments
    """

    scan_kind = "fs"

    def validate_parameters(self) -> List[str]:
        errors = []
        for value in self.parameters.get("severity", []):
            if Severity.parse(value) is Severity.UNKNOWN and str(value).upper() != "UNKNOWN":
                errors.append(f"Unknown severity: {value}")
        return errors

    @abstractmethod
    def resolve_target(self, context: AdapterContext) -> str:
        """Return what to scan: a directory path or an image reference."""

    def report_path(self, context: AdapterContext) -> Path:
        report_dir = self.resolve_path(context, self.parameters.get("report_dir", ".cipipeline/reports"))
        report_dir.mkdir(parents=True, exist_ok=True)
        return report_dir / f"{context.run_id}-{context.stage_id}.json"

    def build_command(self, target: str, report_path: Path) -> List[str]:
        cmd = ["trivy", self.scan_kind, "--format", "json", "--output", str(report_path),
               "--exit-code", "0", "--quiet"]
        if self.parameters.get("severity"):
            cmd += ["--severity", ",".join(str(s).upper() for s in self.parameters["severity"])]
        if self.parameters.get("scanners"):
            cmd += ["--scanners", ",".join(self.parameters["scanners"])]
        if self.parameters.get("ignore_unfixed"):
            cmd.append("--ignore-unfixed")
        cmd += list(self.parameters.get("extra_args", []))
        cmd.append(target)
        return cmd

    def execute(self, context: AdapterContext) -> StageResult:
        target = self.resolve_target(context)
        report_path = self.report_path(context)

        self.run_command(self.build_command(target, report_path), context)

        try:
            findings = load_trivy_report(str(report_path))
        except (OSError, json.JSONDecodeError) as e:
            raise AdapterError(f"Could not read Trivy report {report_path}: {e}") from e

        total = sum(f.count for f in findings)
        return StageResult.success(
            artifacts={"report": str(report_path)},
            findings=findings,
            message=f"Scanned {target}: {total} finding(s)",
            target=target,
        )


class TrivyFilesystemAdapter(TrivyAdapter):
    """Scans a source tree (``path`` parameter, default ``.``)."""

    adapter_type = "trivy-fs"
    scan_kind = "fs"

    def resolve_target(self, context: AdapterContext) -> str:
        return str(self.resolve_path(context, self.parameters.get("path", ".")))


class TrivyImageAdapter(TrivyAdapter):
    """Scans a container image from the ``image`` input or parameter."""

    adapter_type = "trivy-image"
    scan_kind = "image"

    def resolve_target(self, context: AdapterContext) -> str:
        if context.has_input("image"):
            return context.input("image").value
        if self.parameters.get("image"):
            return self.parameters["image"]
        raise ConfigurationError(f"Stage {context.stage_id} has no image to scan",
                                 {"stage_id": context.stage_id})
