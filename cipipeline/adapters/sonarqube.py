"""Quality-analysis adapter wrapping SonarQube."""

from typing import Any, Dict, List

import requests

from ..core.errors import AdapterError, ConfigurationError, ErrorCategory
from ..core.interfaces import AdapterContext, Finding, Severity, StageResult
from .base import CommandAdapter


# SonarQube metric -> (finding category, severity)
METRIC_FINDINGS = {
    "vulnerabilities": ("vulnerability", Severity.HIGH),
    "bugs": ("bug", Severity.MEDIUM),
    "security_hotspots": ("security_hotspot", Severity.MEDIUM),
    "code_smells": ("code_smell", Severity.LOW),
}


class SonarQubeAdapter(CommandAdapter):
    """Submits a scan with ``sonar-scanner`` and reads the results back over HTTP.

    Parameters:
        project_key: SonarQube project key (required)
        sources: Source directory (default ``.``)
        host_url: Server URL, unless provided through the ``endpoint`` input
        token_credential: Name of the credential holding the token
        metrics: Metric keys to convert into findings
        request_timeout: HTTP timeout in seconds
        scanner_args: Extra ``-D`` properties
    """

    adapter_type = "sonarqube"

    def validate_parameters(self) -> List[str]:
        errors = []
        if not self.parameters.get("project_key"):
            errors.append("project_key is required")
        for metric in self.parameters.get("metrics", []):
            if metric not in METRIC_FINDINGS:
                errors.append(f"Unsupported metric: {metric}")
        return errors

    def _host_url(self, context: AdapterContext) -> str:
        if context.has_input("endpoint"):
            host = context.input("endpoint").value
        else:
            host = self.parameters.get("host_url")
        if not host:
            raise ConfigurationError(
                f"Stage {context.stage_id} needs an 'endpoint' input or host_url parameter",
                {"stage_id": context.stage_id}
            )
        if not host.startswith(("http://", "https://")):
            host = f"http://{host}"
        return host.rstrip("/")

    def execute(self, context: AdapterContext) -> StageResult:
        project_key = self.parameters["project_key"]
        host = self._host_url(context)
        token = context.credential(self.parameters.get("token_credential", "SONAR_TOKEN"))

        cmd = [
            "sonar-scanner",
            f"-Dsonar.projectKey={project_key}",
            f"-Dsonar.sources={self.parameters.get('sources', '.')}",
            f"-Dsonar.host.url={host}",
            "-Dsonar.qualitygate.wait=true",
        ]
        cmd += [f"-D{key}={value}" for key, value in self.parameters.get("scanner_args", {}).items()]

        scan = self.run_command(cmd, context, check=False, env={"SONAR_TOKEN": token})
        if scan.returncode != 0 and "QUALITY GATE STATUS: FAILED" not in (scan.stdout or ""):
            raise AdapterError(
                f"sonar-scanner exited with code {scan.returncode}: {(scan.stderr or '').strip()[-500:]}",
                ErrorCategory.TOOL,
                {"stage_id": context.stage_id}
            )

        measures = self._get(host, "/api/measures/component", token, {
            "component": project_key,
            "metricKeys": ",".join(self.parameters.get("metrics", list(METRIC_FINDINGS))),
        })
        findings = self.findings_from_measures(measures)

        gate = self._get(host, "/api/qualitygates/project_status", token, {"projectKey": project_key})
        gate_status = gate.get("projectStatus", {}).get("status", "NONE")
        if gate_status == "ERROR":
            findings.append(Finding(
                severity=Severity.HIGH,
                category="quality_gate",
                title="SonarQube quality gate failed",
                metadata={"conditions": gate.get("projectStatus", {}).get("conditions", [])},
            ))

        return StageResult.success(
            artifacts={
                "dashboard": f"{host}/dashboard?id={project_key}",
                "quality_gate": gate_status,
            },
            findings=findings,
            message=f"Quality gate {gate_status}",
        )

    def _get(self, host: str, path: str, token: str, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = requests.get(
                f"{host}{path}",
                params=params,
                auth=(token, ""),
                timeout=self.parameters.get("request_timeout", 30),
            )
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            raise AdapterError(f"SonarQube request {path} failed: {e}", ErrorCategory.NETWORK) from e
        except ValueError as e:
            raise AdapterError(f"SonarQube returned invalid JSON for {path}: {e}") from e

    @staticmethod
    def findings_from_measures(measures: Dict[str, Any]) -> List[Finding]:
        """Convert a ``/api/measures/component`` response into findings."""
        findings = []
        for measure in measures.get("component", {}).get("measures", []):
            metric = measure.get("metric")
            if metric not in METRIC_FINDINGS:
                continue
            category, severity = METRIC_FINDINGS[metric]
            count = int(float(measure.get("value", 0)))
            findings.append(Finding(
                severity=severity,
                category=category,
                title=f"{count} {metric.replace('_', ' ')}",
                count=count,
            ))
        return findings
