"""Provisioning adapter wrapping the Terraform CLI."""

import json
from typing import Any, Dict, List

from ..core.errors import AdapterError
from ..core.interfaces import AdapterContext, StageResult
from .base import CommandAdapter


class TerraformAdapter(CommandAdapter):
    """Applies an infrastructure declaration and exposes its outputs as artifacts.

    Parameters:
        working_dir: Directory holding the Terraform configuration
        variables: ``-var`` assignments
        var_file: Optional ``-var-file``
        outputs: Output names to publish (all non-sensitive outputs by default)
        action: ``apply`` (default) or ``destroy``
        init: Run ``terraform init`` first (default True)
    """

    adapter_type = "terraform"

    def validate_parameters(self) -> List[str]:
        errors = []
        if self.parameters.get("action", "apply") not in ("apply", "destroy"):
            errors.append("action must be 'apply' or 'destroy'")
        if not isinstance(self.parameters.get("variables", {}), dict):
            errors.append("variables must be a mapping")
        return errors

    def _var_args(self) -> List[str]:
        args = [f"-var={key}={value}" for key, value in self.parameters.get("variables", {}).items()]
        if self.parameters.get("var_file"):
            args.append(f"-var-file={self.parameters['var_file']}")
        return args

    def execute(self, context: AdapterContext) -> StageResult:
        cwd = self.resolve_path(context, self.parameters.get("working_dir", "."))
        action = self.parameters.get("action", "apply")

        if self.parameters.get("init", True):
            self.run_command(["terraform", "init", "-input=false", "-no-color"], context, cwd=cwd)

        self.run_command(
            ["terraform", action, "-auto-approve", "-input=false", "-no-color"] + self._var_args(),
            context, cwd=cwd
        )

        if action == "destroy":
            return StageResult.success(message="Infrastructure destroyed")

        output = self.run_command(["terraform", "output", "-json"], context, cwd=cwd)
        artifacts = self.parse_outputs(output.stdout, self.parameters.get("outputs"))
        return StageResult.success(artifacts=artifacts, message=f"Published {len(artifacts)} outputs")

    def parse_outputs(self, raw: str, wanted: List[str] = None) -> Dict[str, str]:
        """Turn ``terraform output -json`` into artifact values."""
        try:
            data: Dict[str, Any] = json.loads(raw or "{}")
        except json.JSONDecodeError as e:
            raise AdapterError(f"Invalid terraform output JSON: {e}") from e

        artifacts = {}
        for name, entry in data.items():
            if wanted and name not in wanted:
                continue
            if entry.get("sensitive") and not (wanted and name in wanted):
                self.logger.info(f"Not publishing sensitive output: {name}")
                continue
            value = entry.get("value")
            artifacts[name] = value if isinstance(value, str) else json.dumps(value)

        missing = [name for name in (wanted or []) if name not in artifacts]
        if missing:
            raise AdapterError(f"Terraform outputs not found: {', '.join(missing)}")
        return artifacts
