"""Generic adapter running an arbitrary command."""

import shlex
from typing import List

from ..core.interfaces import AdapterContext, StageResult
from .base import CommandAdapter


class ShellCommandAdapter(CommandAdapter):
    """Runs ``command`` and publishes ``outputs`` as artifacts.

    Output values may contain ``{stdout}``, replaced by the command's
    stripped standard output.
    """

    adapter_type = "command"

    def validate_parameters(self) -> List[str]:
        if not self.parameters.get("command"):
            return ["command is required"]
        return []

    def execute(self, context: AdapterContext) -> StageResult:
        command = self.parameters["command"]
        cmd = shlex.split(command) if isinstance(command, str) else list(command)
        cwd = self.resolve_path(context, self.parameters.get("cwd", "."))

        result = self.run_command(cmd, context, cwd=cwd, env=self.parameters.get("env"))
        stdout = (result.stdout or "").strip()

        artifacts = {
            name: str(value).replace("{stdout}", stdout)
            for name, value in self.parameters.get("outputs", {}).items()
        }
        return StageResult.success(artifacts=artifacts, message=stdout[-200:] or None)
