"""Shared machinery for adapters that wrap command-line tools."""

import os
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ..core.errors import AdapterError, AdapterTimeoutError, ErrorCategory
from ..core.interfaces import AdapterContext, StageAdapter


class CommandAdapter(StageAdapter):
    """Base class for adapters that shell out to an external CLI."""

    def resolve_path(self, context: AdapterContext, path: str) -> Path:
        """Resolve a parameter path against the pipeline working directory."""
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return Path(context.settings.workdir) / candidate

    def run_command(self, cmd: Sequence[str], context: AdapterContext, cwd: Optional[Path] = None,
                    input_text: Optional[str] = None, env: Optional[Dict[str, str]] = None,
                    check: bool = True, redact: Optional[List[str]] = None) -> subprocess.CompletedProcess:
        """
        Run a command bounded by the stage deadline.

        Args:
            cmd: Command and arguments
            context: Adapter context (supplies timeout and working directory)
            cwd: Working directory; defaults to the pipeline working directory
            input_text: Text written to stdin
            env: Extra environment variables
            check: Raise AdapterError on a non-zero exit code
            redact: Secret values to mask in log output

        Raises:
            AdapterError: Non-zero exit or missing binary
            AdapterTimeoutError: The stage deadline expired
        """
        cmd = [str(part) for part in cmd]
        timeout = context.remaining_time()
        if timeout is not None and timeout <= 0:
            raise AdapterTimeoutError(f"No time left to run {cmd[0]}", {"stage_id": context.stage_id})

        display = " ".join(cmd)
        for secret in redact or []:
            if secret:
                display = display.replace(secret, "****")
        context.logger.info(f"Running: {display}")

        run_env = None
        if env:
            run_env = os.environ.copy()
            run_env.update(env)

        try:
            return subprocess.run(
                cmd,
                cwd=str(cwd or context.settings.workdir),
                input=input_text,
                env=run_env,
                capture_output=True,
                text=True,
                check=check,
                timeout=timeout,
            )
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or e.stdout or "").strip()
            raise AdapterError(
                f"{cmd[0]} exited with code {e.returncode}: {stderr[-500:]}",
                ErrorCategory.TOOL,
                {"stage_id": context.stage_id, "command": cmd[0], "returncode": e.returncode}
            ) from e
        except FileNotFoundError as e:
            raise AdapterError(
                f"{cmd[0]} command not found. Please install {cmd[0]} first.",
                ErrorCategory.TOOL,
                {"stage_id": context.stage_id, "command": cmd[0]}
            ) from e
        except subprocess.TimeoutExpired as e:
            raise AdapterTimeoutError(
                f"{cmd[0]} timed out after {e.timeout:.0f}s",
                {"stage_id": context.stage_id, "command": cmd[0]}
            ) from e
