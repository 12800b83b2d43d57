"""Durable audit log of pipeline runs, keyed by run id."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from .run import PipelineRun


class RunLog:
    """Persists PipelineRun records as JSON files plus a JSON-lines index."""

    INDEX_FILE = "runs.jsonl"

    def __init__(self, directory: str = ".cipipeline/runs"):
        self.directory = Path(directory)
        self.logger = logging.getLogger(self.__class__.__name__)

    def _run_path(self, run_id: str) -> Path:
        return self.directory / f"{run_id}.json"

    def save(self, run: PipelineRun) -> Path:
        """Write the full run record and append a summary to the index."""
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._run_path(run.run_id)

        fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(run.to_dict(), f, indent=2, default=str)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        summary = {
            "run_id": run.run_id,
            "pipeline_name": run.pipeline_name,
            "status": run.status.value,
            "started_at": run.started_at,
            "finished_at": run.finished_at,
            "stages": run.counts(),
        }
        with open(self.directory / self.INDEX_FILE, 'a') as f:
            f.write(json.dumps(summary) + '\n')

        self.logger.info(f"Run record saved: {path}")
        return path

    def load(self, run_id: str) -> Optional[PipelineRun]:
        """Load a run record, or None if it does not exist."""
        path = self._run_path(run_id)
        if not path.exists():
            return None
        with open(path, 'r') as f:
            return PipelineRun.from_dict(json.load(f))

    def list_runs(self, limit: Optional[int] = None,
                  status: Optional[str] = None) -> List[Dict[str, Any]]:
        """Run summaries, newest first."""
        index_path = self.directory / self.INDEX_FILE
        if not index_path.exists():
            return []

        runs = []
        with open(index_path, 'r') as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    runs.append(json.loads(line))
                except json.JSONDecodeError:
                    self.logger.warning(f"Skipping corrupt run index line: {line[:80]}")

        if status:
            runs = [r for r in runs if r.get("status") == status]

        runs.sort(key=lambda r: r.get("started_at") or 0, reverse=True)
        if limit:
            runs = runs[:limit]
        return runs
