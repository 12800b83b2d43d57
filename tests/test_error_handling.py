"""Tests for the error taxonomy and adapter error handling."""

import json
import socket
import subprocess
import tempfile
from pathlib import Path

import pytest

from cipipeline.core.errors import (
    AdapterError, AdapterTimeoutError, ArtifactError, ArtifactNotFoundError, ConfigurationError,
    CycleDetectedError, DuplicateArtifactError, DuplicateStageError, ErrorCategory, ErrorHandler,
    GateFailure, GraphError, NotificationError, PipelineError, StageStateError,
    UnknownDependencyError
)


class TestErrorTaxonomy:
    """Test pipeline error classes."""

    def test_categories(self):
        """Test each error carries its category."""
        assert ConfigurationError("bad").category is ErrorCategory.CONFIGURATION
        assert DuplicateStageError("a").category is ErrorCategory.GRAPH
        assert DuplicateArtifactError("a", "b").category is ErrorCategory.ARTIFACT
        assert AdapterError("x").category is ErrorCategory.ADAPTER
        assert AdapterTimeoutError("x").category is ErrorCategory.TIMEOUT
        assert GateFailure("gate", ["r"]).category is ErrorCategory.GATE
        assert StageStateError("x").category is ErrorCategory.STATE
        assert NotificationError("x").category is ErrorCategory.NOTIFICATION

    def test_hierarchy(self):
        """Test error class hierarchy."""
        assert issubclass(UnknownDependencyError, GraphError)
        assert issubclass(CycleDetectedError, GraphError)
        assert issubclass(ArtifactNotFoundError, ArtifactError)
        assert issubclass(AdapterTimeoutError, AdapterError)
        for error_class in (GraphError, ArtifactError, AdapterError, GateFailure, StageStateError):
            assert issubclass(error_class, PipelineError)

    def test_context(self):
        """Test errors carry structured context."""
        error = UnknownDependencyError("deploy", "build")

        assert error.context == {"stage_id": "deploy", "dependency": "build"}
        assert "deploy" in error.message and "build" in error.message
        assert error.timestamp > 0

    def test_gate_failure_message(self):
        """Test gate failures list their reasons."""
        error = GateFailure("image-gate", ["1 CRITICAL findings exceed limit of 0"])

        assert str(error) == "Gate 'image-gate' failed: 1 CRITICAL findings exceed limit of 0"


class TestErrorHandler:
    """Test adapter error classification."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.error_log = Path(self.temp_dir) / "errors" / "adapter_errors.jsonl"
        self.handler = ErrorHandler(str(self.error_log))
        self.context = {"run_id": "run-1", "stage_id": "scan", "adapter_name": "trivy-fs"}

    @pytest.mark.parametrize("exception, category", [
        (AdapterError("boom", ErrorCategory.TOOL), ErrorCategory.TOOL),
        (subprocess.TimeoutExpired(["trivy"], 5), ErrorCategory.TIMEOUT),
        (TimeoutError("slow"), ErrorCategory.TIMEOUT),
        (FileNotFoundError("trivy"), ErrorCategory.TOOL),
        (ConnectionRefusedError("refused"), ErrorCategory.NETWORK),
        (socket.gaierror("dns lookup failed"), ErrorCategory.NETWORK),
        (RuntimeError("request timed out"), ErrorCategory.TIMEOUT),
        (ValueError("unexpected"), ErrorCategory.ADAPTER),
    ])
    def test_categorize_error(self, exception, category):
        """Test exception categorization."""
        assert self.handler._categorize_error(exception) is category

    def test_classify_error(self):
        """Test error context creation and logging."""
        try:
            raise RuntimeError("scanner crashed")
        except RuntimeError as e:
            error_context = self.handler.classify_error(e, self.context)

        assert error_context.run_id == "run-1"
        assert error_context.stage_id == "scan"
        assert error_context.adapter_name == "trivy-fs"
        assert error_context.exception_type == "RuntimeError"
        assert "scanner crashed" in error_context.stack_trace

        with open(self.error_log) as f:
            entry = json.loads(f.readline())
        assert entry["error_id"] == error_context.error_id
        assert entry["category"] == "adapter"

    def test_error_statistics(self):
        """Test statistics over the error history."""
        assert self.handler.get_error_statistics() == {"total_errors": 0}

        self.handler.classify_error(AdapterTimeoutError("slow"), self.context)
        self.handler.classify_error(AdapterError("boom"), dict(self.context, stage_id="build"))

        stats = self.handler.get_error_statistics()
        assert stats["total_errors"] == 2
        assert stats["by_category"] == {"timeout": 1, "adapter": 1}
        assert stats["by_stage"] == {"scan": 1, "build": 1}

        self.handler.clear_error_history()
        assert self.handler.get_error_statistics() == {"total_errors": 0}

    def test_without_log_file(self):
        """Test classification without a persistent log."""
        handler = ErrorHandler()

        error_context = handler.classify_error(ValueError("x"), {})

        assert error_context.run_id == "unknown"
        assert len(handler.error_history) == 1
