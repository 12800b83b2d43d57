"""Tests for configuration management and validation."""

import pytest
import tempfile
import os
import yaml
import json
from pathlib import Path
from unittest.mock import patch

from cipipeline.config import ConfigManager, PipelineConfig, ValidationError
from cipipeline.core.errors import ConfigurationError, CycleDetectedError, UnknownDependencyError
from cipipeline.core.executor import PipelineExecutor
from cipipeline.core.interfaces import Severity
from cipipeline.adapters import DockerBuildAdapter, TrivyImageAdapter
from cipipeline.notifications import LogChannel, SlackChannel


def minimal_config(**overrides):
    config = {
        "pipeline": {"name": "delivery"},
        "stages": [
            {"id": "build", "adapter": "command", "parameters": {"command": "make build"}},
        ],
    }
    config.update(overrides)
    return config


class TestConfigSchema:
    """Test configuration schema validation."""

    def test_valid_minimal_config(self):
        """Test minimal valid configuration."""
        config = PipelineConfig(**minimal_config())

        assert config.pipeline.name == "delivery"
        assert config.executor.max_workers == 4
        assert config.stages[0].enabled
        assert config.notifications.channels == []

    def test_stages_required(self):
        """Test a pipeline needs at least one stage."""
        with pytest.raises(ValueError):
            PipelineConfig(pipeline={"name": "empty"}, stages=[])

    def test_extra_fields_forbidden(self):
        """Test unknown top-level keys are rejected."""
        with pytest.raises(ValueError):
            PipelineConfig(**minimal_config(model={"type": "sklearn"}))

    def test_stage_id_validation(self):
        """Test stage ids are restricted to safe characters."""
        with pytest.raises(ValueError, match="may only contain"):
            PipelineConfig(**minimal_config(stages=[{"id": "bad id", "adapter": "command"}]))

    def test_input_reference_validation(self):
        """Test inputs must be '<stage>.<artifact>'."""
        stages = [{"id": "deploy", "adapter": "kubectl", "inputs": {"image": "build"}}]

        with pytest.raises(ValueError, match="must reference"):
            PipelineConfig(**minimal_config(stages=stages))

    def test_gate_severity_validation(self):
        """Test gate severities must be known."""
        stages = [{"id": "scan", "adapter": "trivy-fs", "gate": {"fail_on": "SEVERE"}}]

        with pytest.raises(ValueError, match="Unknown severity"):
            PipelineConfig(**minimal_config(stages=stages))

    def test_gate_severity_normalized(self):
        """Test gate severities are upper-cased."""
        stages = [{"id": "scan", "adapter": "trivy-fs",
                   "gate": {"fail_on": "high", "max_counts": {"critical": 0}}}]

        gate = PipelineConfig(**minimal_config(stages=stages)).stages[0].gate
        assert gate.fail_on == "HIGH"
        assert gate.max_counts == {"CRITICAL": 0}
        assert gate.blocking is True

    def test_channel_type_validation(self):
        """Test unknown notification channel types are rejected."""
        with pytest.raises(ValueError):
            PipelineConfig(**minimal_config(notifications={"channels": [{"type": "email"}]}))

    def test_logging_level_validation(self):
        """Test logging level validation."""
        with pytest.raises(ValueError, match="Invalid logging level"):
            PipelineConfig(**minimal_config(logging={"level": "LOUD"}))


class TestConfigManager:
    """Test configuration manager functionality."""

    def setup_method(self):
        """Set up test fixtures."""
        self.config_manager = ConfigManager()
        self.temp_dir = tempfile.mkdtemp()

    def _write(self, name, data):
        path = Path(self.temp_dir) / name
        with open(path, 'w') as f:
            if name.endswith('.json'):
                json.dump(data, f)
            else:
                yaml.dump(data, f)
        return path

    def test_load_yaml_config(self):
        """Test loading YAML configuration."""
        config = self.config_manager.load_config(str(self._write("pipeline.yaml", minimal_config())))

        assert config.pipeline.name == "delivery"
        assert config.stages[0].adapter == "command"

    def test_load_json_config(self):
        """Test loading JSON configuration."""
        config = self.config_manager.load_config(str(self._write("pipeline.json", minimal_config())))

        assert config.pipeline.name == "delivery"

    def test_load_config_cached(self):
        """Test repeated loads use the cache."""
        path = str(self._write("pipeline.yaml", minimal_config()))

        first = self.config_manager.load_config(path)
        assert self.config_manager.load_config(path) is first

        self.config_manager.clear_cache()
        assert self.config_manager.load_config(path) is not first

    def test_missing_file(self):
        """Test loading a missing file."""
        with pytest.raises(FileNotFoundError):
            self.config_manager.load_config(str(Path(self.temp_dir) / "nope.yaml"))

    def test_unsupported_format(self):
        """Test unsupported file extensions."""
        path = Path(self.temp_dir) / "pipeline.toml"
        path.write_text("name = 'x'")

        with pytest.raises(ValueError, match="Unsupported configuration file format"):
            self.config_manager.load_config(str(path))

    def test_invalid_yaml(self):
        """Test YAML syntax errors."""
        path = Path(self.temp_dir) / "broken.yaml"
        path.write_text("pipeline: [unclosed")

        with pytest.raises(ValidationError, match="Invalid YAML syntax"):
            self.config_manager.load_config(str(path))

    def test_invalid_config_raises(self):
        """Test schema errors surface as ValidationError."""
        path = self._write("invalid.yaml", {"pipeline": {"name": "x"}})

        with pytest.raises(ValidationError) as exc_info:
            self.config_manager.load_config(str(path))

        assert any("stages" in error for error in exc_info.value.errors)

    @patch.dict(os.environ, {"SONAR_TOKEN": "s3cret", "IMAGE_NAME": "acme/app"})
    def test_environment_variable_substitution(self):
        """Test ${VAR}, ${VAR:default} and $VAR substitution."""
        raw = {
            "token": "${SONAR_TOKEN}",
            "fallback": "${MISSING_VAR:default-value}",
            "simple": "$IMAGE_NAME:latest",
            "unknown": "$NOT_SET_ANYWHERE",
            "nested": [{"value": "${IMAGE_NAME}"}],
            "number": 3,
        }

        resolved = self.config_manager.resolve_variables(raw)

        assert resolved["token"] == "s3cret"
        assert resolved["fallback"] == "default-value"
        assert resolved["simple"] == "acme/app:latest"
        assert resolved["unknown"] == "$NOT_SET_ANYWHERE"
        assert resolved["nested"][0]["value"] == "acme/app"
        assert resolved["number"] == 3

    def test_validate_schema_unknown_adapter(self):
        """Test unknown adapter types are reported as errors."""
        config = minimal_config(stages=[{"id": "x", "adapter": "ansible"}])

        result = self.config_manager.validate_schema(config)

        assert not result.valid
        assert any("unknown adapter type 'ansible'" in error for error in result.errors)

    def test_validate_schema_adapter_parameters(self):
        """Test adapter parameter problems are reported as errors."""
        config = minimal_config(stages=[{"id": "build", "adapter": "docker", "parameters": {}}])

        result = self.config_manager.validate_schema(config)

        assert not result.valid
        assert any("image is required" in error for error in result.errors)

    def test_validate_schema_warnings(self):
        """Test advisory warnings for risky configurations."""
        config = minimal_config(
            settings={"credentials": {"SONAR_TOKEN": ""}},
            stages=[{"id": "scan", "adapter": "trivy-fs"}],
        )

        result = self.config_manager.validate_schema(config)

        assert result.valid
        assert any("No notification channels" in w for w in result.warnings)
        assert any("scan has no gate" in w for w in result.warnings)
        assert any("SONAR_TOKEN is empty" in w for w in result.warnings)
        assert any("no timeout" in w for w in result.warnings)

    def test_default_config_is_valid(self):
        """Test the init template validates and builds."""
        default = self.config_manager.get_default_config()

        result = self.config_manager.validate_schema(default)
        assert result.valid, result.errors

        graph = self.config_manager.build_graph(result.config)
        assert graph.validate() == ["provision", "quality", "scan-fs", "build", "scan-image", "deploy"]
        assert graph.execution_levels() == [
            ["provision"], ["quality", "scan-fs"], ["build"], ["scan-image"], ["deploy"]
        ]

    def test_build_graph(self):
        """Test adapters, gates and options flow into the stage graph."""
        config = PipelineConfig(**minimal_config(stages=[
            {"id": "build", "adapter": "docker", "parameters": {"image": "acme/app"}, "timeout": 600},
            {"id": "scan-image", "adapter": "trivy-image", "depends_on": ["build"],
             "inputs": {"image": "build.image"},
             "gate": {"max_counts": {"CRITICAL": 0}, "blocking": False}, "allow_failure": True},
        ]))

        graph = self.config_manager.build_graph(config)

        build = graph.get("build")
        assert isinstance(build.adapter, DockerBuildAdapter)
        assert build.timeout == 600

        scan = graph.get("scan-image")
        assert isinstance(scan.adapter, TrivyImageAdapter)
        assert scan.inputs == {"image": "build.image"}
        assert scan.gate.name == "scan-image-gate"
        assert scan.gate.max_counts == {Severity.CRITICAL: 0}
        assert scan.gate.blocking is False
        assert scan.allow_failure is True

    def test_build_graph_out_of_order_declaration(self):
        """Test stages may be declared before their dependencies."""
        config = PipelineConfig(**minimal_config(stages=[
            {"id": "deploy", "adapter": "command", "depends_on": ["build"],
             "parameters": {"command": "make deploy"}},
            {"id": "build", "adapter": "command", "parameters": {"command": "make build"}},
        ]))

        assert self.config_manager.build_graph(config).validate() == ["build", "deploy"]

    def test_build_graph_errors(self):
        """Test graph errors from configuration."""
        dangling = PipelineConfig(**minimal_config(stages=[
            {"id": "deploy", "adapter": "command", "depends_on": ["ghost"],
             "parameters": {"command": "true"}},
        ]))
        with pytest.raises(UnknownDependencyError):
            self.config_manager.build_graph(dangling)

        cyclic = PipelineConfig(**minimal_config(stages=[
            {"id": "a", "adapter": "command", "depends_on": ["b"], "parameters": {"command": "true"}},
            {"id": "b", "adapter": "command", "depends_on": ["a"], "parameters": {"command": "true"}},
        ]))
        with pytest.raises(CycleDetectedError):
            self.config_manager.build_graph(cyclic)

        unknown = PipelineConfig(**minimal_config(stages=[{"id": "x", "adapter": "ansible"}]))
        with pytest.raises(ConfigurationError, match="unknown adapter type"):
            self.config_manager.build_graph(unknown)

        invalid = PipelineConfig(**minimal_config(stages=[{"id": "x", "adapter": "command"}]))
        with pytest.raises(ConfigurationError, match="command is required"):
            self.config_manager.build_graph(invalid)

    def test_build_notifier(self):
        """Test notification channels from configuration."""
        config = PipelineConfig(**minimal_config(notifications={
            "channels": [
                {"type": "slack", "webhook_url": "https://hooks.slack.com/x", "channel": "#ci"},
                {"type": "log", "name": "audit"},
            ],
            "include_stages": False,
        }))

        notifier = self.config_manager.build_notifier(config)

        assert isinstance(notifier.channels[0], SlackChannel)
        assert notifier.channels[0].name == "slack"
        assert notifier.channels[0].channel == "#ci"
        assert isinstance(notifier.channels[1], LogChannel)
        assert notifier.channels[1].name == "audit"
        assert notifier.include_stages is False

    def test_build_executor_and_settings(self):
        """Test executor and settings assembly."""
        config = PipelineConfig(**minimal_config(
            executor={"max_workers": 3, "default_timeout": 120, "run_log_dir": self.temp_dir},
            settings={"credentials": {"TOKEN": "abc"}, "workdir": "/src"},
        ))

        executor = self.config_manager.build_executor(config)
        settings = self.config_manager.build_settings(config)

        assert isinstance(executor, PipelineExecutor)
        assert executor.max_workers == 3
        assert executor.default_timeout == 120
        assert executor.run_log.directory == Path(self.temp_dir)
        assert self.config_manager.build_executor(config, max_workers=1).max_workers == 1
        assert settings.credential("TOKEN") == "abc"
        assert settings.workdir == "/src"

    def test_save_config_roundtrip(self):
        """Test saving and reloading configuration."""
        config = PipelineConfig(**self.config_manager.get_default_config())
        output = Path(self.temp_dir) / "out" / "pipeline.yaml"

        self.config_manager.save_config(config, str(output))
        reloaded = self.config_manager.load_config(str(output), validate=False)

        assert reloaded.pipeline.name == config.pipeline.name
        assert [s.id for s in reloaded.stages] == [s.id for s in config.stages]
