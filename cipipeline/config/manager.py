"""Configuration manager: loading, validation and pipeline assembly."""

import os
import yaml
import json
import logging
from typing import Dict, Any, Optional, List
from pathlib import Path
import re

from pydantic import ValidationError as PydanticValidationError
from .schema import PipelineConfig, ValidationResult, ValidationError
from ..core.errors import ConfigurationError
from ..core.executor import PipelineExecutor
from ..core.gates import GatePolicy
from ..core.graph import StageGraph
from ..core.interfaces import PipelineSettings
from ..core.registry import AdapterRegistry, adapter_registry
from ..core.run_log import RunLog
from ..notifications import Notifier, create_channel


SCAN_ADAPTERS = {"trivy-fs", "trivy-image", "sonarqube"}


class ConfigManager:
    """Manages pipeline configuration loading, validation, and variable substitution."""

    def __init__(self, registry: Optional[AdapterRegistry] = None):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.registry = registry or adapter_registry
        self._config_cache: Dict[str, PipelineConfig] = {}

        # Built-in adapters register themselves on import
        from .. import adapters  # noqa: F401

    def load_config(self, config_path: str, validate: bool = True) -> PipelineConfig:
        """
        Load and validate configuration from file.

        Args:
            config_path: Path to configuration file (YAML or JSON)
            validate: Whether to validate the configuration

        Returns:
            PipelineConfig: Validated configuration object

        Raises:
            ValidationError: If configuration is invalid
            FileNotFoundError: If config file doesn't exist
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        cache_key = str(config_path.absolute())
        if cache_key in self._config_cache:
            self.logger.debug(f"Using cached configuration for {config_path}")
            return self._config_cache[cache_key]

        try:
            raw_config = self._load_raw_config(config_path)
            if not isinstance(raw_config, dict):
                raise ValidationError(f"Configuration root must be a mapping: {config_path}")

            resolved_config = self.resolve_variables(raw_config)

            if validate:
                validation_result = self.validate_schema(resolved_config)
                if not validation_result.valid:
                    raise ValidationError(
                        f"Configuration validation failed: {'; '.join(validation_result.errors)}",
                        validation_result.errors
                    )
                for warning in validation_result.warnings:
                    self.logger.warning(warning)
                config = validation_result.config
            else:
                config = PipelineConfig(**resolved_config)

            self._config_cache[cache_key] = config

            self.logger.info(f"Successfully loaded configuration from {config_path}")
            return config

        except Exception as e:
            self.logger.error(f"Failed to load configuration from {config_path}: {str(e)}")
            raise

    def _load_raw_config(self, config_path: Path) -> Dict[str, Any]:
        """Load raw configuration from file."""
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                if config_path.suffix.lower() in ['.yaml', '.yml']:
                    return yaml.safe_load(f)
                elif config_path.suffix.lower() == '.json':
                    return json.load(f)
                else:
                    raise ValueError(f"Unsupported configuration file format: {config_path.suffix}")
        except yaml.YAMLError as e:
            raise ValidationError(f"Invalid YAML syntax: {str(e)}")
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON syntax: {str(e)}")

    def validate_schema(self, config: Dict[str, Any]) -> ValidationResult:
        """
        Validate configuration against schema.

        Args:
            config: Raw configuration dictionary

        Returns:
            ValidationResult: Validation result with errors and warnings
        """
        errors = []
        warnings = []

        try:
            pipeline_config = PipelineConfig(**config)
        except PydanticValidationError as e:
            for error in e.errors():
                field_path = " -> ".join(str(loc) for loc in error['loc'])
                errors.append(f"{field_path}: {error['msg']}")
            return ValidationResult(valid=False, errors=errors, warnings=warnings, config=None)
        except TypeError as e:
            errors.append(f"Unexpected validation error: {str(e)}")
            return ValidationResult(valid=False, errors=errors, warnings=warnings, config=None)

        errors.extend(self._check_adapters(pipeline_config))
        warnings.extend(self._perform_custom_validations(pipeline_config))

        return ValidationResult(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            config=pipeline_config if not errors else None
        )

    def _check_adapters(self, config: PipelineConfig) -> List[str]:
        """Check adapter types exist and their parameters are acceptable."""
        errors = []
        for stage in config.stages:
            if self.registry.get_adapter_class(stage.adapter) is None:
                errors.append(f"stages -> {stage.id}: unknown adapter type '{stage.adapter}'")
                continue
            adapter = self.registry.create_adapter(stage.adapter, **stage.parameters)
            for problem in adapter.validate_parameters():
                errors.append(f"stages -> {stage.id} -> parameters: {problem}")
        return errors

    def _perform_custom_validations(self, config: PipelineConfig) -> List[str]:
        """Perform additional custom validations and return warnings."""
        warnings = []

        if not config.notifications.channels:
            warnings.append("No notification channels configured. Run status will only be logged.")

        for stage in config.stages:
            if stage.adapter in SCAN_ADAPTERS and stage.gate is None:
                warnings.append(
                    f"Stage {stage.id} has no gate: its findings are reported but never block."
                )
            if stage.timeout is None and config.executor.default_timeout is None:
                warnings.append(f"Stage {stage.id} has no timeout.")

        for name, value in config.settings.credentials.items():
            if not value:
                warnings.append(f"Credential {name} is empty (unset environment variable?)")

        for channel in config.notifications.channels:
            if channel.type in ("slack", "webhook") and not channel.webhook_url:
                warnings.append(f"Notification channel {channel.name or channel.type} has no webhook_url.")

        return warnings

    def resolve_variables(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Resolve environment variables and other substitutions in configuration.

        Args:
            config: Raw configuration dictionary

        Returns:
            Dict[str, Any]: Configuration with resolved variables
        """
        def resolve_value(value):
            if isinstance(value, str):
                return self._substitute_variables(value)
            elif isinstance(value, dict):
                return {k: resolve_value(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [resolve_value(item) for item in value]
            else:
                return value

        return resolve_value(config)

    def _substitute_variables(self, value: str) -> str:
        """
        Substitute environment variables in string values.

        Supports:
        - ${VAR_NAME} or ${VAR_NAME:default_value}
        - $VAR_NAME
        """
        pattern1 = re.compile(r'\$\{([^}:]+)(?::([^}]*))?\}')

        def replace_match(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else ""
            return os.environ.get(var_name, default_value)

        result = pattern1.sub(replace_match, value)

        pattern2 = re.compile(r'\$([A-Za-z_][A-Za-z0-9_]*)')

        def replace_simple(match):
            var_name = match.group(1)
            return os.environ.get(var_name, f"${var_name}")  # Keep original if not found

        return pattern2.sub(replace_simple, result)

    def save_config(self, config: PipelineConfig, output_path: str, format: str = "yaml") -> None:
        """
        Save configuration to file.

        Args:
            config: Configuration to save
            output_path: Output file path
            format: Output format ('yaml' or 'json')
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = config.model_dump(mode='json', exclude_none=True)

        try:
            with open(output_path, 'w', encoding='utf-8') as f:
                if format.lower() == 'yaml':
                    yaml.dump(config_dict, f, default_flow_style=False, indent=2, sort_keys=False)
                elif format.lower() == 'json':
                    json.dump(config_dict, f, indent=2)
                else:
                    raise ValueError(f"Unsupported format: {format}")

            self.logger.info(f"Configuration saved to {output_path}")

        except Exception as e:
            self.logger.error(f"Failed to save configuration to {output_path}: {str(e)}")
            raise

    def clear_cache(self) -> None:
        """Clear the configuration cache."""
        self._config_cache.clear()
        self.logger.debug("Configuration cache cleared")

    def build_graph(self, config: PipelineConfig) -> StageGraph:
        """
        Instantiate adapters and assemble a validated stage graph.

        Raises:
            ConfigurationError: Unknown adapter type or invalid parameters
            GraphError: Duplicate stages, unknown dependencies or cycles
        """
        graph = StageGraph()

        for stage in config.stages:
            try:
                adapter = self.registry.create_adapter(stage.adapter, **stage.parameters)
            except KeyError:
                raise ConfigurationError(f"Stage {stage.id}: unknown adapter type '{stage.adapter}'",
                                         {"stage_id": stage.id})

            problems = adapter.validate_parameters()
            if problems:
                raise ConfigurationError(f"Stage {stage.id}: {'; '.join(problems)}",
                                         {"stage_id": stage.id, "problems": problems})

            gate = None
            if stage.gate is not None:
                gate = GatePolicy.from_dict(stage.gate.model_dump(), name=f"{stage.id}-gate")

            graph.add_stage(
                stage.id,
                depends_on=stage.depends_on,
                adapter=adapter,
                gate=gate,
                check_dependencies=False,
                timeout=stage.timeout,
                inputs=dict(stage.inputs),
                allow_failure=stage.allow_failure,
                enabled=stage.enabled,
                description=stage.description,
            )

        graph.validate()
        return graph

    def build_settings(self, config: PipelineConfig) -> PipelineSettings:
        """Explicit settings struct handed to every adapter invocation."""
        return PipelineSettings(
            credentials=dict(config.settings.credentials),
            variables=dict(config.settings.variables),
            workdir=config.settings.workdir,
        )

    def build_notifier(self, config: PipelineConfig) -> Notifier:
        channels = []
        for channel_config in config.notifications.channels:
            options = channel_config.model_dump(exclude_none=True)
            channel_type = options.pop("type")
            name = options.pop("name", None) or channel_type
            channels.append(create_channel(channel_type, name, options))
        return Notifier(channels, include_stages=config.notifications.include_stages)

    def build_executor(self, config: PipelineConfig, max_workers: Optional[int] = None,
                       notifier: Optional[Notifier] = None) -> PipelineExecutor:
        run_log = RunLog(config.executor.run_log_dir) if config.executor.run_log_dir else None
        return PipelineExecutor(
            max_workers=max_workers or config.executor.max_workers,
            default_timeout=config.executor.default_timeout,
            notifier=notifier or self.build_notifier(config),
            run_log=run_log,
            error_log_path=config.executor.error_log_path,
        )

    def get_default_config(self) -> Dict[str, Any]:
        """Get a default configuration template."""
        return {
            "pipeline": {
                "name": "app-delivery",
                "description": "Provision, analyse, scan, build and deploy",
                "tags": ["ci", "cd"]
            },
            "executor": {
                "max_workers": 2,
                "default_timeout": 1800
            },
            "settings": {
                "credentials": {
                    "SONAR_TOKEN": "${SONAR_TOKEN}",
                    "DOCKERHUB_USERNAME": "${DOCKERHUB_USERNAME}",
                    "DOCKERHUB_TOKEN": "${DOCKERHUB_TOKEN}"
                }
            },
            "stages": [
                {
                    "id": "provision",
                    "adapter": "terraform",
                    "parameters": {"working_dir": "terraform", "outputs": ["endpoint"]}
                },
                {
                    "id": "quality",
                    "adapter": "sonarqube",
                    "depends_on": ["provision"],
                    "inputs": {"endpoint": "provision.endpoint"},
                    "parameters": {"project_key": "app"},
                    "gate": {"categories": ["quality_gate"], "fail_on": "HIGH", "blocking": False}
                },
                {
                    "id": "scan-fs",
                    "adapter": "trivy-fs",
                    "depends_on": ["provision"],
                    "parameters": {"path": "."},
                    "gate": {"fail_on": "CRITICAL", "blocking": False}
                },
                {
                    "id": "build",
                    "adapter": "docker",
                    "depends_on": ["quality", "scan-fs"],
                    "parameters": {"image": "example/app", "tag": "latest", "login": True}
                },
                {
                    "id": "scan-image",
                    "adapter": "trivy-image",
                    "depends_on": ["build"],
                    "inputs": {"image": "build.image"},
                    "gate": {"max_counts": {"CRITICAL": 0}}
                },
                {
                    "id": "deploy",
                    "adapter": "kubectl",
                    "depends_on": ["scan-image"],
                    "inputs": {"image": "build.image"},
                    "parameters": {
                        "manifests": ["k8s/deployment.yaml", "k8s/service.yaml"],
                        "deployment": "app",
                        "cluster": "app-cluster",
                        "region": "us-east-1"
                    }
                }
            ],
            "notifications": {
                "channels": [
                    {"type": "slack", "webhook_url": "${SLACK_WEBHOOK_URL}", "channel": "#deployments"}
                ]
            }
        }
