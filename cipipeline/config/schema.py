"""Configuration schema definitions using Pydantic models."""

import re
from typing import Dict, List, Optional, Any, Literal
from pydantic import BaseModel, Field, field_validator

from ..core.interfaces import Severity


STAGE_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')
SEVERITY_NAMES = {severity.value for severity in Severity}


def _check_severity(value: str) -> str:
    normalized = str(value).strip().upper()
    if normalized not in SEVERITY_NAMES:
        raise ValueError(f"Unknown severity '{value}', expected one of {sorted(SEVERITY_NAMES)}")
    return normalized


class PipelineMetadata(BaseModel):
    """Pipeline metadata."""
    name: str = Field(..., description="Pipeline name")
    description: Optional[str] = Field(None, description="Pipeline description")
    tags: List[str] = Field(default_factory=list, description="Pipeline tags")


class ExecutorConfig(BaseModel):
    """Executor configuration."""
    max_workers: int = Field(4, ge=1, le=64, description="Maximum concurrent stage invocations")
    default_timeout: Optional[float] = Field(None, gt=0, description="Default stage timeout in seconds")
    run_log_dir: Optional[str] = Field(".cipipeline/runs", description="Directory for run records")
    error_log_path: Optional[str] = Field(None, description="JSON-lines adapter error log")


class SettingsConfig(BaseModel):
    """Credentials and variables passed explicitly to each adapter."""
    credentials: Dict[str, str] = Field(default_factory=dict, description="Named secrets, usually ${ENV} references")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Free-form pipeline variables")
    workdir: str = Field(".", description="Base directory for relative adapter paths")


class GateConfig(BaseModel):
    """Gate policy applied to a stage's findings."""
    name: Optional[str] = Field(None, description="Policy name")
    fail_on: Optional[str] = Field(None, description="Fail when any finding is at or above this severity")
    max_counts: Dict[str, int] = Field(default_factory=dict, description="Maximum findings per severity")
    categories: List[str] = Field(default_factory=list, description="Finding categories the gate considers")
    required_artifacts: List[str] = Field(default_factory=list, description="Artifacts the stage must produce")
    blocking: bool = Field(True, description="Whether a gate failure blocks dependent stages")

    @field_validator('fail_on')
    @classmethod
    def validate_fail_on(cls, v):
        return _check_severity(v) if v is not None else v

    @field_validator('max_counts')
    @classmethod
    def validate_max_counts(cls, v):
        checked = {}
        for severity, limit in v.items():
            if limit < 0:
                raise ValueError(f"max_counts for {severity} must be non-negative")
            checked[_check_severity(severity)] = limit
        return checked


class StageConfig(BaseModel):
    """A single pipeline stage."""
    id: str = Field(..., description="Stage identifier, unique within the pipeline")
    adapter: str = Field(..., description="Registered adapter type")
    depends_on: List[str] = Field(default_factory=list, description="Stages that must finish first")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Adapter parameters")
    inputs: Dict[str, str] = Field(default_factory=dict, description="Input name -> '<stage>.<artifact>'")
    gate: Optional[GateConfig] = Field(None, description="Gate policy")
    timeout: Optional[float] = Field(None, gt=0, description="Stage timeout in seconds")
    allow_failure: bool = Field(False, description="Failures do not block dependent stages")
    enabled: bool = Field(True, description="Disabled stages are skipped without blocking dependents")
    description: Optional[str] = Field(None, description="Stage description")

    @field_validator('id')
    @classmethod
    def validate_id(cls, v):
        if not STAGE_ID_PATTERN.match(v):
            raise ValueError(f"Stage id '{v}' may only contain letters, digits, '-' and '_'")
        return v

    @field_validator('inputs')
    @classmethod
    def validate_inputs(cls, v):
        for name, address in v.items():
            stage_id, sep, artifact = address.partition('.')
            if not sep or not stage_id or not artifact:
                raise ValueError(f"Input '{name}' must reference '<stage>.<artifact>', got '{address}'")
        return v


class ChannelConfig(BaseModel):
    """Notification channel configuration."""
    type: Literal["slack", "webhook", "log"] = Field(..., description="Channel type")
    name: Optional[str] = Field(None, description="Channel name (defaults to the type)")
    webhook_url: Optional[str] = Field(None, description="Webhook URL for slack/webhook channels")
    channel: Optional[str] = Field(None, description="Slack channel override")
    username: Optional[str] = Field(None, description="Slack username")
    headers: Dict[str, str] = Field(default_factory=dict, description="Extra HTTP headers")
    timeout: float = Field(10, gt=0, description="HTTP timeout in seconds")
    enabled: bool = Field(True, description="Enable this channel")


class NotificationConfig(BaseModel):
    """Notification configuration."""
    channels: List[ChannelConfig] = Field(default_factory=list, description="Delivery channels")
    include_stages: bool = Field(True, description="Include per-stage status in notifications")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field("INFO", description="Logging level")
    format: str = Field("%(asctime)s - %(name)s - %(levelname)s - %(message)s", description="Log format")
    file_path: Optional[str] = Field(None, description="Log file path")
    max_file_size: str = Field("10MB", description="Maximum log file size")
    backup_count: int = Field(5, ge=1, description="Number of backup log files")

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        if v.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid logging level: {v}")
        return v.upper()


class PipelineConfig(BaseModel):
    """Main pipeline configuration."""
    pipeline: PipelineMetadata = Field(..., description="Pipeline metadata")
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig, description="Executor configuration")
    settings: SettingsConfig = Field(default_factory=SettingsConfig, description="Adapter settings")
    stages: List[StageConfig] = Field(..., min_length=1, description="Pipeline stages")
    notifications: NotificationConfig = Field(default_factory=NotificationConfig, description="Notifications")
    logging: LoggingConfig = Field(default_factory=LoggingConfig, description="Logging configuration")

    model_config = {
        "extra": "forbid",
        "validate_assignment": True,
    }


class ValidationError(Exception):
    """Configuration validation error."""

    def __init__(self, message: str, errors: List[Any] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)


class ValidationResult(BaseModel):
    """Result of configuration validation."""
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    config: Optional[PipelineConfig] = None
