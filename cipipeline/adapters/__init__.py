"""Stage adapters for the external tools a CI/CD pipeline drives."""

from ..core.registry import adapter_registry
from .base import CommandAdapter
from .docker import DockerBuildAdapter
from .kubernetes import KubernetesDeployAdapter
from .shell import ShellCommandAdapter
from .sonarqube import SonarQubeAdapter
from .terraform import TerraformAdapter
from .trivy import TrivyFilesystemAdapter, TrivyImageAdapter, load_trivy_report, parse_trivy_report

BUILTIN_ADAPTERS = [
    TerraformAdapter,
    SonarQubeAdapter,
    TrivyFilesystemAdapter,
    TrivyImageAdapter,
    DockerBuildAdapter,
    KubernetesDeployAdapter,
    ShellCommandAdapter,
]

for _adapter_class in BUILTIN_ADAPTERS:
    adapter_registry.register_adapter(_adapter_class.adapter_type, _adapter_class)

__all__ = [
    "CommandAdapter",
    "DockerBuildAdapter",
    "KubernetesDeployAdapter",
    "ShellCommandAdapter",
    "SonarQubeAdapter",
    "TerraformAdapter",
    "TrivyFilesystemAdapter",
    "TrivyImageAdapter",
    "load_trivy_report",
    "parse_trivy_report",
    "BUILTIN_ADAPTERS",
]
