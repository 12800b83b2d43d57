"""
cipipeline - DAG-based CI/CD pipeline orchestration with gated stages.
"""

__version__ = "0.1.0"
__author__ = "cipipeline Team"

from .core import PipelineExecutor, StageGraph
from .config import ConfigManager

__all__ = ["PipelineExecutor", "StageGraph", "ConfigManager"]
