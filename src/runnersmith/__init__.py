"""
RunnerSmith - Azure Self-Hosted Runner Deployment Builder

Generates ARM templates that provision a Linux VM in an Azure subnet and
bootstrap a GitHub Actions self-hosted runner on first boot, from a
declarative YAML configuration file.
"""

__version__ = "1.0.0"
__author__ = "RunnerSmith Contributors"
__license__ = "GPL-3.0"

from .config_loader import ConfigLoader
from .validator import ConfigValidator, check_template_references
from .bootstrap import BootstrapScriptBuilder
from .orchestrator import Orchestrator
from .template_builder import TemplateBuilder

__all__ = [
    "ConfigLoader",
    "ConfigValidator",
    "check_template_references",
    "BootstrapScriptBuilder",
    "Orchestrator",
    "TemplateBuilder",
]
