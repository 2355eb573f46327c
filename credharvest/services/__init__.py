"""
Services Package

Credential handlers for the services stood up on a deployment host.
"""

from .base import ServiceHandler
from .docker_registry import RegistryHandler
from .grafana import GrafanaHandler
from .http_readiness import HttpReadinessHandler
from .jenkins import JenkinsHandler
from .nexus import NexusHandler
from .sonarqube import SonarQubeHandler

__all__ = [
    "ServiceHandler",
    "GrafanaHandler",
    "HttpReadinessHandler",
    "JenkinsHandler",
    "NexusHandler",
    "RegistryHandler",
    "SonarQubeHandler"
]
