"""
Credential Harvester

Waits for freshly provisioned services (Jenkins, Nexus, Grafana and
friends) to come up, extracts or mints their credentials over a remote
execution channel, verifies them, and prints them as key/value lines.
"""

__version__ = "1.0.0"
__author__ = "Platform Team"

from .engine import Engine, RunResult
from .registry import ServiceRegistry

__all__ = ["Engine", "RunResult", "ServiceRegistry"]
