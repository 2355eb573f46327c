"""
Docker Registry Handler

The registry runs without authentication, so only its readiness is
reported.
"""

from .http_readiness import HttpReadinessHandler


class RegistryHandler(HttpReadinessHandler):
    """Docker registry: readiness only, no credential."""

    service_type = "registry"
    description = "Docker registry readiness"
    default_port = 5000

    readiness_defaults = {
        'path': '/v2/',
        'accepted_status': [200, 401],
        'max_attempts': 30,
        'interval': 10,
    }
