"""
HTTP Readiness Handler

For services that are only waited on: they answer HTTP once started but
hand out no credential, such as Kafka Manager or a monitoring page.
"""

from .base import ServiceHandler


class HttpReadinessHandler(ServiceHandler):
    """Any HTTP service: readiness only, no credential."""

    service_type = "http"
    description = "Generic HTTP readiness check"
    secret_kind = None

    readiness_defaults = {
        'path': '/',
        'accepted_status': [200, 302, 401],
        'max_attempts': 30,
        'interval': 10,
    }
