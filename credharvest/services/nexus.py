"""
Nexus Repository Handler

Reads the admin password Nexus generates on first start.
"""

from typing import Optional

from .base import ServiceHandler
from ..channels.base import RemoteExecutionChannel
from ..models import InitialSecret


class NexusHandler(ServiceHandler):
    """Nexus repository manager: file-read admin password, verified with Basic auth."""

    service_type = "nexus"
    description = "Nexus repository manager admin password"
    default_port = 8081
    secret_kind = "password"

    readiness_defaults = {
        'path': '/service/rest/v1/status',
        'accepted_status': [200],
        'max_attempts': 60,
        'interval': 10,
    }

    defaults = {
        'username': 'admin',
        'runtime': 'docker',
        'container': 'nexus',
        'password_file': '/nexus-data/admin.password',
        'search_roots': ['/nexus-data', '/opt/sonatype-work'],
        'verify_path': '/service/rest/v1/status/check',
    }

    parameters = {
        **ServiceHandler.parameters,
        'runtime': {'type': str, 'description': 'Container runtime: docker, kubectl or none'},
        'container': {'type': str, 'description': 'Container or workload name'},
        'namespace': {'type': str, 'description': 'Kubernetes namespace'},
        'password_file': {'type': str, 'description': 'Generated admin password file'},
        'password_file_name': {'type': str, 'description': 'File name searched for as a fallback'},
        'search_roots': {'type': list, 'description': 'Directories searched as a fallback'},
        'verify_path': {'type': str, 'description': 'Authenticated endpoint used to verify'},
    }

    def extract_initial_secret(self, channel: RemoteExecutionChannel) -> InitialSecret:
        return self.file_extractor().extract(channel)

    def verify(self, username: Optional[str], credential: str,
               kind: Optional[str] = None) -> None:
        # /status answers anonymously; /status/check needs a valid login
        self.verify_request(self.config['verify_path'],
                            self.basic_auth(username, credential))
