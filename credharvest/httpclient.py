"""
Service HTTP Client

Thin wrapper over a requests session for talking to a service's REST API
with Basic or Bearer authentication.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
import structlog

from .errors import ChannelError
from .models import ProbeResult

# Raw bodies kept for debugging are cut to this many characters
MAX_BODY_CHARS = 2000


@dataclass
class HttpResponse:
    """The parts of an HTTP response the handlers care about."""

    status_code: int
    text: str
    data: Any = None
    headers: Optional[Dict[str, str]] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class ServiceClient:
    """HTTP client bound to one service's base URL."""

    def __init__(self, base_url: str, timeout: float = 10.0,
                 session: Optional[requests.Session] = None,
                 verify_ssl: bool = True):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        self.session.verify = verify_ssl
        self.logger = structlog.get_logger(__name__).bind(base_url=self.base_url)

    def url(self, path: str) -> str:
        return self.base_url + '/' + path.lstrip('/')

    def configure_auth(self, auth_config: Dict[str, Any]) -> "ServiceClient":
        """Configure authentication for the session."""
        auth_type = auth_config.get('type', 'basic')

        if auth_type == 'basic':
            username = auth_config.get('username')
            password = auth_config.get('password')

            if username and password:
                self.session.auth = (username, password)

        elif auth_type == 'bearer':
            token = auth_config.get('token')

            if token:
                self.session.auth = None
                self.session.headers.update({'Authorization': f'Bearer {token}'})

        else:
            raise ValueError(f"Unsupported auth type: {auth_type}")

        self.logger.debug("Authentication configured", auth_type=auth_type)
        return self

    def request(self, method: str, path: str, **kwargs) -> HttpResponse:
        """
        Execute a request against the service.

        Returns:
            HttpResponse for any HTTP status

        Raises:
            ChannelError: If no HTTP response was received at all
        """
        url = self.url(path)
        kwargs.setdefault('timeout', self.timeout)

        self.logger.debug("HTTP request", method=method, path=path)

        try:
            response = self.session.request(method, url, **kwargs)
        except requests.exceptions.Timeout:
            raise ChannelError(
                f"Request timed out after {kwargs['timeout']} seconds",
                transport="http",
                host=url
            )
        except requests.exceptions.RequestException as e:
            raise ChannelError(
                f"Request failed: {e}",
                transport="http",
                host=url
            )

        return HttpResponse(
            status_code=response.status_code,
            text=response.text,
            data=self._parse_response(response),
            headers=dict(response.headers)
        )

    def get(self, path: str, **kwargs) -> HttpResponse:
        return self.request('GET', path, **kwargs)

    def post(self, path: str, **kwargs) -> HttpResponse:
        return self.request('POST', path, **kwargs)

    def delete(self, path: str, **kwargs) -> HttpResponse:
        return self.request('DELETE', path, **kwargs)

    def probe(self, path: str) -> ProbeResult:
        """Unauthenticated readiness probe; connection failures are not raised."""
        try:
            response = self.session.get(self.url(path), timeout=self.timeout,
                                        allow_redirects=False)
        except requests.exceptions.RequestException as e:
            return ProbeResult(error=str(e))

        return ProbeResult(status_code=response.status_code,
                           body=response.text[:MAX_BODY_CHARS])

    def _parse_response(self, response: requests.Response) -> Any:
        """Parse JSON bodies, fall back to None."""
        content_type = response.headers.get('Content-Type', '').lower()

        if 'json' in content_type or response.text.lstrip().startswith(('{', '[')):
            try:
                return response.json()
            except (json.JSONDecodeError, ValueError):
                return None

        return None

    def close(self) -> None:
        self.session.close()
