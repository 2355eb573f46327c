"""Shared fakes and fixtures for credharvest tests"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import pytest

from credharvest.channels.base import RemoteExecutionChannel
from credharvest.errors import ChannelError
from credharvest.models import CommandResult


class FakeResponse:
    """Just enough of requests.Response for the service client."""

    def __init__(self, status_code: int = 200, body: Any = None,
                 headers: Optional[Dict[str, str]] = None):
        self.status_code = status_code
        self.headers = dict(headers or {})
        if isinstance(body, (dict, list)):
            self.text = json.dumps(body)
            self.headers.setdefault('Content-Type', 'application/json')
        else:
            self.text = body or ""

    def json(self):
        return json.loads(self.text)


@dataclass
class FakeRequest:
    method: str
    path: str
    auth: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)
    json: Any = None
    data: Any = None

    @property
    def bearer(self) -> Optional[str]:
        value = self.headers.get('Authorization', '')
        return value[len('Bearer '):] if value.startswith('Bearer ') else None


class FakeServer:
    """Routes requests from any number of fake sessions.

    A route is a FakeResponse, a list of them (served in order, the last
    repeated) or a callable taking the FakeRequest.
    """

    def __init__(self):
        self.routes: Dict[tuple, Any] = {}
        self.requests: List[FakeRequest] = []

    def route(self, method: str, path: str, handler: Any) -> "FakeServer":
        self.routes[(method.upper(), path)] = handler
        return self

    def session(self) -> "FakeSession":
        return FakeSession(self)

    def calls(self, method: str, path: str) -> List[FakeRequest]:
        return [r for r in self.requests if r.method == method and r.path == path]

    def handle(self, request: FakeRequest) -> FakeResponse:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.path))
        if handler is None:
            return FakeResponse(404, "not found")
        if isinstance(handler, list):
            return handler.pop(0) if len(handler) > 1 else handler[0]
        if callable(handler):
            return handler(request)
        return handler


class FakeSession:
    """Stand-in for requests.Session that talks to a FakeServer."""

    def __init__(self, server: FakeServer):
        self.server = server
        self.auth = None
        self.headers: Dict[str, str] = {}
        self.verify = True
        self.closed = False

    def request(self, method, url, params=None, json=None, data=None,
                headers=None, **kwargs):
        merged = dict(self.headers)
        merged.update(headers or {})
        request = FakeRequest(
            method=method.upper(),
            path=urlparse(url).path,
            auth=self.auth,
            headers=merged,
            params=params or {},
            json=json,
            data=data
        )
        return self.server.handle(request)

    def get(self, url, **kwargs):
        return self.request('GET', url, **kwargs)

    def close(self):
        self.closed = True


class FakeChannel(RemoteExecutionChannel):
    """Channel answering commands from a list of (substring, result) pairs."""

    channel_type = "fake"

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 commands: Optional[List[tuple]] = None,
                 open_error: Optional[Exception] = None):
        super().__init__(config or {})
        self.commands = list(commands or [])
        self.open_error = open_error
        self.executed: List[str] = []
        self.closed = False

    def _connect(self) -> None:
        if self.open_error is not None:
            raise self.open_error

    def _disconnect(self) -> None:
        self.closed = True

    def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        self.executed.append(command)
        for needle, outcome in self.commands:
            if needle in command:
                if isinstance(outcome, Exception):
                    raise outcome
                if isinstance(outcome, str):
                    return CommandResult(stdout=outcome)
                return outcome
        return CommandResult(stderr="No such file or directory", exit_code=1)


class FakeClock:
    """Monotonic clock whose sleep just advances time."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> bool:
        self.sleeps.append(seconds)
        self.now += seconds
        return True


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel():
    return FakeChannel().open()


@pytest.fixture
def make_handler(server, clock):
    """Build a handler wired to the fake server and clock."""
    def factory(handler_class, **config):
        config.setdefault('name', handler_class.service_type)
        config.setdefault('base_url', f"http://{handler_class.service_type}.test")
        config.setdefault('retry_delay', 0)
        readiness = {'interval': 1, 'max_attempts': 3}
        readiness.update(config.pop('readiness', {}))
        config['readiness'] = readiness
        return handler_class(config, session_factory=server.session,
                             clock=clock, sleep=clock.sleep)
    return factory


def channel_error(message: str = "connection reset") -> ChannelError:
    return ChannelError(message, transport="fake", host="test")
