"""
Initial Secret Extraction

Strategies for obtaining a service's bootstrap credential: reading the
password file a service writes on first start, or checking that its
documented default login still works.
"""

import shlex
import time
from typing import Callable, Iterable, List, Optional

import structlog

from .channels.base import RemoteExecutionChannel
from .errors import ChannelError, ExtractionError, ExtractionFailure, is_retryable_error
from .httpclient import HttpResponse, ServiceClient
from .models import CommandResult, InitialSecret
from .polling import retry_once
from .sentinels import contains_sentinel

logger = structlog.get_logger(__name__)

CONTAINER_RUNTIMES = ("docker", "kubectl", "none")


def in_container(command: str, runtime: str = "docker", container: Optional[str] = None,
                 namespace: Optional[str] = None) -> str:
    """
    Wrap a shell command so it runs inside the service's container.

    Args:
        command: Command to run inside the container
        runtime: ``docker``, ``kubectl`` or ``none`` (host filesystem)
        container: Container name filter (docker) or workload name (kubectl)
        namespace: Kubernetes namespace for ``kubectl``

    Returns:
        Command line to run on the host
    """
    if runtime == "none" or not container:
        return command

    if runtime == "docker":
        selector = shlex.quote(f"name={container}")
        return f"docker exec $(docker ps -qf {selector} | head -n 1) sh -c {shlex.quote(command)}"

    if runtime == "kubectl":
        workload = container if '/' in container else f"deploy/{container}"
        ns = f"-n {shlex.quote(namespace)} " if namespace else ""
        return f"kubectl exec {ns}{shlex.quote(workload)} -- sh -c {shlex.quote(command)}"

    raise ValueError(f"Unsupported container runtime: {runtime}")


def usable_secret(value: str) -> bool:
    return bool(value) and not contains_sentinel(value)


class FileReadExtractor:
    """Reads a generated password file, falling back to a filesystem search."""

    def __init__(self, service: str, primary_path: str, file_name: Optional[str] = None,
                 search_roots: Iterable[str] = (), username: str = "admin",
                 runtime: str = "docker", container: Optional[str] = None,
                 namespace: Optional[str] = None, timeout: float = 30.0,
                 retry_delay: float = 2.0, sleep: Callable[[float], object] = time.sleep):
        self.service = service
        self.primary_path = primary_path
        self.file_name = file_name or primary_path.rsplit('/', 1)[-1]
        self.search_roots: List[str] = list(search_roots)
        self.username = username
        self.runtime = runtime
        self.container = container
        self.namespace = namespace
        self.timeout = timeout
        self.retry_delay = retry_delay
        self._sleep = sleep
        self.logger = logger.bind(service=service)

    def _run(self, channel: RemoteExecutionChannel, command: str) -> CommandResult:
        wrapped = in_container(command, self.runtime, self.container, self.namespace)
        try:
            return retry_once(
                lambda: channel.execute(wrapped, timeout=self.timeout),
                is_retryable_error,
                delay=self.retry_delay,
                sleep=self._sleep,
                description=f"{self.service}:extract"
            )
        except ChannelError as e:
            raise ExtractionError(
                f"Remote command failed while reading secret: {e.message}",
                kind=ExtractionFailure.COMMAND_FAILED,
                service=self.service
            )

    def _read(self, channel: RemoteExecutionChannel, path: str) -> Optional[str]:
        result = self._run(channel, f"cat {shlex.quote(path)}")
        if not result.ok:
            return None
        value = result.stdout.strip()
        if not usable_secret(value):
            self.logger.warning("Secret file content unusable", path=path)
            return None
        return value

    def _search(self, channel: RemoteExecutionChannel) -> List[str]:
        if not self.search_roots:
            return []
        roots = ' '.join(shlex.quote(root) for root in self.search_roots)
        # find exits non-zero when any root is missing, so only stdout matters
        result = self._run(
            channel,
            f"find {roots} -type f -name {shlex.quote(self.file_name)} 2>/dev/null"
        )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def extract(self, channel: RemoteExecutionChannel) -> InitialSecret:
        """
        Read the bootstrap password.

        Raises:
            ExtractionError: NOT_FOUND if neither the primary path nor the
                search located a usable file, COMMAND_FAILED if the channel
                failed twice
        """
        password = self._read(channel, self.primary_path)
        if password is not None:
            self.logger.info("Bootstrap secret read", path=self.primary_path)
            return InitialSecret(self.username, password, source="file")

        self.logger.info("Primary secret path absent, searching",
                         path=self.primary_path, roots=self.search_roots)

        for path in self._search(channel):
            password = self._read(channel, path)
            if password is not None:
                self.logger.info("Bootstrap secret found by search", path=path)
                return InitialSecret(self.username, password, source="search")

        raise ExtractionError(
            f"No {self.file_name} found at {self.primary_path} or under the search roots",
            kind=ExtractionFailure.NOT_FOUND,
            service=self.service,
            path=self.primary_path
        )


class DefaultCredentialExtractor:
    """Assumes a documented default login and checks it with one request."""

    def __init__(self, service: str, client_factory: Callable[[], ServiceClient],
                 username: str, password: str, check_path: str,
                 accept: Optional[Callable[[HttpResponse], bool]] = None,
                 retry_delay: float = 2.0, sleep: Callable[[float], object] = time.sleep):
        self.service = service
        self.client_factory = client_factory
        self.username = username
        self.password = password
        self.check_path = check_path
        self.accept = accept or (lambda response: response.status_code == 200)
        self.retry_delay = retry_delay
        self._sleep = sleep

    def extract(self, channel: Optional[RemoteExecutionChannel] = None) -> InitialSecret:
        """
        Raises:
            ExtractionError: DEFAULT_REJECTED if the service refuses the
                default login, COMMAND_FAILED if it could not be asked
        """
        client = self.client_factory().configure_auth({
            'type': 'basic', 'username': self.username, 'password': self.password
        })
        try:
            response = retry_once(
                lambda: client.get(self.check_path),
                is_retryable_error,
                delay=self.retry_delay,
                sleep=self._sleep,
                description=f"{self.service}:default-login"
            )
        except ChannelError as e:
            raise ExtractionError(
                f"Could not check default credentials: {e.message}",
                kind=ExtractionFailure.COMMAND_FAILED,
                service=self.service
            )
        finally:
            client.close()

        if not self.accept(response):
            raise ExtractionError(
                "Default credentials were rejected",
                kind=ExtractionFailure.DEFAULT_REJECTED,
                service=self.service,
                status_code=response.status_code
            )

        logger.info("Default credentials accepted", service=self.service)
        return InitialSecret(self.username, self.password, source="default")
