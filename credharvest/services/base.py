"""
Base Service Handler

Abstract base class for per-service credential acquisition. A handler
knows how to probe one kind of service for readiness, obtain its initial
secret, optionally mint a durable token, and verify the result. The
shared acquisition state machine lives in :meth:`ServiceHandler.acquire`.
"""

import shlex
import time
from abc import ABC
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import requests
import structlog

from ..channels.base import RemoteExecutionChannel
from ..errors import (AcquisitionCancelled, AcquisitionError, ChannelError,
                      ConfigurationError, ExtractionError, ExtractionFailure,
                      MintError, TimeoutError, VerificationError,
                      is_retryable_error)
from ..extraction import CONTAINER_RUNTIMES, DefaultCredentialExtractor, FileReadExtractor
from ..httpclient import MAX_BODY_CHARS, HttpResponse, ServiceClient
from ..loggingx import log_acquisition_completion
from ..models import (AcquisitionState, CredentialRecord, InitialSecret,
                      MintedToken, ProbeResult, ProbeSpec, Ready,
                      ServiceTarget, VerificationStatus)
from ..polling import Deadline, Poller, retry_once
from .. import sentinels

# Sentinel used when an unexpected error escapes a given stage
STAGE_SENTINELS = {
    AcquisitionState.PROVISIONING: sentinels.CHANNEL_FAILED,
    AcquisitionState.POLLING: sentinels.NOT_READY,
    AcquisitionState.SECRET_EXTRACTION: sentinels.EXTRACTION_FAILED,
    AcquisitionState.TOKEN_MINTING: sentinels.TOKEN_GENERATION_FAILED,
    AcquisitionState.VERIFICATION: sentinels.VERIFICATION_FAILED,
}

EXTRACTION_SENTINELS = {
    ExtractionFailure.NOT_FOUND: sentinels.CHECK_MANUALLY,
    ExtractionFailure.DEFAULT_REJECTED: sentinels.CREDENTIALS_CHECK_FAILED,
    ExtractionFailure.COMMAND_FAILED: sentinels.EXTRACTION_FAILED,
}


class ServiceHandler(ABC):
    """Abstract base class for service credential handlers."""

    # Handler metadata
    service_type: str = "base"
    description: str = "Base service handler"
    default_port: Optional[int] = None

    # "password", "token", or None for services without credentials
    secret_kind: Optional[str] = "password"
    mints_tokens: bool = False

    readiness_defaults: Dict[str, Any] = {}
    defaults: Dict[str, Any] = {}

    # Parameter specifications
    parameters: Dict[str, Dict[str, Any]] = {
        'name': {'type': str, 'description': 'Service name used in output keys'},
        'type': {'type': str, 'description': 'Handler type'},
        'base_url': {'type': str, 'description': 'Base URL of the service API'},
        'host': {'type': str, 'description': 'Host used when base_url is omitted'},
        'port': {'type': int, 'description': 'Port used with host, overriding the handler default'},
        'local_url': {'type': str, 'description': 'Service URL as seen from the host itself'},
        'username': {'type': str, 'description': 'Login name'},
        'readiness': {'type': dict, 'description': 'Readiness probe settings'},
        'request_timeout': {'type': (int, float), 'description': 'HTTP/command timeout in seconds'},
        'retry_delay': {'type': (int, float), 'description': 'Seconds before the single retry'},
        'verify_ssl': {'type': bool, 'description': 'Verify TLS certificates'},
    }
    required_parameters: List[str] = ['name']

    def __init__(self, config: Dict[str, Any],
                 session_factory: Optional[Callable[[], requests.Session]] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Optional[Callable[[float], object]] = None):
        """
        Initialize the handler with one service entry of the run configuration.

        Args:
            config: Service configuration dictionary
            session_factory: Builds the requests session for each client
            clock: Monotonic clock used to time polling
            sleep: Replaces deadline-aware sleeping, for tests
        """
        self.config = dict(self.defaults)
        self.config.update({k: v for k, v in config.items() if v is not None})
        self.name = self.config.get('name', self.service_type)
        self.logger = structlog.get_logger(
            f"{__name__}.{self.__class__.__name__}").bind(service=self.name)

        self._session_factory = session_factory or requests.Session
        self._clock = clock
        self._sleep = sleep
        self.deadline: Optional[Deadline] = None
        self.retry_delay = float(self.config.get('retry_delay', 2.0))

        self._validate_config()
        self.base_url = self._resolve_base_url()
        self.target = self.build_target()

    def _validate_config(self) -> None:
        """Validate service configuration."""
        errors = []

        for param in self.required_parameters:
            if param not in self.config:
                errors.append(f"Missing required parameter: {param}")

        for param_name, param_value in self.config.items():
            if param_name in self.parameters:
                expected_type = self.parameters[param_name].get('type')
                if expected_type and not isinstance(param_value, expected_type):
                    type_name = getattr(expected_type, '__name__', str(expected_type))
                    errors.append(
                        f"Parameter {param_name} must be {type_name}, "
                        f"got {type(param_value).__name__}"
                    )

        runtime = self.config.get('runtime')
        if runtime is not None and runtime not in CONTAINER_RUNTIMES:
            errors.append(f"Unsupported container runtime: {runtime}")

        if errors:
            raise ConfigurationError(
                f"Service configuration invalid: {'; '.join(errors)}",
                service=self.name,
                service_type=self.service_type
            )

    def _resolve_base_url(self) -> str:
        base_url = self.config.get('base_url')
        if base_url:
            return base_url.rstrip('/')

        host = self.config.get('host')
        port = self.config.get('port') or self.default_port
        if host and port:
            return f"http://{host}:{port}"

        raise ConfigurationError(
            "Service needs base_url, or host with a port",
            service=self.name,
            service_type=self.service_type
        )

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def build_target(self) -> ServiceTarget:
        """Build the immutable ServiceTarget from defaults and configuration."""
        settings = dict(self.readiness_defaults)
        settings.update(self.config.get('readiness') or {})

        kind = settings.get('kind', 'http')
        if kind not in ('http', 'remote'):
            raise ConfigurationError(f"Unknown readiness probe kind: {kind}",
                                     service=self.name)

        try:
            accepted = tuple(int(code) for code in settings.get('accepted_status', (200, 302, 401)))
            max_attempts = int(settings.get('max_attempts', 30))
            interval = float(settings.get('interval', 10))
            backoff = float(settings.get('backoff', 1.0))
            max_interval = float(settings.get('max_interval', 60))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid readiness settings: {e}", service=self.name)

        if max_attempts < 1 or interval < 0 or backoff < 1.0:
            raise ConfigurationError(
                "Readiness needs max_attempts >= 1, interval >= 0 and backoff >= 1",
                service=self.name
            )

        path = settings.get('path', '/')
        marker = settings.get('ready_marker', 'READY')
        command = settings.get('command')
        if kind == 'remote' and not command:
            command = self._remote_probe_command(path, accepted, marker)

        probe = ProbeSpec(kind=kind, path=path, accepted_status=accepted,
                          command=command, ready_marker=marker)

        return ServiceTarget(
            name=self.name,
            service_type=self.service_type,
            base_url=self.base_url,
            probe=probe,
            readiness=self.readiness_predicate(probe),
            max_attempts=max_attempts,
            interval=interval,
            backoff=backoff,
            max_interval=max_interval,
            request_timeout=float(self.config.get('request_timeout', 10))
        )

    def local_url(self) -> str:
        """Service URL from the deployment host's point of view."""
        if self.config.get('local_url'):
            return self.config['local_url'].rstrip('/')
        port = urlparse(self.base_url).port or self.config.get('port') or self.default_port or 80
        return f"http://localhost:{port}"

    def _remote_probe_command(self, path: str, accepted: Tuple[int, ...], marker: str) -> str:
        url = shlex.quote(self.local_url() + '/' + path.lstrip('/'))
        codes = ' '.join(str(code) for code in accepted)
        return (f'code=$(curl -s -o /dev/null -w "%{{http_code}}" {url}); '
                f'case " {codes} " in *" $code "*) echo {marker};; *) echo WAITING;; esac')

    def readiness_predicate(self, probe: ProbeSpec) -> Optional[Callable[[ProbeResult], bool]]:
        """Override to replace the status-code based readiness check."""
        return None

    def probe_remote(self, channel: RemoteExecutionChannel) -> ProbeResult:
        try:
            result = channel.execute(self.target.probe.command,
                                     timeout=self.target.request_timeout)
        except ChannelError as e:
            return ProbeResult(error=str(e))
        return ProbeResult(stdout=result.stdout, exit_code=result.exit_code,
                           error=result.stderr.strip() or None)

    def wait_until_ready(self, channel: RemoteExecutionChannel,
                         deadline: Optional[Deadline] = None) -> Ready:
        """
        Poll the service until its readiness predicate accepts a probe.

        Raises:
            TimeoutError: After exactly max_attempts unsuccessful probes
            AcquisitionCancelled: If the run deadline expires first
        """
        poller = Poller(self.target, deadline=deadline, clock=self._clock, sleep=self._sleep)

        if self.target.probe.kind == 'remote':
            return poller.run(lambda: self.probe_remote(channel))

        client = self.client()
        try:
            return poller.run(lambda: client.probe(self.target.probe.path))
        finally:
            client.close()

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def client(self, auth: Optional[Dict[str, Any]] = None) -> ServiceClient:
        client = ServiceClient(
            self.base_url,
            timeout=self.target.request_timeout,
            session=self._session_factory(),
            verify_ssl=self.config.get('verify_ssl', True)
        )
        if auth:
            client.configure_auth(auth)
        return client

    def basic_auth(self, username: str, password: str) -> Dict[str, Any]:
        return {'type': 'basic', 'username': username, 'password': password}

    def credential_auth(self, username: Optional[str], credential: str,
                        kind: Optional[str]) -> Dict[str, Any]:
        """Auth settings for verifying a credential of the given kind."""
        return self.basic_auth(username, credential)

    @property
    def retry_sleep(self) -> Callable[[float], object]:
        if self._sleep is not None:
            return self._sleep
        if self.deadline is not None:
            return self.deadline.sleep
        return time.sleep

    def default_extractor(self, check_path: Optional[str] = None,
                          accept: Optional[Callable[[HttpResponse], bool]] = None
                          ) -> DefaultCredentialExtractor:
        """Default-credential extractor built from username/password settings."""
        return DefaultCredentialExtractor(
            service=self.name,
            client_factory=self.client,
            username=self.config['username'],
            password=self.config['password'],
            check_path=check_path or self.config['verify_path'],
            accept=accept,
            retry_delay=self.retry_delay,
            sleep=self.retry_sleep
        )

    def file_extractor(self) -> FileReadExtractor:
        """File-read extractor built from the password_file/search settings."""
        return FileReadExtractor(
            service=self.name,
            primary_path=self.config['password_file'],
            file_name=self.config.get('password_file_name'),
            search_roots=self.config.get('search_roots', []),
            username=self.config.get('username', 'admin'),
            runtime=self.config.get('runtime', 'docker'),
            container=self.config.get('container'),
            namespace=self.config.get('namespace'),
            timeout=self.target.request_timeout * 3,
            retry_delay=self.retry_delay,
            sleep=self.retry_sleep
        )

    def step(self, step: str, operation: Callable[[], Any], retry: bool = True) -> Any:
        """
        Run one token-minting step with a single retry.

        Raises:
            MintError: Tagged with ``step`` once the retry is exhausted
        """
        if retry:
            should_retry = lambda e: isinstance(e, (ChannelError, MintError))
        else:
            should_retry = lambda e: False

        self.logger.debug("Token minting step", step=step)
        try:
            return retry_once(operation, should_retry, delay=self.retry_delay,
                              sleep=self.retry_sleep,
                              description=f"{self.name}:{step}")
        except (MintError, AcquisitionCancelled):
            raise
        except AcquisitionError as e:
            raise MintError(f"Step {step} failed: {e.message}", step=step, service=self.name)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise MintError(f"Step {step} failed: unexpected response ({e!r})",
                            step=step, service=self.name)

    def expect(self, response: HttpResponse, step: str,
               statuses: Tuple[int, ...] = (200,)) -> HttpResponse:
        if response.status_code not in statuses:
            raise MintError(
                f"Step {step} returned HTTP {response.status_code}",
                step=step,
                service=self.name,
                body=response.text[:200]
            )
        return response

    def verify_request(self, path: str, auth: Dict[str, Any],
                       accept: Optional[Callable[[HttpResponse], bool]] = None) -> HttpResponse:
        """
        Issue one authenticated GET and check its outcome.

        Raises:
            VerificationError: If the response is not accepted, with the raw
                body preserved
        """
        client = self.client(auth)
        try:
            response = retry_once(lambda: client.get(path), is_retryable_error,
                                  delay=self.retry_delay, sleep=self.retry_sleep,
                                  description=f"{self.name}:verify")
        except ChannelError as e:
            raise VerificationError(f"Verification request failed: {e.message}",
                                    service=self.name)
        finally:
            client.close()

        accepted = accept(response) if accept else response.status_code == 200
        if not accepted:
            raise VerificationError(
                f"Verification against {path} returned HTTP {response.status_code}",
                service=self.name,
                status_code=response.status_code,
                response=response.text[:MAX_BODY_CHARS]
            )
        return response

    # ------------------------------------------------------------------
    # Service-specific operations
    # ------------------------------------------------------------------

    def extract_initial_secret(self, channel: RemoteExecutionChannel) -> InitialSecret:
        """
        Obtain the service's bootstrap or default credential.

        Required unless ``secret_kind`` is None.

        Raises:
            ExtractionError: If no secret could be found or derived
        """
        raise NotImplementedError(f"{self.service_type} exposes no credential")

    def mint_durable_token(self, channel: RemoteExecutionChannel,
                           secret: InitialSecret) -> MintedToken:
        """
        Mint a long-lived token using the initial secret.

        Raises:
            MintError: Tagged with the failing step
        """
        raise NotImplementedError(f"{self.service_type} does not mint tokens")

    def verify(self, username: Optional[str], credential: str,
               kind: Optional[str] = None) -> None:
        """
        Authenticate against the service's canonical read endpoint.

        Required unless ``secret_kind`` is None.

        Raises:
            VerificationError: If the credential is rejected
        """
        raise NotImplementedError(f"{self.service_type} exposes no credential")

    def token_username(self, secret: InitialSecret, token: MintedToken) -> str:
        """Login name reported alongside a minted token."""
        return secret.username

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _enter(self, record: CredentialRecord, state: AcquisitionState,
               deadline: Optional[Deadline]) -> None:
        if deadline is not None and deadline.expired():
            raise AcquisitionCancelled(service=self.name)
        record.state = state
        self.logger.info("Acquisition state", state=state.value)

    def new_record(self) -> CredentialRecord:
        return CredentialRecord(
            service=self.name,
            base_url=self.base_url,
            username=self.config.get('username') if self.secret_kind else None,
            secret_kind=self.secret_kind
        )

    def acquire(self, channel: RemoteExecutionChannel,
                deadline: Optional[Deadline] = None,
                readiness_only: bool = False) -> CredentialRecord:
        """
        Run the full acquisition for this service.

        Never raises for per-service failures: the returned record carries
        a sentinel in place of the secret and the stage that failed.

        Args:
            channel: Open remote execution channel borrowed for this run
            deadline: Shared run deadline
            readiness_only: Stop after readiness polling

        Returns:
            CredentialRecord for the service
        """
        record = self.new_record()
        started = self._clock()
        self.deadline = deadline

        try:
            self._enter(record, AcquisitionState.POLLING, deadline)
            ready = self.wait_until_ready(channel, deadline)
            record.attempts = ready.attempts

            if readiness_only or self.secret_kind is None:
                record.status = VerificationStatus.UNVERIFIED
                return record

            self._enter(record, AcquisitionState.SECRET_EXTRACTION, deadline)
            secret = self.extract_initial_secret(channel)
            record.username = secret.username
            credential = secret.password
            kind = "password"

            if self.mints_tokens:
                self._enter(record, AcquisitionState.TOKEN_MINTING, deadline)
                token = self.mint_durable_token(channel, secret)
                record.username = self.token_username(secret, token)
                credential = token.value
                kind = "token"

            self._enter(record, AcquisitionState.VERIFICATION, deadline)
            self.verify(record.username, credential, kind)

            record.secret = credential
            record.secret_kind = kind
            record.status = VerificationStatus.VERIFIED
            record.state = AcquisitionState.VERIFIED

        except TimeoutError as e:
            record.attempts = e.attempts
            record.fail(sentinels.NOT_READY, e)
        except AcquisitionCancelled as e:
            record.fail(sentinels.TIMED_OUT, e, status=VerificationStatus.TIMED_OUT)
        except ExtractionError as e:
            record.fail(EXTRACTION_SENTINELS[e.kind], e)
        except MintError as e:
            record.fail(sentinels.TOKEN_GENERATION_FAILED, e)
        except VerificationError as e:
            record.response = e.response
            record.fail(sentinels.VERIFICATION_FAILED, e)
            self.logger.warning("Verification response", status_code=e.status_code,
                                response=e.response)
        except Exception as e:
            self.logger.exception("Unexpected acquisition error", state=record.state.value)
            record.fail(STAGE_SENTINELS.get(record.state, sentinels.EXTRACTION_FAILED), e)
        finally:
            self._log_outcome(record, self._clock() - started)

        return record

    def _log_outcome(self, record: CredentialRecord, duration: float) -> None:
        log_acquisition_completion(record, duration, logger=self.logger)

    def failed_record(self, sentinel: str, error: Exception,
                      status: VerificationStatus = VerificationStatus.FAILED) -> CredentialRecord:
        """Record for a service whose acquisition never got to run."""
        return self.new_record().fail(sentinel, error, status=status)
