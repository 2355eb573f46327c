"""
Data Model

Value types passed between the engine, the service handlers and the
remote execution channels.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple


class VerificationStatus(str, Enum):
    """Outcome of one credential acquisition."""

    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class AcquisitionState(str, Enum):
    """States of the per-service acquisition state machine."""

    PROVISIONING = "provisioning"
    POLLING = "polling"
    SECRET_EXTRACTION = "secret_extraction"
    TOKEN_MINTING = "token_minting"
    VERIFICATION = "verification"
    VERIFIED = "verified"
    FAILED = "failed"


@dataclass(frozen=True)
class CommandResult:
    """Output of one command run over a remote execution channel."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class ProbeResult:
    """What a single readiness probe observed."""

    status_code: Optional[int] = None
    body: str = ""
    stdout: str = ""
    exit_code: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ProbeSpec:
    """How to probe a service for readiness.

    ``http`` probes issue an unauthenticated GET against ``base_url + path``
    from the automation host. ``remote`` probes run ``command`` on the target
    host and look for ``ready_marker`` in its stdout.
    """

    kind: str = "http"
    path: str = "/"
    accepted_status: Tuple[int, ...] = (200, 302, 401)
    command: Optional[str] = None
    ready_marker: str = "READY"


def default_readiness(probe: ProbeSpec) -> Callable[[ProbeResult], bool]:
    """Build the readiness predicate implied by a probe specification."""
    if probe.kind == "remote":
        def remote_ready(result: ProbeResult) -> bool:
            return result.exit_code == 0 and probe.ready_marker in result.stdout.split()
        return remote_ready

    def http_ready(result: ProbeResult) -> bool:
        return result.status_code in probe.accepted_status
    return http_ready


@dataclass(frozen=True)
class ServiceTarget:
    """Immutable description of one service to acquire credentials for."""

    name: str
    service_type: str
    base_url: str
    probe: ProbeSpec = field(default_factory=ProbeSpec)
    readiness: Optional[Callable[[ProbeResult], bool]] = None
    max_attempts: int = 30
    interval: float = 10.0
    backoff: float = 1.0
    max_interval: float = 60.0
    request_timeout: float = 10.0

    def is_ready(self, result: ProbeResult) -> bool:
        predicate = self.readiness or default_readiness(self.probe)
        return predicate(result)


@dataclass(frozen=True)
class Ready:
    """Successful readiness polling."""

    attempts: int
    elapsed: float


@dataclass(frozen=True)
class InitialSecret:
    """A bootstrap or default credential, before any token is minted."""

    username: str
    password: str
    source: str = "file"

    def __repr__(self) -> str:
        return f"InitialSecret(username={self.username!r}, source={self.source!r})"


@dataclass(frozen=True)
class MintedToken:
    """A durable token minted for a service account or user."""

    account_id: str
    name: str
    value: str

    def __repr__(self) -> str:
        return f"MintedToken(account_id={self.account_id!r}, name={self.name!r})"


def mask_secret(value: Optional[str]) -> str:
    """Loggable rendering of a secret."""
    if not value:
        return ""
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


@dataclass
class CredentialRecord:
    """Result of one acquisition, produced once per service per run."""

    service: str
    base_url: str
    username: Optional[str] = None
    secret: Optional[str] = None
    secret_kind: Optional[str] = None
    status: VerificationStatus = VerificationStatus.UNVERIFIED
    state: AcquisitionState = AcquisitionState.PROVISIONING
    error: Optional[str] = None
    error_type: Optional[str] = None
    failed_at: Optional[AcquisitionState] = None
    response: Optional[str] = None
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status in (VerificationStatus.VERIFIED, VerificationStatus.UNVERIFIED)

    @property
    def channel_failed(self) -> bool:
        """True if the host could not be reached before any work started."""
        return (self.failed_at == AcquisitionState.PROVISIONING
                and self.error_type == "ChannelError")

    def fail(self, sentinel: str, error: Exception,
             status: VerificationStatus = VerificationStatus.FAILED) -> "CredentialRecord":
        """Mark the record failed, replacing the secret with a sentinel."""
        self.failed_at = self.state
        self.secret = sentinel
        self.error = str(error)
        self.error_type = error.__class__.__name__
        self.status = status
        self.state = AcquisitionState.FAILED
        return self

    def masked(self) -> Dict[str, Any]:
        """Dictionary view safe to log."""
        data = {
            'service': self.service,
            'base_url': self.base_url,
            'username': self.username,
            'secret_kind': self.secret_kind,
            'status': self.status.value,
            'state': self.state.value,
            'attempts': self.attempts,
        }
        if self.status in (VerificationStatus.VERIFIED, VerificationStatus.UNVERIFIED):
            data['secret'] = mask_secret(self.secret)
        else:
            data['secret'] = self.secret
            data['error'] = self.error
            data['failed_at'] = self.failed_at.value if self.failed_at else None
        return data
