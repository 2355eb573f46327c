"""
Custom Exceptions

Defines the exceptions raised while acquiring service credentials. Every
per-service error is caught by the service handler and turned into a
sentinel value; only configuration errors and total channel failure reach
the command line.
"""

from enum import Enum
from typing import Dict, Any, Optional, List


class AcquisitionError(Exception):
    """Base exception for credential acquisition errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self):
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} (Context: {context_str})"
        return self.message


class ConfigurationError(AcquisitionError):
    """Exception raised when the run configuration is invalid."""

    def __init__(self, message: str, config_file: Optional[str] = None,
                 config_path: Optional[str] = None, **kwargs):
        context = kwargs.copy()
        if config_file:
            context['config_file'] = config_file
        if config_path:
            context['config_path'] = config_path

        super().__init__(message, context)


class ChannelError(AcquisitionError):
    """Exception raised when the remote execution channel fails."""

    def __init__(self, message: str, transport: Optional[str] = None,
                 host: Optional[str] = None, **kwargs):
        context = kwargs.copy()
        if transport:
            context['transport'] = transport
        if host:
            context['host'] = host

        super().__init__(message, context)


class ChannelUnavailableError(AcquisitionError):
    """Raised when no service could reach the remote host at all."""

    def __init__(self, message: str, records: Optional[List[Any]] = None):
        super().__init__(message, {'services': len(records or [])})
        self.records = records or []


class TimeoutError(AcquisitionError):
    """Exception raised when a service never passes its readiness probe."""

    def __init__(self, message: str, service: Optional[str] = None,
                 attempts: int = 0, elapsed: float = 0.0, **kwargs):
        context = kwargs.copy()
        if service:
            context['service'] = service
        context['attempts'] = attempts
        context['elapsed'] = round(elapsed, 1)

        super().__init__(message, context)
        self.attempts = attempts
        self.elapsed = elapsed


class ExtractionFailure(str, Enum):
    """Reasons an initial secret could not be obtained."""

    NOT_FOUND = "not_found"
    DEFAULT_REJECTED = "default_rejected"
    COMMAND_FAILED = "command_failed"


class ExtractionError(AcquisitionError):
    """Exception raised when no initial secret could be found or derived."""

    def __init__(self, message: str, kind: ExtractionFailure = ExtractionFailure.NOT_FOUND,
                 service: Optional[str] = None, **kwargs):
        context = kwargs.copy()
        if service:
            context['service'] = service
        context['kind'] = kind.value

        super().__init__(message, context)
        self.kind = kind


class MintError(AcquisitionError):
    """Exception raised when a token-minting step fails."""

    def __init__(self, message: str, step: str, service: Optional[str] = None,
                 **kwargs):
        context = kwargs.copy()
        if service:
            context['service'] = service
        context['step'] = step

        super().__init__(message, context)
        self.step = step


class VerificationError(AcquisitionError):
    """Exception raised when an obtained credential fails authentication."""

    def __init__(self, message: str, service: Optional[str] = None,
                 status_code: Optional[int] = None, response: Optional[str] = None,
                 **kwargs):
        context = kwargs.copy()
        if service:
            context['service'] = service
        if status_code is not None:
            context['status_code'] = status_code

        super().__init__(message, context)
        self.status_code = status_code
        self.response = response


class AcquisitionCancelled(AcquisitionError):
    """Raised inside a worker once the run deadline has expired."""

    def __init__(self, message: str = "Run deadline expired",
                 service: Optional[str] = None):
        super().__init__(message, {'service': service} if service else None)


def format_error_context(error: Exception) -> Dict[str, Any]:
    """
    Format error context for logging or reporting.

    Args:
        error: Exception instance

    Returns:
        Dictionary with error context information
    """
    if isinstance(error, AcquisitionError):
        return {
            'error_type': error.__class__.__name__,
            'message': error.message,
            'context': error.context
        }
    else:
        return {
            'error_type': error.__class__.__name__,
            'message': str(error),
            'context': {}
        }


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if an error is worth one soft retry.

    Args:
        error: Exception instance

    Returns:
        True if the error is retryable, False otherwise
    """
    retryable_errors = (
        ChannelError,
        TimeoutError,
    )

    return isinstance(error, retryable_errors)
