"""
Base Remote Execution Channel

Abstract base class for transports that run a shell command on the
deployment host and capture its output.
"""

import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Any, List, Optional

import structlog

from ..errors import AcquisitionCancelled, ConfigurationError
from ..models import CommandResult
from ..polling import Deadline


class RemoteExecutionChannel(ABC):
    """Abstract base class for remote execution channels."""

    channel_type: str = "base"
    description: str = "Base remote execution channel"

    # Parameter specifications
    parameters: Dict[str, Dict[str, Any]] = {}
    required_parameters: List[str] = []

    def __init__(self, config: Dict[str, Any],
                 sleep: Optional[Callable[[float], object]] = None):
        """
        Initialize channel with configuration.

        Args:
            config: Channel configuration dictionary
            sleep: Replaces the pause between transport retries, for tests
        """
        self.config = config
        self.deadline = None
        self._sleep = sleep
        self.default_timeout = float(config.get('timeout', 60))
        self.logger = structlog.get_logger(f"{__name__}.{self.__class__.__name__}")
        self._opened = False

        self._validate_config()

    def _validate_config(self) -> None:
        """Validate channel configuration."""
        errors = []

        for param in self.required_parameters:
            if not self.config.get(param):
                errors.append(f"Missing required parameter: {param}")

        for param_name, param_value in self.config.items():
            if param_name in self.parameters and param_value is not None:
                expected_type = self.parameters[param_name].get('type')
                if expected_type and not isinstance(param_value, expected_type):
                    type_name = getattr(expected_type, '__name__', str(expected_type))
                    errors.append(
                        f"Parameter {param_name} must be {type_name}, "
                        f"got {type(param_value).__name__}"
                    )

        if errors:
            raise ConfigurationError(
                f"Channel configuration invalid: {'; '.join(errors)}",
                channel_type=self.channel_type
            )

    @property
    def target(self) -> str:
        """Human-readable name of the host this channel reaches."""
        return str(self.config.get('host') or self.config.get('instance_id') or 'localhost')

    def open(self, deadline: Optional[Deadline] = None) -> "RemoteExecutionChannel":
        """
        Establish the session.

        Args:
            deadline: Run deadline; retry loops in the channel stop once it expires

        Raises:
            ChannelError: If the host cannot be reached
            AcquisitionCancelled: If the deadline expires while connecting
        """
        self.deadline = deadline
        self._connect()
        self._opened = True
        self.logger.info("Channel opened", channel_type=self.channel_type,
                         target=self.target)
        return self

    def close(self) -> None:
        if self._opened:
            self._disconnect()
            self._opened = False
            self.logger.debug("Channel closed", channel_type=self.channel_type,
                              target=self.target)

    def __enter__(self) -> "RemoteExecutionChannel":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def pause(self, seconds: float) -> None:
        """
        Wait between transport retries.

        Raises:
            AcquisitionCancelled: If the run deadline expires during the wait
        """
        if self._sleep is not None:
            completed = self._sleep(seconds) is not False
        elif self.deadline is not None:
            completed = self.deadline.sleep(seconds)
        else:
            time.sleep(seconds)
            completed = True

        if not completed or (self.deadline is not None and self.deadline.expired()):
            raise AcquisitionCancelled(
                f"Run deadline expired while waiting on the {self.channel_type} channel"
            )

    def bounded_timeout(self, timeout: float) -> float:
        """Shorten a blocking call's timeout to what is left of the run deadline."""
        remaining = self.deadline.remaining() if self.deadline is not None else None
        if remaining is None:
            return timeout
        return max(1.0, min(timeout, remaining))

    def _connect(self) -> None:
        """Override in subclasses that hold a session."""

    def _disconnect(self) -> None:
        """Override in subclasses that hold a session."""

    @abstractmethod
    def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """
        Run a shell command on the host.

        Args:
            command: Shell command line
            timeout: Per-call timeout in seconds

        Returns:
            CommandResult with stdout, stderr and exit code

        Raises:
            ChannelError: If the command could not be run or timed out
        """
        pass
