"""
Local Shell Channel

Runs commands on the machine the harvester itself runs on, for when it is
executed directly on the deployment host.
"""

import os
import subprocess
from typing import Dict, Any, Optional

from .base import RemoteExecutionChannel
from ..errors import ChannelError
from ..models import CommandResult


class LocalChannel(RemoteExecutionChannel):
    """Channel executing commands through a local shell."""

    channel_type = "local"
    description = "Execute commands on the local host"

    parameters = {
        'shell_path': {'type': str, 'description': 'Shell used to run commands'},
        'env_vars': {'type': dict, 'description': 'Environment variables to set'},
        'timeout': {'type': (int, float), 'description': 'Default command timeout in seconds'}
    }

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.shell_path = config.get('shell_path', '/bin/bash')
        self.env_vars = config.get('env_vars', {})

    def _connect(self) -> None:
        if not os.path.exists(self.shell_path):
            raise ChannelError(
                f"Shell not found: {self.shell_path}",
                transport=self.channel_type
            )

    def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        timeout = timeout or self.default_timeout

        env = os.environ.copy()
        env.update(self.env_vars)

        self.logger.debug("Executing local command", timeout=timeout)

        try:
            result = subprocess.run(
                [self.shell_path, '-c', command],
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
                check=False
            )
        except subprocess.TimeoutExpired:
            raise ChannelError(
                f"Command timed out after {timeout} seconds",
                transport=self.channel_type
            )
        except OSError as e:
            raise ChannelError(
                f"Command execution failed: {e}",
                transport=self.channel_type
            )

        return CommandResult(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode
        )
