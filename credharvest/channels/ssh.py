"""
SSH Channel

Key-based SSH login to the deployment host using paramiko.
"""

import os
import socket
from typing import Callable, Dict, Any, Optional

import paramiko

from .base import RemoteExecutionChannel
from ..errors import AcquisitionCancelled, ChannelError
from ..models import CommandResult


class SSHChannel(RemoteExecutionChannel):
    """Channel executing commands over an SSH session."""

    channel_type = "ssh"
    description = "Execute commands over key-based SSH"

    parameters = {
        'host': {'type': str, 'description': 'Host name or IP address'},
        'port': {'type': int, 'description': 'SSH port'},
        'username': {'type': str, 'description': 'Login user'},
        'key_file': {'type': str, 'description': 'Path to the private key'},
        'connect_attempts': {'type': int, 'description': 'Connection attempts before giving up'},
        'connect_delay': {'type': (int, float), 'description': 'Seconds between connection attempts'},
        'timeout': {'type': (int, float), 'description': 'Default command timeout in seconds'}
    }

    required_parameters = ['host', 'key_file']

    def __init__(self, config: Dict[str, Any],
                 sleep: Optional[Callable[[float], object]] = None):
        super().__init__(config, sleep=sleep)
        self.host = config['host']
        self.port = config.get('port', 22)
        self.username = config.get('username', 'ec2-user')
        self.key_file = os.path.expanduser(config['key_file'])
        self.connect_attempts = config.get('connect_attempts', 5)
        self.connect_delay = config.get('connect_delay', 10)
        self.client: Optional[paramiko.SSHClient] = None

    def _connect(self) -> None:
        # A missing key would otherwise look like a retryable socket error
        if not os.access(self.key_file, os.R_OK):
            raise ChannelError(
                f"SSH key file is missing or unreadable: {self.key_file}",
                transport=self.channel_type,
                host=self.host
            )

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        last_error = None
        for attempt in range(1, self.connect_attempts + 1):
            try:
                self.logger.debug("Connecting over SSH", host=self.host, attempt=attempt)
                client.connect(
                    self.host,
                    port=self.port,
                    username=self.username,
                    key_filename=self.key_file,
                    timeout=self.bounded_timeout(self.default_timeout),
                    allow_agent=False,
                    look_for_keys=False
                )
                self.client = client
                return
            except paramiko.AuthenticationException as e:
                client.close()
                raise ChannelError(
                    f"SSH authentication failed: {e}",
                    transport=self.channel_type,
                    host=self.host
                )
            except (paramiko.ssh_exception.NoValidConnectionsError,
                    paramiko.SSHException, socket.error) as e:
                last_error = e
                self.logger.warning("SSH connection failed", host=self.host,
                                    attempt=attempt, error=str(e))
                if attempt < self.connect_attempts:
                    try:
                        self.pause(self.connect_delay)
                    except AcquisitionCancelled:
                        client.close()
                        raise

        client.close()
        raise ChannelError(
            f"Failed to connect after {self.connect_attempts} attempts: {last_error}",
            transport=self.channel_type,
            host=self.host
        )

    def _disconnect(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None

    def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        if self.client is None:
            raise ChannelError("SSH channel is not open", transport=self.channel_type,
                               host=self.host)

        timeout = timeout or self.default_timeout
        self.logger.debug("Executing remote command", host=self.host, timeout=timeout)

        try:
            stdin, stdout, stderr = self.client.exec_command(command, timeout=timeout)
            stdin.close()
            stdout_output = stdout.read().decode('utf-8', errors='replace')
            stderr_output = stderr.read().decode('utf-8', errors='replace')
            exit_code = stdout.channel.recv_exit_status()
        except socket.timeout:
            raise ChannelError(
                f"Command timed out after {timeout} seconds",
                transport=self.channel_type,
                host=self.host
            )
        except (paramiko.SSHException, socket.error) as e:
            raise ChannelError(
                f"Command execution failed: {e}",
                transport=self.channel_type,
                host=self.host
            )

        return CommandResult(stdout=stdout_output, stderr=stderr_output,
                             exit_code=exit_code)
