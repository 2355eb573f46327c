"""
AWS SSM Channel

Runs commands through the Systems Manager command API
(send_command / get_command_invocation) instead of an SSH session.
"""

import time
from typing import Dict, Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .base import RemoteExecutionChannel
from ..errors import ChannelError
from ..models import CommandResult

TERMINAL_STATUSES = {"Success", "Failed", "TimedOut", "Cancelled", "Undeliverable", "Terminated"}


class SSMChannel(RemoteExecutionChannel):
    """Channel executing commands with AWS-RunShellScript."""

    channel_type = "ssm"
    description = "Execute commands through AWS Systems Manager"

    parameters = {
        'instance_id': {'type': str, 'description': 'EC2 instance ID'},
        'region': {'type': str, 'description': 'AWS region'},
        'profile': {'type': str, 'description': 'AWS credentials profile'},
        'online_attempts': {'type': int, 'description': 'Checks for the SSM agent to come online'},
        'online_interval': {'type': (int, float), 'description': 'Seconds between agent checks'},
        'poll_initial': {'type': (int, float), 'description': 'First invocation poll delay'},
        'poll_max': {'type': (int, float), 'description': 'Largest invocation poll delay'},
        'timeout': {'type': (int, float), 'description': 'Default command timeout in seconds'}
    }

    required_parameters = ['instance_id']

    def __init__(self, config: Dict[str, Any], client=None, sleep=None,
                 clock=time.monotonic):
        super().__init__(config, sleep=sleep)
        self.instance_id = config['instance_id']
        self.region = config.get('region')
        self.profile = config.get('profile')
        self.online_attempts = config.get('online_attempts', 30)
        self.online_interval = config.get('online_interval', 10)
        self.poll_initial = config.get('poll_initial', 1.0)
        self.poll_max = config.get('poll_max', 10.0)
        self.client = client
        self._clock = clock

    def _connect(self) -> None:
        if self.client is None:
            try:
                session = boto3.session.Session(profile_name=self.profile,
                                                region_name=self.region)
                self.client = session.client('ssm')
            except BotoCoreError as e:
                raise ChannelError(f"Could not create SSM client: {e}",
                                   transport=self.channel_type, host=self.instance_id)

        for attempt in range(1, self.online_attempts + 1):
            if self._ping_status() == "Online":
                return
            self.logger.info("Waiting for SSM agent", instance_id=self.instance_id,
                             attempt=attempt, max_attempts=self.online_attempts)
            if attempt < self.online_attempts:
                self.pause(self.online_interval)

        raise ChannelError(
            f"SSM agent did not come online after {self.online_attempts} checks",
            transport=self.channel_type,
            host=self.instance_id
        )

    def _ping_status(self) -> Optional[str]:
        try:
            response = self.client.describe_instance_information(
                Filters=[{'Key': 'InstanceIds', 'Values': [self.instance_id]}]
            )
        except (ClientError, BotoCoreError) as e:
            self.logger.warning("SSM agent check failed", error=str(e))
            return None

        info = response.get('InstanceInformationList', [])
        return info[0].get('PingStatus') if info else None

    def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        if self.client is None:
            raise ChannelError("SSM channel is not open", transport=self.channel_type,
                               host=self.instance_id)

        timeout = self.bounded_timeout(timeout or self.default_timeout)

        try:
            response = self.client.send_command(
                InstanceIds=[self.instance_id],
                DocumentName="AWS-RunShellScript",
                Parameters={'commands': [command]},
                TimeoutSeconds=max(30, int(timeout))
            )
        except (ClientError, BotoCoreError) as e:
            raise ChannelError(f"send_command failed: {e}", transport=self.channel_type,
                               host=self.instance_id)

        command_id = response['Command']['CommandId']
        self.logger.debug("SSM command sent", command_id=command_id)
        return self._await_invocation(command_id, timeout)

    def _await_invocation(self, command_id: str, timeout: float) -> CommandResult:
        """Poll the invocation with exponential backoff until it finishes."""
        started = self._clock()
        delay = self.poll_initial

        while True:
            self.pause(delay)
            try:
                invocation = self.client.get_command_invocation(
                    CommandId=command_id,
                    InstanceId=self.instance_id
                )
            except ClientError as e:
                code = e.response.get('Error', {}).get('Code')
                if code != 'InvocationDoesNotExist':
                    raise ChannelError(f"get_command_invocation failed: {e}",
                                       transport=self.channel_type, host=self.instance_id)
                invocation = {}
            except BotoCoreError as e:
                raise ChannelError(f"get_command_invocation failed: {e}",
                                   transport=self.channel_type, host=self.instance_id)

            status = invocation.get('Status')
            if status in TERMINAL_STATUSES:
                return CommandResult(
                    stdout=invocation.get('StandardOutputContent', ''),
                    stderr=invocation.get('StandardErrorContent', ''),
                    exit_code=invocation.get('ResponseCode', 0 if status == 'Success' else 1)
                )

            if self._clock() - started >= timeout:
                raise ChannelError(
                    f"Command {command_id} did not finish within {timeout} seconds",
                    transport=self.channel_type,
                    host=self.instance_id,
                    status=status
                )

            delay = min(delay * 2, self.poll_max)
