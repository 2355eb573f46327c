"""
Channels Package

Remote execution transports used to reach into the deployment host.
"""

from typing import Dict, Any, Type

from .base import RemoteExecutionChannel
from .local import LocalChannel
from .ssh import SSHChannel
from .ssm import SSMChannel
from ..errors import ConfigurationError

CHANNEL_TYPES: Dict[str, Type[RemoteExecutionChannel]] = {
    LocalChannel.channel_type: LocalChannel,
    SSHChannel.channel_type: SSHChannel,
    SSMChannel.channel_type: SSMChannel,
}


def build_channel(config: Dict[str, Any]) -> RemoteExecutionChannel:
    """Create an unopened channel from its configuration block."""
    channel_type = config.get('type', 'ssh')
    channel_class = CHANNEL_TYPES.get(channel_type)
    if channel_class is None:
        raise ConfigurationError(
            f"Unknown channel type: {channel_type}",
            config_path='channel.type',
            available=sorted(CHANNEL_TYPES)
        )
    return channel_class(config)


__all__ = [
    "RemoteExecutionChannel",
    "LocalChannel",
    "SSHChannel",
    "SSMChannel",
    "CHANNEL_TYPES",
    "build_channel"
]
