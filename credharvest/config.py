"""
Run Configuration

Loads the YAML run configuration that names the channel to the deployment
host and the services to acquire credentials for.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigurationError

DEFAULT_SERVICES = ("jenkins", "nexus", "grafana")


def substitute_environment_variables(value: str) -> str:
    """
    Substitute environment variables in a string value.

    Args:
        value: String that may contain ${VAR_NAME} placeholders

    Returns:
        String with environment variables substituted; unknown
        placeholders are left as they are
    """
    if not isinstance(value, str):
        return value

    def replace_var(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))

    return re.sub(r'\$\{([^}]+)\}', replace_var, value)


def substitute_env_vars_in_config(config: Any) -> Any:
    """Recursively substitute environment variables in configuration."""
    if isinstance(config, dict):
        return {k: substitute_env_vars_in_config(v) for k, v in config.items()}
    elif isinstance(config, list):
        return [substitute_env_vars_in_config(item) for item in config]
    elif isinstance(config, str):
        return substitute_environment_variables(config)
    else:
        return config


@dataclass
class RunConfig:
    """Parsed run configuration."""

    name: str
    channel: Dict[str, Any]
    services: List[Dict[str, Any]]
    deadline: Optional[float] = None
    host: Optional[str] = None
    source: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def select(self, names: Optional[List[str]]) -> "RunConfig":
        """Restrict the run to the named services."""
        if not names:
            return self
        unknown = set(names) - {service['name'] for service in self.services}
        if unknown:
            raise ConfigurationError(
                f"Unknown service name(s): {', '.join(sorted(unknown))}",
                config_file=self.source
            )
        return RunConfig(
            name=self.name,
            channel=self.channel,
            services=[s for s in self.services if s['name'] in names],
            deadline=self.deadline,
            host=self.host,
            source=self.source,
            extra=self.extra
        )


def parse_run_config(data: Any, source: Optional[str] = None) -> RunConfig:
    """
    Validate raw configuration data and build a RunConfig.

    Args:
        data: Mapping loaded from YAML (or built by the CLI)
        source: File the data came from, for error messages

    Returns:
        RunConfig

    Raises:
        ConfigurationError: If the structure is invalid
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Run configuration must be a mapping", config_file=source)

    data = substitute_env_vars_in_config(data)
    host = data.get('host')

    channel = data.get('channel') or {}
    if not isinstance(channel, dict):
        raise ConfigurationError("'channel' must be a mapping", config_file=source,
                                 config_path='channel')
    channel = dict(channel)
    if host and channel.get('type', 'ssh') == 'ssh':
        channel.setdefault('host', host)

    raw_services = data.get('services')
    if not isinstance(raw_services, list) or not raw_services:
        raise ConfigurationError("Run configuration needs a non-empty 'services' list",
                                 config_file=source, config_path='services')

    services = []
    seen = set()
    for index, entry in enumerate(raw_services):
        if isinstance(entry, str):
            entry = {'type': entry}
        if not isinstance(entry, dict):
            raise ConfigurationError("Service entries must be mappings or type names",
                                     config_file=source, config_path=f"services[{index}]")

        entry = dict(entry)
        if 'type' not in entry and 'name' in entry:
            entry['type'] = entry['name']
        if 'type' not in entry:
            raise ConfigurationError("Service entry missing 'type'",
                                     config_file=source, config_path=f"services[{index}]")
        entry.setdefault('name', entry['type'])
        if host:
            entry.setdefault('host', host)

        if entry['name'] in seen:
            raise ConfigurationError(f"Duplicate service name: {entry['name']}",
                                     config_file=source, config_path=f"services[{index}]")
        seen.add(entry['name'])
        services.append(entry)

    deadline = data.get('deadline')
    if deadline is not None:
        try:
            deadline = float(deadline)
        except (TypeError, ValueError):
            raise ConfigurationError("'deadline' must be a number of seconds",
                                     config_file=source, config_path='deadline')
        if deadline <= 0:
            deadline = None

    known = {'name', 'description', 'host', 'channel', 'services', 'deadline'}
    return RunConfig(
        name=str(data.get('name', 'credentials')),
        channel=channel,
        services=services,
        deadline=deadline,
        host=host,
        source=source,
        extra={k: v for k, v in data.items() if k not in known}
    )


def load_run_config(path: str) -> RunConfig:
    """Load a run configuration from a YAML file."""
    config_path = Path(path)
    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration: {e}", config_file=str(path))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML: {e}", config_file=str(path))

    return parse_run_config(data, source=str(config_path))


def quick_run_config(host: str, key_file: Optional[str] = None, username: str = 'ec2-user',
                     services: Optional[List[str]] = None,
                     deadline: Optional[float] = None,
                     channel_type: str = 'ssh',
                     instance_id: Optional[str] = None,
                     region: Optional[str] = None) -> RunConfig:
    """
    Build a run configuration from command-line arguments.

    Service specs are ``type`` or ``type=base_url``.
    """
    entries = []
    for spec in services or DEFAULT_SERVICES:
        service_type, _, base_url = spec.partition('=')
        entry: Dict[str, Any] = {'type': service_type, 'name': service_type}
        if base_url:
            entry['base_url'] = base_url
        entries.append(entry)

    if channel_type == 'ssm':
        channel = {'type': 'ssm', 'instance_id': instance_id, 'region': region}
    elif channel_type == 'local':
        channel = {'type': 'local'}
    else:
        channel = {'type': 'ssh', 'host': host, 'username': username, 'key_file': key_file}

    return parse_run_config({
        'name': f'quick-{host}',
        'host': host,
        'deadline': deadline,
        'channel': {k: v for k, v in channel.items() if v is not None},
        'services': entries
    }, source='command line')
