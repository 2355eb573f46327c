"""
Command-line interface for the credential harvester.

stdout carries only the ``KEY=value`` credential lines; status messages and
logs go to stderr.
"""

import functools
from typing import List, Optional, Tuple

import click

from . import __version__
from .config import load_run_config, quick_run_config
from .engine import Engine, RunResult
from .errors import AcquisitionError, ChannelUnavailableError, ConfigurationError
from .loggingx import setup_logging
from .models import CredentialRecord
from .registry import ServiceRegistry
from .reporting import KeyValueReporter

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_CHANNEL = 3


def logging_options(command):
    """Attach the shared logging options to a command."""
    @click.option('-v', '--verbose', is_flag=True, help='Human-readable log output')
    @click.option('--log-level', default='INFO', show_default=True,
                  type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                                    case_sensitive=False),
                  help='Logging level')
    @click.option('--log-file', type=click.Path(dir_okay=False), help='Also log to this file')
    @functools.wraps(command)
    def wrapper(*args, verbose: bool, log_level: str, log_file: Optional[str], **kwargs):
        setup_logging(level=log_level, verbose=verbose, log_file=log_file)
        return command(*args, **kwargs)
    return wrapper


def _engine(ctx: click.Context) -> Engine:
    obj = ctx.obj or {}
    return obj.get('engine') or Engine()


def _emit(records: List[CredentialRecord], output: Optional[str]) -> None:
    reporter = KeyValueReporter()
    if output:
        reporter.write_file(records, output)
    else:
        click.echo(reporter.render(records), nl=False)


def _echo_summary(records: List[CredentialRecord]) -> None:
    for record in records:
        if record.succeeded:
            click.echo(f"✅ {record.service}: {record.status.value}", err=True)
        else:
            failed_at = record.failed_at.value if record.failed_at else 'unknown'
            click.echo(f"❌ {record.service}: {record.status.value} "
                       f"({record.secret}, at {failed_at})", err=True)


def _finish(ctx: click.Context, result: RunResult, output: Optional[str]) -> None:
    _emit(result.records, output)
    _echo_summary(result.records)
    click.echo(f"📋 {result.verified}/{len(result.records)} verified "
               f"in {result.elapsed:.1f}s", err=True)
    ctx.exit(EXIT_OK if result.all_succeeded else EXIT_FAILED)


def _execute(ctx: click.Context, run_config, only: Tuple[str, ...],
             output: Optional[str]) -> None:
    try:
        result = _engine(ctx).run(run_config, only=list(only) or None)
    except ConfigurationError as e:
        click.echo(f"❌ Configuration error: {e}", err=True)
        ctx.exit(EXIT_CONFIG)
    except ChannelUnavailableError as e:
        click.echo(f"❌ {e}", err=True)
        _emit(e.records, output)
        _echo_summary(e.records)
        ctx.exit(EXIT_CHANNEL)
    except AcquisitionError as e:
        click.echo(f"❌ Acquisition failed: {e}", err=True)
        ctx.exit(EXIT_FAILED)
    else:
        _finish(ctx, result, output)


@click.group()
@click.version_option(version=__version__)
def cli():
    """Credential Harvester - collect and verify service credentials."""
    pass


@cli.command()
@click.argument('config_file', type=click.Path(exists=True, dir_okay=False))
@click.option('-o', '--output', type=click.Path(dir_okay=False),
              help='Write credentials to this file (mode 0600) instead of stdout')
@click.option('--deadline', type=float, help='Overall run deadline in seconds')
@click.option('--only', multiple=True, help='Only acquire this service (repeatable)')
@logging_options
@click.pass_context
def acquire(ctx: click.Context, config_file: str, output: Optional[str],
            deadline: Optional[float], only: Tuple[str, ...]):
    """Acquire and verify credentials for the services in CONFIG_FILE."""
    try:
        run_config = load_run_config(config_file)
    except ConfigurationError as e:
        click.echo(f"❌ Configuration error: {e}", err=True)
        ctx.exit(EXIT_CONFIG)

    if deadline is not None:
        run_config.deadline = deadline if deadline > 0 else None

    _execute(ctx, run_config, only, output)


@cli.command()
@click.argument('host')
@click.option('--ssh-key', type=click.Path(), help='SSH private key for the host')
@click.option('--user', default='ec2-user', show_default=True, help='SSH login user')
@click.option('-s', '--service', 'services', multiple=True,
              help='Service as TYPE or TYPE=BASE_URL (repeatable; default jenkins, nexus, grafana)')
@click.option('--channel', 'channel_type', default='ssh', show_default=True,
              type=click.Choice(['ssh', 'ssm', 'local']), help='Remote execution channel')
@click.option('--instance-id', help='EC2 instance id for the ssm channel')
@click.option('--region', help='AWS region for the ssm channel')
@click.option('-o', '--output', type=click.Path(dir_okay=False),
              help='Write credentials to this file (mode 0600) instead of stdout')
@click.option('--deadline', type=float, help='Overall run deadline in seconds')
@logging_options
@click.pass_context
def quick(ctx: click.Context, host: str, ssh_key: Optional[str], user: str,
          services: Tuple[str, ...], channel_type: str, instance_id: Optional[str],
          region: Optional[str], output: Optional[str], deadline: Optional[float]):
    """Acquire credentials from HOST without a configuration file."""
    try:
        run_config = quick_run_config(
            host,
            key_file=ssh_key,
            username=user,
            services=list(services) or None,
            deadline=deadline,
            channel_type=channel_type,
            instance_id=instance_id,
            region=region
        )
    except ConfigurationError as e:
        click.echo(f"❌ Configuration error: {e}", err=True)
        ctx.exit(EXIT_CONFIG)

    _execute(ctx, run_config, (), output)


@cli.command()
@click.argument('config_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--only', multiple=True, help='Only probe this service (repeatable)')
@logging_options
@click.pass_context
def probe(ctx: click.Context, config_file: str, only: Tuple[str, ...]):
    """Wait for the services in CONFIG_FILE to become ready, nothing more."""
    try:
        run_config = load_run_config(config_file)
        result = _engine(ctx).run(run_config, only=list(only) or None, readiness_only=True)
    except ConfigurationError as e:
        click.echo(f"❌ Configuration error: {e}", err=True)
        ctx.exit(EXIT_CONFIG)
    except ChannelUnavailableError as e:
        click.echo(f"❌ {e}", err=True)
        ctx.exit(EXIT_CHANNEL)

    for record in result.records:
        if record.succeeded:
            click.echo(f"✅ {record.service}: ready after {record.attempts} attempt(s)")
        else:
            click.echo(f"❌ {record.service}: {record.secret}")

    ctx.exit(EXIT_OK if result.all_succeeded else EXIT_FAILED)


@cli.command(name='list-services')
@logging_options
def list_services():
    """List all available service types."""
    registry = ServiceRegistry()
    click.echo("Available services:")
    for service_type, info in registry.list_handlers().items():
        port = info.get('default_port') or '-'
        click.echo(f"  {service_type} (port {port}): {info.get('description', 'No description')}")


if __name__ == '__main__':
    cli()
