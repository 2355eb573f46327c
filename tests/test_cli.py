"""Tests for the command-line interface."""

import pytest
from click.testing import CliRunner

from credharvest.cli import EXIT_CHANNEL, EXIT_CONFIG, EXIT_FAILED, EXIT_OK, cli
from credharvest.engine import Engine
from credharvest.registry import ServiceRegistry

from conftest import FakeChannel, FakeResponse, channel_error

CONFIG = """\
name: cli-test
channel:
  type: local
services:
  - name: nexus
    type: nexus
    base_url: http://nexus.test
    runtime: none
    retry_delay: 0
    readiness: {max_attempts: 2, interval: 1}
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "run.yaml"
    path.write_text(CONFIG)
    return str(path)


@pytest.fixture
def nexus_server(server):
    server.route('GET', '/service/rest/v1/status', FakeResponse(200))
    server.route('GET', '/service/rest/v1/status/check',
                 lambda r: FakeResponse(200 if r.auth == ('admin', 's3cr3t') else 401))
    return server


def invoke(args, server, channel_factory):
    engine = Engine(registry=ServiceRegistry(),
                    channel_factory=lambda config: channel_factory(),
                    session_factory=server.session,
                    sleep=lambda seconds: True)
    return CliRunner().invoke(cli, args + ['--log-level', 'CRITICAL'], obj={'engine': engine})


class TestAcquire:
    """acquire command."""

    def test_verified_credentials_printed(self, config_file, nexus_server):
        result = invoke(['acquire', config_file], nexus_server,
                        lambda: FakeChannel(commands=[("admin.password", "s3cr3t\n")]))

        assert result.exit_code == EXIT_OK
        assert "NEXUS_URL=http://nexus.test" in result.output
        assert "NEXUS_PASSWORD=s3cr3t" in result.output
        assert "NEXUS_STATUS=verified" in result.output

    def test_failed_service_exit_code(self, config_file, nexus_server):
        result = invoke(['acquire', config_file], nexus_server, FakeChannel)

        assert result.exit_code == EXIT_FAILED
        assert "NEXUS_PASSWORD=check-manually" in result.output
        assert "NEXUS_STATUS=failed" in result.output

    def test_channel_unavailable(self, config_file, nexus_server):
        result = invoke(['acquire', config_file], nexus_server,
                        lambda: FakeChannel(open_error=channel_error("refused")))

        assert result.exit_code == EXIT_CHANNEL
        assert "NEXUS_PASSWORD=channel-failed" in result.output

    def test_output_file(self, config_file, nexus_server, tmp_path):
        output = tmp_path / "creds.env"

        result = invoke(['acquire', config_file, '--output', str(output)], nexus_server,
                        lambda: FakeChannel(commands=[("admin.password", "s3cr3t\n")]))

        assert result.exit_code == EXIT_OK
        assert "NEXUS_PASSWORD" not in result.output
        assert "NEXUS_PASSWORD=s3cr3t" in output.read_text()

    def test_configuration_error(self, tmp_path, server):
        path = tmp_path / "bad.yaml"
        path.write_text("services:\n  - type: artifactory\n    base_url: http://a.test\n")

        result = invoke(['acquire', str(path)], server, FakeChannel)

        assert result.exit_code == EXIT_CONFIG
        assert "artifactory" in result.output

    def test_unknown_only_name(self, config_file, server):
        result = invoke(['acquire', config_file, '--only', 'jenkins'], server, FakeChannel)

        assert result.exit_code == EXIT_CONFIG


class TestOtherCommands:
    """probe, quick and list-services."""

    def test_probe(self, config_file, nexus_server):
        result = invoke(['probe', config_file], nexus_server, FakeChannel)

        assert result.exit_code == EXIT_OK
        assert "nexus: ready after 1 attempt(s)" in result.output
        assert nexus_server.calls('GET', '/service/rest/v1/status/check') == []

    def test_quick_without_key_is_configuration_error(self, server):
        result = CliRunner().invoke(cli, ['quick', '10.0.0.5', '--log-level', 'CRITICAL'])

        assert result.exit_code == EXIT_CONFIG
        assert "key_file" in result.output

    def test_list_services(self):
        result = CliRunner().invoke(cli, ['list-services'])

        assert result.exit_code == 0
        for service_type in ("jenkins", "nexus", "grafana", "sonarqube", "registry", "http"):
            assert f"  {service_type} (port" in result.output
