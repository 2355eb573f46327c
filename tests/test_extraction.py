"""Tests for initial secret extraction."""

import pytest

from credharvest.errors import ExtractionError, ExtractionFailure
from credharvest.extraction import (DefaultCredentialExtractor, FileReadExtractor,
                                    in_container)
from credharvest.httpclient import ServiceClient
from credharvest.models import CommandResult

from conftest import FakeChannel, FakeResponse, channel_error


def file_extractor(**overrides):
    settings = dict(service="nexus", primary_path="/nexus-data/admin.password",
                    search_roots=["/nexus-data", "/opt"], runtime="none",
                    retry_delay=0, sleep=lambda s: None)
    settings.update(overrides)
    return FileReadExtractor(**settings)


class TestInContainer:
    """Wrapping commands for the container runtime."""

    def test_docker_exec(self):
        command = in_container("cat /nexus-data/admin.password", "docker", "nexus")
        assert command == ("docker exec $(docker ps -qf name=nexus | head -n 1) "
                           "sh -c 'cat /nexus-data/admin.password'")

    def test_kubectl_exec_with_namespace(self):
        command = in_container("cat /x", "kubectl", "jenkins", namespace="ci")
        assert command == "kubectl exec -n ci deploy/jenkins -- sh -c 'cat /x'"

    def test_kubectl_keeps_explicit_workload(self):
        command = in_container("cat /x", "kubectl", "statefulset/nexus")
        assert command == "kubectl exec statefulset/nexus -- sh -c 'cat /x'"

    def test_host_filesystem(self):
        assert in_container("cat /x", "none", "nexus") == "cat /x"

    def test_unknown_runtime(self):
        with pytest.raises(ValueError):
            in_container("cat /x", "podman", "nexus")


class TestFileReadExtractor:
    """Primary path read and search fallback."""

    def test_primary_path(self):
        channel = FakeChannel(commands=[("cat /nexus-data/admin.password", "pw-1\n")])

        secret = file_extractor().extract(channel)

        assert secret.username == "admin"
        assert secret.password == "pw-1"
        assert secret.source == "file"
        assert len(channel.executed) == 1

    def test_search_fallback_finds_file(self):
        channel = FakeChannel(commands=[
            ("cat /nexus-data/admin.password", CommandResult(exit_code=1)),
            ("find ", "/opt/x/admin.password\n"),
            ("cat /opt/x/admin.password", "s3cr3t\n"),
        ])

        secret = file_extractor().extract(channel)

        assert secret.password == "s3cr3t"
        assert secret.source == "search"
        assert "-name admin.password" in channel.executed[1]

    def test_nothing_found(self):
        channel = FakeChannel(commands=[("find ", "")])

        with pytest.raises(ExtractionError) as exc_info:
            file_extractor().extract(channel)

        assert exc_info.value.kind == ExtractionFailure.NOT_FOUND

    def test_sentinel_content_is_not_a_secret(self):
        channel = FakeChannel(commands=[
            ("cat /nexus-data/admin.password", "check-manually\n"),
            ("find ", ""),
        ])

        with pytest.raises(ExtractionError) as exc_info:
            file_extractor().extract(channel)

        assert exc_info.value.kind == ExtractionFailure.NOT_FOUND

    def test_channel_failure_retried_once(self):
        flaky = iter([channel_error(), CommandResult(stdout="pw-2\n")])

        class FlakyChannel(FakeChannel):
            def execute(self, command, timeout=None):
                self.executed.append(command)
                outcome = next(flaky)
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome

        channel = FlakyChannel()
        assert file_extractor().extract(channel).password == "pw-2"
        assert len(channel.executed) == 2

    def test_persistent_channel_failure(self):
        channel = FakeChannel(commands=[("cat", channel_error())])

        with pytest.raises(ExtractionError) as exc_info:
            file_extractor().extract(channel)

        assert exc_info.value.kind == ExtractionFailure.COMMAND_FAILED

    def test_runs_inside_container(self):
        channel = FakeChannel(commands=[("admin.password", "pw\n")])

        file_extractor(runtime="docker", container="nexus").extract(channel)

        assert channel.executed[0].startswith("docker exec")


class TestDefaultCredentialExtractor:
    """Default login check."""

    def extractor(self, server, **overrides):
        settings = dict(
            service="grafana",
            client_factory=lambda: ServiceClient("http://grafana.test",
                                                 session=server.session()),
            username="admin", password="admin", check_path="/api/user",
            retry_delay=0, sleep=lambda s: None
        )
        settings.update(overrides)
        return DefaultCredentialExtractor(**settings)

    def test_default_accepted(self, server):
        server.route('GET', '/api/user', FakeResponse(200, {"login": "admin"}))

        secret = self.extractor(server).extract()

        assert (secret.username, secret.password, secret.source) == ("admin", "admin", "default")
        assert server.requests[0].auth == ("admin", "admin")

    def test_default_rejected(self, server):
        server.route('GET', '/api/user', FakeResponse(401, {"message": "Invalid username or password"}))

        with pytest.raises(ExtractionError) as exc_info:
            self.extractor(server).extract()

        assert exc_info.value.kind == ExtractionFailure.DEFAULT_REJECTED
