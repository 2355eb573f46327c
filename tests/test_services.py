"""Tests for the per-service acquisition state machines."""

import itertools

import pytest

from credharvest import sentinels
from credharvest.errors import ConfigurationError, VerificationError
from credharvest.models import AcquisitionState, CommandResult, VerificationStatus
from credharvest.polling import Deadline
from credharvest.services import (GrafanaHandler, HttpReadinessHandler, JenkinsHandler,
                                  NexusHandler, RegistryHandler, SonarQubeHandler)
from credharvest.services.jenkins import groovy_string

from conftest import FakeChannel, FakeResponse

JENKINS_TOKEN = "11" + "a3f" * 11


class TestHandlerConfiguration:
    """Building targets from handler defaults and configuration."""

    def test_base_url_from_host_and_default_port(self, make_handler):
        handler = make_handler(NexusHandler, base_url=None, host="10.0.0.5")
        assert handler.base_url == "http://10.0.0.5:8081"
        assert handler.target.probe.path == "/service/rest/v1/status"

    def test_missing_base_url_and_host(self, server):
        with pytest.raises(ConfigurationError):
            NexusHandler({'name': 'nexus'}, session_factory=server.session)

    def test_wrong_parameter_type(self, make_handler):
        with pytest.raises(ConfigurationError) as exc_info:
            make_handler(NexusHandler, search_roots="/nexus-data")
        assert "search_roots" in str(exc_info.value)

    def test_unknown_runtime(self, make_handler):
        with pytest.raises(ConfigurationError):
            make_handler(NexusHandler, runtime="podman")

    def test_readiness_overrides(self, make_handler):
        handler = make_handler(GrafanaHandler,
                               readiness={'max_attempts': 7, 'interval': 3, 'backoff': 1.5})
        assert handler.target.max_attempts == 7
        assert handler.target.interval == 3.0
        assert handler.target.backoff == 1.5

    def test_invalid_readiness(self, make_handler):
        with pytest.raises(ConfigurationError):
            make_handler(GrafanaHandler, readiness={'max_attempts': 0})

    def test_remote_probe_command(self, make_handler):
        handler = make_handler(NexusHandler, base_url="http://10.0.0.5:8081",
                               readiness={'kind': 'remote'})
        command = handler.target.probe.command
        assert "http://localhost:8081/service/rest/v1/status" in command
        assert "echo READY" in command


class TestNexusHandler:
    """File-read password verified with Basic auth."""

    def ready(self, server):
        server.route('GET', '/service/rest/v1/status', FakeResponse(200))

    def test_fallback_search_then_verified(self, server, make_handler):
        self.ready(server)
        server.route('GET', '/service/rest/v1/status/check',
                     lambda r: FakeResponse(200 if r.auth == ('admin', 's3cr3t') else 401))
        channel = FakeChannel(commands=[
            ("cat /nexus-data/admin.password", CommandResult(exit_code=1)),
            ("find ", "/opt/x/admin.password\n"),
            ("cat /opt/x/admin.password", "s3cr3t\n"),
        ])

        record = make_handler(NexusHandler, runtime="none").acquire(channel)

        assert record.status == VerificationStatus.VERIFIED
        assert record.state == AcquisitionState.VERIFIED
        assert record.secret == "s3cr3t"
        assert record.secret_kind == "password"
        assert record.username == "admin"

    def test_password_file_missing(self, server, make_handler):
        self.ready(server)

        record = make_handler(NexusHandler).acquire(FakeChannel())

        assert record.status == VerificationStatus.FAILED
        assert record.secret == sentinels.CHECK_MANUALLY
        assert record.failed_at == AcquisitionState.SECRET_EXTRACTION

    def test_never_ready(self, server, make_handler, clock):
        server.route('GET', '/service/rest/v1/status', FakeResponse(503))

        record = make_handler(NexusHandler).acquire(FakeChannel())

        assert record.secret == sentinels.NOT_READY
        assert record.attempts == 3
        assert record.failed_at == AcquisitionState.POLLING
        assert len(server.calls('GET', '/service/rest/v1/status')) == 3

    def test_rejected_password_fails_verification(self, server, make_handler):
        self.ready(server)
        server.route('GET', '/service/rest/v1/status/check',
                     FakeResponse(401, "Unauthorized: bad credentials"))
        channel = FakeChannel(commands=[("admin.password", "stale\n")])

        record = make_handler(NexusHandler).acquire(channel)

        assert record.status == VerificationStatus.FAILED
        assert record.secret == sentinels.VERIFICATION_FAILED
        assert record.response == "Unauthorized: bad credentials"
        assert record.failed_at == AcquisitionState.VERIFICATION

    def test_verify_wrong_secret_raises(self, server, make_handler):
        server.route('GET', '/service/rest/v1/status/check', FakeResponse(401, "nope"))

        with pytest.raises(VerificationError) as exc_info:
            make_handler(NexusHandler).verify("admin", "wrong", "password")

        assert exc_info.value.status_code == 401
        assert exc_info.value.response == "nope"

    def test_cancelled_deadline(self, server, make_handler, clock):
        self.ready(server)
        deadline = Deadline(clock=clock)
        deadline.cancel()

        record = make_handler(NexusHandler).acquire(FakeChannel(), deadline=deadline)

        assert record.status == VerificationStatus.TIMED_OUT
        assert record.secret == sentinels.TIMED_OUT


class GrafanaState:
    """In-memory Grafana service-account API."""

    def __init__(self, server, admin_password="admin"):
        self.accounts = {}
        self.tokens = {}
        self.ids = itertools.count(1)
        self.deleted = []
        server.route('GET', '/api/health', FakeResponse(200, {"database": "ok"}))
        server.route('GET', '/api/user', self.user)
        server.route('POST', '/api/serviceaccounts', self.create_account)
        server.route('GET', '/api/serviceaccounts/search', self.search)
        self.admin_password = admin_password
        self.server = server

    def user(self, request):
        if request.auth == ('admin', self.admin_password):
            return FakeResponse(200, {"login": "admin"})
        if request.bearer and any(t['key'] == request.bearer for t in self.tokens.values()):
            return FakeResponse(200, {"login": "sa-deploy-script"})
        return FakeResponse(401, {"message": "invalid API key"})

    def create_account(self, request):
        name = request.json['name']
        if any(a['name'] == name for a in self.accounts.values()):
            return FakeResponse(400, {"message": "service account already exists"})
        account_id = next(self.ids)
        self.accounts[account_id] = {'id': account_id, 'name': name}
        path = f'/api/serviceaccounts/{account_id}/tokens'
        self.server.route('GET', path, self.list_tokens)
        self.server.route('POST', path, self.create_token)
        return FakeResponse(201, self.accounts[account_id])

    def search(self, request):
        return FakeResponse(200, {"serviceAccounts": list(self.accounts.values())})

    def list_tokens(self, request):
        return FakeResponse(200, [{'id': t['id'], 'name': t['name']} for t in self.tokens.values()])

    def create_token(self, request):
        token_id = next(self.ids)
        token = {'id': token_id, 'name': request.json['name'], 'key': f"glsa_{token_id:04d}"}
        self.tokens[token_id] = token
        self.server.route('DELETE', f"{request.path}/{token_id}", self.delete_token)
        return FakeResponse(200, token)

    def delete_token(self, request):
        token_id = int(request.path.rsplit('/', 1)[-1])
        self.deleted.append(token_id)
        del self.tokens[token_id]
        return FakeResponse(200, {"message": "deleted"})


class TestGrafanaHandler:
    """Default admin login exchanged for a service-account token."""

    def test_mints_verified_token(self, server, make_handler, channel):
        GrafanaState(server)

        record = make_handler(GrafanaHandler).acquire(channel)

        assert record.status == VerificationStatus.VERIFIED
        assert record.secret_kind == "token"
        assert record.secret.startswith("glsa_")
        create = server.calls('POST', '/api/serviceaccounts')[0]
        assert create.json == {"name": "deploy-script", "role": "Admin", "isDisabled": False}

    def test_second_run_rotates_token(self, server, make_handler, channel):
        state = GrafanaState(server)
        handler = make_handler(GrafanaHandler)

        first = handler.acquire(channel)
        second = handler.acquire(channel)

        assert first.status == second.status == VerificationStatus.VERIFIED
        assert first.secret != second.secret
        assert len(state.accounts) == 1
        assert len(state.deleted) == 1
        assert [t['key'] for t in state.tokens.values()] == [second.secret]

    def test_default_login_rejected(self, server, make_handler, channel):
        GrafanaState(server, admin_password="changed")

        record = make_handler(GrafanaHandler).acquire(channel)

        assert record.status == VerificationStatus.FAILED
        assert record.secret == sentinels.CREDENTIALS_CHECK_FAILED
        assert record.failed_at == AcquisitionState.SECRET_EXTRACTION
        assert server.calls('POST', '/api/serviceaccounts') == []

    def test_token_without_key(self, server, make_handler, channel):
        state = GrafanaState(server)
        state.create_token = lambda request: FakeResponse(200, {"id": 9, "name": "deploy-token"})
        server.route('POST', '/api/serviceaccounts', lambda r: FakeResponse(201, {"id": 4}))
        server.route('GET', '/api/serviceaccounts/4/tokens', FakeResponse(200, []))
        server.route('POST', '/api/serviceaccounts/4/tokens', state.create_token)

        record = make_handler(GrafanaHandler).acquire(channel)

        assert record.secret == sentinels.TOKEN_GENERATION_FAILED
        assert record.failed_at == AcquisitionState.TOKEN_MINTING
        assert "parse-token" in record.error


class JenkinsState:
    """Jenkins endpoints used during token minting."""

    def __init__(self, server, password="init-pw", crumb=True):
        self.password = password
        self.scripts = []
        self.issued = []
        self.active = set()
        server.route('GET', '/login', FakeResponse(200, "<html>login</html>"))
        server.route('GET', '/api/json', self.authenticated)
        if crumb:
            server.route('GET', '/crumbIssuer/api/json', FakeResponse(
                200, {"crumbRequestField": "Jenkins-Crumb", "crumb": "c0ffee"}))
        server.route('POST', '/scriptText', self.script)
        server.route('GET', '/me/api/json', self.me)
        self.crumb = crumb

    def authenticated(self, request):
        if request.auth == ('admin', self.password):
            return FakeResponse(200, {"mode": "NORMAL"})
        return FakeResponse(401, "Unauthorized")

    def script(self, request):
        if self.crumb and request.headers.get('Jenkins-Crumb') != 'c0ffee':
            return FakeResponse(403, "No valid crumb was included in the request")
        script = request.data['script']
        self.scripts.append(script)
        if 'account-id=' in script:
            return FakeResponse(200, "account-id=admin\n")
        if "revokeToken" in script:
            self.active.clear()
        token = f"{11 + len(self.issued)}" + "a3f" * 11
        self.issued.append(token)
        self.active.add(token)
        return FakeResponse(200, f"token={token}\n")

    def me(self, request):
        if request.auth in {('admin', token) for token in self.active}:
            return FakeResponse(200, {"id": "admin"})
        return FakeResponse(401, "Unauthorized")


class TestJenkinsHandler:
    """Initial admin password exchanged for an API token."""

    def test_mints_verified_token(self, server, make_handler):
        state = JenkinsState(server)
        channel = FakeChannel(commands=[("initialAdminPassword", "init-pw\n")])

        record = make_handler(JenkinsHandler).acquire(channel)

        assert record.status == VerificationStatus.VERIFIED
        assert record.username == "admin"
        assert record.secret == JENKINS_TOKEN
        assert record.secret_kind == "token"
        assert "generateNewToken('deploy-token')" in state.scripts[1]
        assert "revokeToken" in state.scripts[1]
        assert channel.executed[0].startswith("docker exec")

    def test_second_run_revokes_previous_token(self, server, make_handler):
        state = JenkinsState(server)
        handler = make_handler(JenkinsHandler)

        first = handler.acquire(FakeChannel(commands=[("initialAdminPassword", "init-pw\n")]))
        second = handler.acquire(FakeChannel(commands=[("initialAdminPassword", "init-pw\n")]))

        assert first.status == second.status == VerificationStatus.VERIFIED
        assert first.secret != second.secret
        assert state.active == {second.secret}
        with pytest.raises(VerificationError):
            handler.verify("admin", first.secret, "token")

    def test_cancelled_retry_reports_timed_out(self, server, clock):
        JenkinsState(server)
        deadline = Deadline()

        def reject_and_cancel(request):
            deadline.cancel()
            return FakeResponse(401, "Unauthorized")

        server.route('GET', '/api/json', reject_and_cancel)
        handler = JenkinsHandler({'name': 'jenkins', 'base_url': 'http://jenkins.test',
                                  'retry_delay': 0}, session_factory=server.session, clock=clock)

        record = handler.acquire(FakeChannel(commands=[("initialAdminPassword", "init-pw\n")]),
                                 deadline=deadline)

        assert record.status == VerificationStatus.TIMED_OUT
        assert record.secret == sentinels.TIMED_OUT
        assert len(server.calls('GET', '/api/json')) == 1

    def test_without_crumb_issuer(self, server, make_handler):
        JenkinsState(server, crumb=False)
        channel = FakeChannel(commands=[("initialAdminPassword", "init-pw\n")])

        record = make_handler(JenkinsHandler).acquire(channel)

        assert record.status == VerificationStatus.VERIFIED

    def test_falls_back_to_default_password(self, server, make_handler):
        JenkinsState(server, password="admin")

        record = make_handler(JenkinsHandler).acquire(FakeChannel())

        assert record.status == VerificationStatus.VERIFIED

    def test_bad_password_fails_authenticate_step(self, server, make_handler):
        JenkinsState(server, password="something-else")
        channel = FakeChannel(commands=[("initialAdminPassword", "init-pw\n")])

        record = make_handler(JenkinsHandler).acquire(channel)

        assert record.secret == sentinels.TOKEN_GENERATION_FAILED
        assert record.failed_at == AcquisitionState.TOKEN_MINTING
        assert "authenticate" in record.error
        # One attempt plus the single retry
        assert len(server.calls('GET', '/api/json')) == 2

    def test_unparseable_token_output(self, server, make_handler):
        state = JenkinsState(server)
        server.route('POST', '/scriptText', lambda r: FakeResponse(
            200, "account-id=admin\n" if 'account-id=' in r.data['script'] else "token=short\n"))
        channel = FakeChannel(commands=[("initialAdminPassword", "init-pw\n")])

        record = make_handler(JenkinsHandler).acquire(channel)

        assert record.secret == sentinels.TOKEN_GENERATION_FAILED
        assert "parse-token" in record.error
        assert state.scripts == []

    def test_groovy_string_escaping(self):
        assert groovy_string("it's") == "'it\\'s'"
        assert groovy_string("a\\b") == "'a\\\\b'"


class TestSonarQubeHandler:
    """Readiness on system status and user token minting."""

    def test_waits_for_status_up(self, server, make_handler, clock):
        server.route('GET', '/api/system/status', [
            FakeResponse(200, {"status": "STARTING"}),
            FakeResponse(200, {"status": "UP"}),
        ])
        server.route('GET', '/api/authentication/validate', lambda r: FakeResponse(
            200, {"valid": r.auth == ('admin', 'admin') or r.bearer == 'squ_1'}))
        server.route('POST', '/api/user_tokens/generate', FakeResponse(
            200, {"login": "admin", "name": "deploy-token", "token": "squ_1"}))

        record = make_handler(SonarQubeHandler).acquire(FakeChannel())

        assert record.attempts == 2
        assert record.status == VerificationStatus.VERIFIED
        assert record.secret == "squ_1"
        assert server.calls('POST', '/api/user_tokens/revoke')


class TestRegistryHandler:
    """Readiness-only service."""

    def test_ready_registry_is_unverified(self, server, make_handler):
        server.route('GET', '/v2/', FakeResponse(401))

        record = make_handler(RegistryHandler).acquire(FakeChannel())

        assert record.status == VerificationStatus.UNVERIFIED
        assert record.secret is None
        assert record.secret_kind is None
        assert record.succeeded

    def test_generic_http_service(self, server, make_handler):
        server.route('GET', '/', FakeResponse(302))
        handler = make_handler(HttpReadinessHandler, name="kafka-manager", base_url=None,
                               host="10.0.0.5", port=9001)

        record = handler.acquire(FakeChannel())

        assert handler.base_url == "http://10.0.0.5:9001"
        assert record.status == VerificationStatus.UNVERIFIED
        assert record.secret_kind is None

    def test_generic_http_service_needs_a_port(self, server):
        with pytest.raises(ConfigurationError):
            HttpReadinessHandler({'name': 'kafka-manager', 'host': '10.0.0.5'},
                                 session_factory=server.session)

    def test_readiness_only_run_stops_after_polling(self, server, make_handler, channel):
        GrafanaState(server)

        record = make_handler(GrafanaHandler).acquire(channel, readiness_only=True)

        assert record.status == VerificationStatus.UNVERIFIED
        assert record.state == AcquisitionState.POLLING
        assert server.calls('GET', '/api/user') == []
