"""
SonarQube Handler

Default admin login exchanged for a user token.
"""

from typing import Any, Callable, Dict, Optional

from .base import ServiceHandler
from ..channels.base import RemoteExecutionChannel
from ..httpclient import HttpResponse, ServiceClient
from ..models import InitialSecret, MintedToken, ProbeResult, ProbeSpec


def _valid_login(response: HttpResponse) -> bool:
    return response.status_code == 200 and (response.data or {}).get('valid') is True


class SonarQubeHandler(ServiceHandler):
    """SonarQube: default admin login exchanged for a user token."""

    service_type = "sonarqube"
    description = "SonarQube user token"
    default_port = 9000
    secret_kind = "token"
    mints_tokens = True

    readiness_defaults = {
        'path': '/api/system/status',
        'accepted_status': [200],
        'max_attempts': 60,
        'interval': 10,
    }

    defaults = {
        'username': 'admin',
        'password': 'admin',
        'token_name': 'deploy-token',
        'verify_path': '/api/authentication/validate',
    }

    parameters = {
        **ServiceHandler.parameters,
        'password': {'type': str, 'description': 'Default admin password'},
        'token_name': {'type': str, 'description': 'Name of the minted token'},
        'verify_path': {'type': str, 'description': 'Authenticated endpoint used to verify'},
    }

    def readiness_predicate(self, probe: ProbeSpec) -> Optional[Callable[[ProbeResult], bool]]:
        if probe.kind != 'http':
            return None

        # /api/system/status answers 200 while still STARTING or migrating
        def system_up(result: ProbeResult) -> bool:
            return (result.status_code in probe.accepted_status
                    and '"status":"UP"' in result.body.replace(' ', ''))
        return system_up

    def extract_initial_secret(self, channel: RemoteExecutionChannel) -> InitialSecret:
        return self.default_extractor(accept=_valid_login).extract(channel)

    def credential_auth(self, username: Optional[str], credential: str,
                        kind: Optional[str]) -> Dict[str, Any]:
        if kind == "token":
            return {'type': 'bearer', 'token': credential}
        return self.basic_auth(username, credential)

    def _authenticate(self, client: ServiceClient) -> None:
        response = self.expect(client.get(self.config['verify_path']), 'authenticate')
        if not _valid_login(response):
            raise ValueError("login not valid")

    def _mint_token(self, client: ServiceClient) -> Dict[str, Any]:
        token_name = self.config['token_name']
        # Revoking a token that does not exist is answered with 4xx; ignore it
        client.post('/api/user_tokens/revoke', data={'name': token_name})
        response = client.post('/api/user_tokens/generate', data={'name': token_name})
        return self.expect(response, 'mint-token').data or {}

    def mint_durable_token(self, channel: RemoteExecutionChannel,
                           secret: InitialSecret) -> MintedToken:
        client = self.client(self.basic_auth(secret.username, secret.password))
        try:
            self.step('authenticate', lambda: self._authenticate(client))
            token = self.step('mint-token', lambda: self._mint_token(client))
            value = self.step('parse-token', lambda: token['token'], retry=False)
        finally:
            client.close()

        account_id = token.get('login', secret.username)
        self.logger.info("User token minted", account_id=account_id,
                         token_name=self.config['token_name'])
        return MintedToken(account_id=account_id, name=self.config['token_name'], value=value)

    def verify(self, username: Optional[str], credential: str,
               kind: Optional[str] = None) -> None:
        self.verify_request(self.config['verify_path'],
                            self.credential_auth(username, credential, kind),
                            accept=_valid_login)
