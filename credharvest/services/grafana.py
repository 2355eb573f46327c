"""
Grafana Handler

Checks Grafana's default admin login, then creates (or reuses) a service
account and mints a token for it through the service-account API.
"""

from typing import Any, Dict, Optional

from .base import ServiceHandler
from ..channels.base import RemoteExecutionChannel
from ..errors import MintError
from ..httpclient import ServiceClient
from ..models import InitialSecret, MintedToken


class GrafanaHandler(ServiceHandler):
    """Grafana: default admin login exchanged for a service-account token."""

    service_type = "grafana"
    description = "Grafana service-account token"
    default_port = 3000
    secret_kind = "token"
    mints_tokens = True

    readiness_defaults = {
        'path': '/api/health',
        'accepted_status': [200],
        'max_attempts': 30,
        'interval': 10,
    }

    defaults = {
        'username': 'admin',
        'password': 'admin',
        'account_name': 'deploy-script',
        'account_role': 'Admin',
        'token_name': 'deploy-token',
        'verify_path': '/api/user',
    }

    parameters = {
        **ServiceHandler.parameters,
        'password': {'type': str, 'description': 'Default admin password'},
        'account_name': {'type': str, 'description': 'Service account to create or reuse'},
        'account_role': {'type': str, 'description': 'Role given to the service account'},
        'token_name': {'type': str, 'description': 'Name of the minted token'},
        'verify_path': {'type': str, 'description': 'Authenticated endpoint used to verify'},
    }

    def extract_initial_secret(self, channel: RemoteExecutionChannel) -> InitialSecret:
        return self.default_extractor().extract(channel)

    def credential_auth(self, username: Optional[str], credential: str,
                        kind: Optional[str]) -> Dict[str, Any]:
        if kind == "token":
            return {'type': 'bearer', 'token': credential}
        return self.basic_auth(username, credential)

    def _find_account(self, client: ServiceClient, name: str) -> Optional[Dict[str, Any]]:
        response = self.expect(
            client.get('/api/serviceaccounts/search', params={'query': name}),
            'create-account'
        )
        for account in (response.data or {}).get('serviceAccounts', []):
            if account.get('name') == name:
                return account
        return None

    def _create_account(self, client: ServiceClient) -> Dict[str, Any]:
        name = self.config['account_name']
        response = client.post('/api/serviceaccounts', json={
            'name': name,
            'role': self.config['account_role'],
            'isDisabled': False,
        })
        if response.status_code in (200, 201):
            self.logger.info("Service account created", account=name)
            return response.data or {}

        if response.status_code in (400, 409):
            # Name already taken: reuse the existing account
            existing = self._find_account(client, name)
            if existing is not None:
                self.logger.info("Reusing existing service account", account=name)
                return existing

        raise MintError(
            f"Service account creation returned HTTP {response.status_code}",
            step='create-account',
            service=self.name,
            body=response.text[:200]
        )

    def _mint_token(self, client: ServiceClient, account_id: str) -> Dict[str, Any]:
        token_name = self.config['token_name']
        tokens_path = f'/api/serviceaccounts/{account_id}/tokens'

        listing = self.expect(client.get(tokens_path), 'mint-token')
        for token in listing.data or []:
            if token.get('name') == token_name:
                self.logger.info("Rotating existing token", token_name=token_name)
                self.expect(client.delete(f"{tokens_path}/{token['id']}"), 'mint-token')

        response = self.expect(client.post(tokens_path, json={'name': token_name}),
                               'mint-token', statuses=(200, 201))
        return response.data or {}

    def mint_durable_token(self, channel: RemoteExecutionChannel,
                           secret: InitialSecret) -> MintedToken:
        client = self.client(self.basic_auth(secret.username, secret.password))
        try:
            self.step('authenticate',
                      lambda: self.expect(client.get('/api/user'), 'authenticate'))

            account = self.step('create-account', lambda: self._create_account(client))
            account_id = self.step('parse-account', lambda: str(int(account['id'])),
                                   retry=False)

            token = self.step('mint-token', lambda: self._mint_token(client, account_id))
            value = self.step('parse-token', lambda: self._token_value(token), retry=False)
        finally:
            client.close()

        self.logger.info("Service account token minted", account_id=account_id,
                         token_name=self.config['token_name'])
        return MintedToken(account_id=account_id, name=self.config['token_name'], value=value)

    def _token_value(self, token: Dict[str, Any]) -> str:
        value = token['key']
        if not isinstance(value, str) or not value:
            raise ValueError("token response has no key")
        return value

    def verify(self, username: Optional[str], credential: str,
               kind: Optional[str] = None) -> None:
        self.verify_request(self.config['verify_path'],
                            self.credential_auth(username, credential, kind))
