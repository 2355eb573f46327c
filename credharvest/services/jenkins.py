"""
Jenkins Handler

Authenticates with the initial admin password (or a configured default),
then runs Groovy through the script console to ensure a user account
exists and to mint a named API token for it. Re-running revokes the
previous same-named token before generating a new one.
"""

import re
import secrets
from typing import Dict, Optional

from .base import ServiceHandler
from ..channels.base import RemoteExecutionChannel
from ..errors import ExtractionError, ExtractionFailure
from ..httpclient import ServiceClient
from ..models import InitialSecret, MintedToken

ACCOUNT_ID_PATTERN = re.compile(r'^account-id=(\S+)\s*$', re.MULTILINE)
TOKEN_PATTERN = re.compile(r'^token=([0-9a-f]{32,})\s*$', re.MULTILINE)

ACCOUNT_SCRIPT = """\
import jenkins.model.Jenkins
import hudson.security.HudsonPrivateSecurityRealm
import hudson.security.FullControlOnceLoggedInAuthorizationStrategy

def instance = Jenkins.get()
def realm = instance.getSecurityRealm()
if (!(realm instanceof HudsonPrivateSecurityRealm)) {{
    realm = new HudsonPrivateSecurityRealm(false)
    instance.setSecurityRealm(realm)
    def strategy = new FullControlOnceLoggedInAuthorizationStrategy()
    strategy.setAllowAnonymousRead(false)
    instance.setAuthorizationStrategy(strategy)
}}
def user = realm.getUser({account}) ?: realm.createAccount({account}, {password})
{complete_setup}instance.save()
println "account-id=" + user.getId()
"""

COMPLETE_SETUP = """\
if (!instance.getInstallState().isSetupComplete()) {
    jenkins.install.InstallState.INITIAL_SETUP_COMPLETED.initializeState()
}
"""

TOKEN_SCRIPT = """\
import hudson.model.User
import jenkins.security.ApiTokenProperty

def user = User.getById({account}, false)
def property = user.getProperty(ApiTokenProperty.class)
if (property == null) {{
    property = new ApiTokenProperty()
    user.addProperty(property)
}}
def store = property.getTokenStore()
store.getTokenListSortedByName().findAll {{ it.getName() == {token_name} }}.each {{
    store.revokeToken(it.getUuid())
}}
def result = store.generateNewToken({token_name})
user.save()
println "token=" + result.plainValue
"""


def groovy_string(value: str) -> str:
    """Quote a value as a single-quoted Groovy string literal."""
    return "'" + value.replace('\\', '\\\\').replace("'", "\\'") + "'"


class JenkinsHandler(ServiceHandler):
    """Jenkins: bootstrap password exchanged for a named API token via the script console."""

    service_type = "jenkins"
    description = "Jenkins API token minted through the script console"
    default_port = 8080
    secret_kind = "token"
    mints_tokens = True

    readiness_defaults = {
        'path': '/login',
        'accepted_status': [200],
        'max_attempts': 30,
        'interval': 10,
    }

    defaults = {
        'username': 'admin',
        'runtime': 'docker',
        'container': 'jenkins',
        'password_file': '/var/jenkins_home/secrets/initialAdminPassword',
        'search_roots': ['/var/jenkins_home'],
        'default_password': 'admin',
        'account_name': 'admin',
        'token_name': 'deploy-token',
        'complete_setup_wizard': True,
        'verify_path': '/me/api/json',
    }

    parameters = {
        **ServiceHandler.parameters,
        'runtime': {'type': str, 'description': 'Container runtime: docker, kubectl or none'},
        'container': {'type': str, 'description': 'Container or workload name'},
        'namespace': {'type': str, 'description': 'Kubernetes namespace'},
        'password_file': {'type': str, 'description': 'Initial admin password file'},
        'password_file_name': {'type': str, 'description': 'File name searched for as a fallback'},
        'search_roots': {'type': list, 'description': 'Directories searched as a fallback'},
        'default_password': {'type': str, 'description': 'Password tried when no file exists'},
        'account_name': {'type': str, 'description': 'User that owns the minted token'},
        'account_password': {'type': str, 'description': 'Password for a newly created user'},
        'token_name': {'type': str, 'description': 'Name of the minted token'},
        'complete_setup_wizard': {'type': bool, 'description': 'Mark the setup wizard done'},
        'verify_path': {'type': str, 'description': 'Authenticated endpoint used to verify'},
    }

    def extract_initial_secret(self, channel: RemoteExecutionChannel) -> InitialSecret:
        try:
            return self.file_extractor().extract(channel)
        except ExtractionError as e:
            default_password = self.config.get('default_password')
            if e.kind != ExtractionFailure.NOT_FOUND or not default_password:
                raise
            self.logger.info("Initial admin password absent, using default password")
            return InitialSecret(self.config['username'], default_password, source="default")

    def _crumb_headers(self, client: ServiceClient) -> Dict[str, str]:
        response = client.get('/crumbIssuer/api/json')
        if response.status_code == 404:
            # CSRF protection disabled
            return {}
        data = self.expect(response, 'crumb').data
        return {data['crumbRequestField']: data['crumb']}

    def _run_script(self, client: ServiceClient, headers: Dict[str, str],
                    script: str, step: str) -> str:
        response = client.post('/scriptText', data={'script': script}, headers=headers)
        return self.expect(response, step).text

    def account_script(self) -> str:
        password = self.config.get('account_password') or secrets.token_urlsafe(24)
        return ACCOUNT_SCRIPT.format(
            account=groovy_string(self.config['account_name']),
            password=groovy_string(password),
            complete_setup=COMPLETE_SETUP if self.config.get('complete_setup_wizard') else ''
        )

    def token_script(self, account_id: str) -> str:
        return TOKEN_SCRIPT.format(
            account=groovy_string(account_id),
            token_name=groovy_string(self.config['token_name'])
        )

    @staticmethod
    def _parse(pattern: re.Pattern, output: str, what: str) -> str:
        match = pattern.search(output)
        if match is None:
            raise ValueError(f"no {what} in script output")
        return match.group(1)

    def mint_durable_token(self, channel: RemoteExecutionChannel,
                           secret: InitialSecret) -> MintedToken:
        # One session throughout: Jenkins ties crumbs to the session cookie
        client = self.client(self.basic_auth(secret.username, secret.password))
        try:
            self.step('authenticate',
                      lambda: self.expect(client.get('/api/json'), 'authenticate'))
            headers = self.step('crumb', lambda: self._crumb_headers(client))

            output = self.step('create-account', lambda: self._run_script(
                client, headers, self.account_script(), 'create-account'))
            account_id = self.step('parse-account', lambda: self._parse(
                ACCOUNT_ID_PATTERN, output, 'account id'), retry=False)

            output = self.step('mint-token', lambda: self._run_script(
                client, headers, self.token_script(account_id), 'mint-token'))
            value = self.step('parse-token', lambda: self._parse(
                TOKEN_PATTERN, output, 'token'), retry=False)
        finally:
            client.close()

        self.logger.info("API token minted", account_id=account_id,
                         token_name=self.config['token_name'])
        return MintedToken(account_id=account_id, name=self.config['token_name'], value=value)

    def token_username(self, secret: InitialSecret, token: MintedToken) -> str:
        return token.account_id

    def verify(self, username: Optional[str], credential: str,
               kind: Optional[str] = None) -> None:
        # The login page is served to anyone; /me/api/json needs a valid login
        self.verify_request(self.config['verify_path'],
                            self.basic_auth(username, credential))
