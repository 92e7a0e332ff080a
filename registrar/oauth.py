"""
OAuth sign-in with Google and GitHub.

Each provider turns an authorization code into an access token and the token
into an OAuthProfile. The post-login redirect target travels through the
provider inside the `state` parameter, Fernet-encrypted and time-limited.
"""
import base64
import hashlib
import json
import logging
from urllib.parse import urlencode

import requests
from cryptography.fernet import Fernet, InvalidToken

from .errors import BadRequest, NotFound
from .models import AuthProvider
from .user_manager import OAuthProfile

logger = logging.getLogger(__name__)

DEFAULT_REDIRECT = '/'


class OAuthError(Exception):
    """The provider refused the code or returned an unusable response."""


def _fernet(secret: str) -> Fernet:
    key = hashlib.sha256(secret.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(key))


def _safe_redirect(target) -> str:
    # Only same-site paths; anything else could bounce users off-site.
    if isinstance(target, str) and target.startswith('/') and not target.startswith('//'):
        return target
    return DEFAULT_REDIRECT


def encode_state(redirect_to: str, secret: str) -> str:
    payload = json.dumps({'redirect_to': _safe_redirect(redirect_to)})
    return _fernet(secret).encrypt(payload.encode()).decode()


def decode_state(state, secret: str, max_age: int = 600) -> str:
    """Redirect target carried in `state`, or "/" if it is missing, tampered or expired."""
    if not state:
        return DEFAULT_REDIRECT
    try:
        payload = _fernet(secret).decrypt(state.encode(), ttl=max_age)
        return _safe_redirect(json.loads(payload).get('redirect_to'))
    except (InvalidToken, ValueError, AttributeError) as e:
        logger.warning(f"Discarding invalid OAuth state: {e}")
        return DEFAULT_REDIRECT


class OAuthProvider:
    name: str = None
    authorize_endpoint: str = None
    scope: str = None

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str, timeout: int = 10):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout

    def authorization_url(self, state: str) -> str:
        params = {
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'response_type': 'code',
            'scope': self.scope,
            'state': state,
        }
        params.update(self.extra_authorize_params())
        return f"{self.authorize_endpoint}?{urlencode(params)}"

    def extra_authorize_params(self) -> dict:
        return {}

    def exchange_code(self, code: str) -> str:
        raise NotImplementedError

    def fetch_profile(self, access_token: str) -> OAuthProfile:
        raise NotImplementedError

    def _json(self, response: requests.Response, what: str) -> dict:
        if response.status_code != 200:
            raise OAuthError(f"{self.name} {what} failed with status {response.status_code}")
        try:
            return response.json()
        except ValueError:
            raise OAuthError(f"{self.name} {what} returned invalid JSON")


class GoogleOAuth(OAuthProvider):
    name = AuthProvider.GOOGLE.value
    authorize_endpoint = 'https://accounts.google.com/o/oauth2/v2/auth'
    token_endpoint = 'https://oauth2.googleapis.com/token'
    userinfo_endpoint = 'https://www.googleapis.com/oauth2/v3/userinfo'
    scope = 'openid email profile'

    def extra_authorize_params(self) -> dict:
        return {'access_type': 'online', 'prompt': 'select_account'}

    def exchange_code(self, code: str) -> str:
        try:
            response = requests.post(self.token_endpoint, data={
                'code': code,
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'redirect_uri': self.redirect_uri,
                'grant_type': 'authorization_code',
            }, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise OAuthError(f"Google token exchange failed: {e}")

        token = self._json(response, 'token exchange').get('access_token')
        if not token:
            raise OAuthError('Google did not return an access token')
        return token

    def fetch_profile(self, access_token: str) -> OAuthProfile:
        try:
            response = requests.get(
                self.userinfo_endpoint,
                headers={'Authorization': f'Bearer {access_token}'},
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise OAuthError(f"Google profile request failed: {e}")

        info = self._json(response, 'profile request')
        return OAuthProfile(
            id=str(info.get('sub')),
            email=info.get('email'),
            name=info.get('name'),
            avatar_url=info.get('picture'),
        )


class GitHubOAuth(OAuthProvider):
    name = AuthProvider.GITHUB.value
    authorize_endpoint = 'https://github.com/login/oauth/authorize'
    token_endpoint = 'https://github.com/login/oauth/access_token'
    api_base = 'https://api.github.com'
    scope = 'read:user user:email'

    def _headers(self, access_token: str) -> dict:
        return {
            'Authorization': f'token {access_token}',
            'Accept': 'application/vnd.github.v3+json',
            'User-Agent': 'tournament-registrar',
        }

    def exchange_code(self, code: str) -> str:
        try:
            response = requests.post(self.token_endpoint, json={
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'code': code,
                'redirect_uri': self.redirect_uri,
            }, headers={'Accept': 'application/json'}, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise OAuthError(f"GitHub token exchange failed: {e}")

        data = self._json(response, 'token exchange')
        if not data.get('access_token'):
            raise OAuthError(f"GitHub did not return an access token: {data.get('error', 'unknown error')}")
        return data['access_token']

    def fetch_profile(self, access_token: str) -> OAuthProfile:
        try:
            response = requests.get(f"{self.api_base}/user", headers=self._headers(access_token),
                                    timeout=self.timeout)
            info = self._json(response, 'profile request')

            email = info.get('email')
            if not email:
                # Private addresses are only listed by the emails endpoint.
                response = requests.get(f"{self.api_base}/user/emails", headers=self._headers(access_token),
                                        timeout=self.timeout)
                emails = self._json(response, 'email request')
                primary = next((e for e in emails if e.get('primary') and e.get('verified')), None)
                email = primary['email'] if primary else None
        except requests.exceptions.RequestException as e:
            raise OAuthError(f"GitHub profile request failed: {e}")

        return OAuthProfile(
            id=str(info.get('id')),
            email=email,
            name=info.get('name') or info.get('login'),
            avatar_url=info.get('avatar_url'),
        )


PROVIDERS = {
    'google': (GoogleOAuth, 'GOOGLE'),
    'github': (GitHubOAuth, 'GITHUB'),
}


def get_provider(name: str, app_config) -> OAuthProvider:
    """Configured provider for a URL segment such as "google"."""
    if name not in PROVIDERS:
        raise NotFound(f'Unknown sign-in provider: {name}')

    provider_cls, prefix = PROVIDERS[name]
    client_id = app_config.get(f'{prefix}_CLIENT_ID')
    client_secret = app_config.get(f'{prefix}_CLIENT_SECRET')
    if not client_id or not client_secret:
        raise BadRequest(f'{name.title()} sign-in is not configured')

    base = app_config.get('OAUTH_REDIRECT_BASE', 'http://localhost:5000').rstrip('/')
    return provider_cls(
        client_id,
        client_secret,
        redirect_uri=f"{base}/api/v1/auth/{name}/callback",
        timeout=app_config.get('HTTP_TIMEOUT', 10)
    )
