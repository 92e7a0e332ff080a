"""
Identity resolution: credential in, principal (or None) out.

Tokens are signed JWTs with a fixed expiry counted from issue time. Only the
`sub` claim is trusted; role and status always come from the live user row so
that approvals, suspensions and role changes apply without a new login.
"""
import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from flask import current_app, request
from flask_login import LoginManager, current_user
from jose import JWTError, jwt

from .models import db, User, UserStatus, utcnow
from .stores import KeyValueStore

logger = logging.getLogger(__name__)

login_manager = LoginManager()


@dataclass(frozen=True)
class Principal:
    id: int
    email: str
    role: str
    status: str
    provider: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(
            id=user.id,
            email=user.email,
            role=user.role,
            status=user.status,
            provider=user.provider,
            name=user.name,
            avatar_url=user.avatar_url,
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'email': self.email,
            'name': self.name,
            'role': self.role,
            'status': self.status,
            'provider': self.provider,
            'avatar_url': self.avatar_url,
        }


class TokenService:
    """Issues, verifies and revokes access tokens."""

    def __init__(self, secret: str, store: KeyValueStore, algorithm: str = 'HS256', expires_days: int = 7):
        self.secret = secret
        self.store = store
        self.algorithm = algorithm
        self.expires_days = expires_days

    def issue(self, user: User) -> str:
        now = utcnow()
        claims = {
            'sub': str(user.id),
            'email': user.email,
            'role': user.role,
            'iat': now,
            'exp': now + timedelta(days=self.expires_days),
        }
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def decode(self, token: str) -> Optional[dict]:
        try:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError:
            return None

    @staticmethod
    def _blacklist_key(token: str) -> str:
        return f"token_blacklist:{hashlib.sha256(token.encode()).hexdigest()}"

    def revoke(self, token: str) -> None:
        """Blacklist a token until it would have expired anyway."""
        payload = self.decode(token)
        if not payload:
            return
        remaining = int(payload['exp'] - time.time()) if 'exp' in payload else 0
        if remaining > 0:
            self.store.set_flag(self._blacklist_key(token), remaining)

    def is_revoked(self, token: str) -> bool:
        return self.store.has_flag(self._blacklist_key(token))

    def resolve_user(self, credential: Optional[str]) -> Optional[User]:
        if not credential:
            return None

        if self.is_revoked(credential):
            return None

        payload = self.decode(credential)
        if not payload:
            return None

        try:
            user_id = int(payload.get('sub'))
        except (TypeError, ValueError):
            return None

        user = db.session.get(User, user_id)
        if user is None:
            logger.warning(f"Token for {payload.get('email')} references missing user {user_id}")
            return None

        if user.status != UserStatus.APPROVED.value:
            logger.warning(f"Rejected token for {user.email}: user status {user.status}")
            return None

        return user


def extract_credential(req=None) -> Optional[str]:
    """Bearer token from the Authorization header, else the auth cookie."""
    req = req or request
    header = req.headers.get('Authorization')
    if header:
        parts = header.split(' ')
        if len(parts) == 2 and parts[0] == 'Bearer' and parts[1]:
            return parts[1]
        return None
    return req.cookies.get(current_app.config.get('AUTH_COOKIE_NAME', 'auth-token'))


def get_current_user(credential: Optional[str]) -> Optional[Principal]:
    user = current_app.tokens.resolve_user(credential)
    return Principal.from_user(user) if user else None


def current_principal() -> Optional[Principal]:
    """Principal for the current request, None when unauthenticated."""
    if current_user and current_user.is_authenticated:
        return Principal.from_user(current_user)
    return None


@login_manager.request_loader
def load_user_from_request(req):
    return current_app.tokens.resolve_user(extract_credential(req))


@login_manager.user_loader
def load_user(user_id):
    # Sessions are never established; tokens are the only credential.
    return None
