import logging
from typing import Optional

from .errors import TooManyRequests
from .stores import KeyValueStore

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Windowed attempt counter per key.

    The first call for a key opens a window of `window_seconds`; calls after
    the first `max_attempts` inside that window fail until it expires.
    """

    def __init__(
        self,
        store: KeyValueStore,
        name: str,
        window_seconds: int,
        max_attempts: int,
        message: str = None
    ):
        self.store = store
        self.name = name
        self.window_seconds = window_seconds
        self.max_attempts = max_attempts
        self.message = message or 'Too many attempts, please try again later'

    def _key(self, key: str) -> str:
        return f"rate_limit:{self.name}:{key}"

    def check(self, key: str) -> None:
        count = self.store.increment(self._key(key), self.window_seconds)
        if count > self.max_attempts:
            retry_after = self.store.ttl(self._key(key))
            logger.warning(f"Rate limit '{self.name}' exceeded for {key} ({count} attempts)")
            raise TooManyRequests(self.message, details={'retry_after': retry_after})

    def check_request(self, ip: Optional[str], email: Optional[str] = None) -> None:
        """Throttle by client address and, when given, by email as well."""
        keys = [f"ip:{ip or 'unknown'}"]
        if email and isinstance(email, str):
            keys.append(f"email:{email.lower()}")

        blocked = None
        for key in keys:
            try:
                self.check(key)
            except TooManyRequests as e:
                blocked = blocked or e
        if blocked:
            raise blocked

    def reset(self, key: str) -> None:
        self.store.delete(self._key(key))


def auth_rate_limiter(store: KeyValueStore, window_seconds: int = 15 * 60, max_attempts: int = 5) -> RateLimiter:
    return RateLimiter(
        store, 'auth', window_seconds, max_attempts,
        message='Too many login attempts, please try again in 15 minutes'
    )


def register_rate_limiter(store: KeyValueStore, window_seconds: int = 60 * 60, max_attempts: int = 3) -> RateLimiter:
    return RateLimiter(
        store, 'register', window_seconds, max_attempts,
        message='Too many registration attempts, please try again in 1 hour'
    )
