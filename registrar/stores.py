"""
Shared mutable state behind one small contract.

Rate-limit counters and the token blacklist live in a key/value store so a
single-process deployment can keep them in memory while multi-instance
deployments point every instance at the same Redis.
"""
import threading
import time
from typing import Dict, Tuple

import redis


class KeyValueStore:
    """Contract shared by the in-memory and Redis stores."""

    def increment(self, key: str, window_seconds: int) -> int:
        """Atomically bump a windowed counter and return its new value.

        A missing or expired counter restarts at 1 with a fresh window.
        """
        raise NotImplementedError

    def ttl(self, key: str) -> int:
        """Seconds until the key expires, 0 when absent."""
        raise NotImplementedError

    def set_flag(self, key: str, ttl_seconds: int):
        raise NotImplementedError

    def has_flag(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str):
        raise NotImplementedError


class InMemoryStore(KeyValueStore):

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[int, float]] = {}

    def _live(self, key: str, now: float):
        entry = self._entries.get(key)
        if entry and entry[1] <= now:
            del self._entries[key]
            return None
        return entry

    def increment(self, key: str, window_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                self._entries[key] = (1, now + window_seconds)
                return 1
            count = entry[0] + 1
            self._entries[key] = (count, entry[1])
            return count

    def ttl(self, key: str) -> int:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                return 0
            return max(0, int(entry[1] - now))

    def set_flag(self, key: str, ttl_seconds: int):
        with self._lock:
            self._entries[key] = (1, self._clock() + ttl_seconds)

    def has_flag(self, key: str) -> bool:
        with self._lock:
            return self._live(key, self._clock()) is not None

    def delete(self, key: str):
        with self._lock:
            self._entries.pop(key, None)

    def clear(self):
        with self._lock:
            self._entries.clear()


class RedisStore(KeyValueStore):

    def __init__(self, redis_client: redis.Redis, prefix: str = 'registrar:'):
        self.redis = redis_client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def increment(self, key: str, window_seconds: int) -> int:
        full_key = self._key(key)
        count = int(self.redis.incr(full_key))
        if count == 1:
            self.redis.expire(full_key, window_seconds)
        return count

    def ttl(self, key: str) -> int:
        remaining = self.redis.ttl(self._key(key))
        return max(0, int(remaining or 0))

    def set_flag(self, key: str, ttl_seconds: int):
        self.redis.set(self._key(key), 1, ex=max(1, int(ttl_seconds)))

    def has_flag(self, key: str) -> bool:
        return bool(self.redis.exists(self._key(key)))

    def delete(self, key: str):
        self.redis.delete(self._key(key))


def create_redis_client(url: str) -> redis.Redis:
    return redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30
    )
