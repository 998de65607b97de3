"""Key-value stores with per-key TTL for counters and short-lived caches."""

from __future__ import annotations

import threading
import time
from typing import Callable, Protocol

from redis import Redis

from config import settings


class KeyValueStore(Protocol):
    """Protocol for TTL-aware string storage shared across processes."""

    def get(self, key: str) -> str | None:
        """Return the value for ``key`` or ``None`` when missing or expired."""

    def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        """Store ``value`` under ``key`` with an optional TTL in seconds."""

    def incr(self, key: str, *, ttl_seconds: int) -> int:
        """Increment a counter, starting its TTL when the key is created."""

    def delete(self, key: str) -> bool:
        """Delete ``key`` and return whether a value existed."""


class InMemoryKeyValueStore:
    """Process-local store used in tests and single-process deployments."""

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.monotonic
        self._values: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    def _live_entry(self, key: str) -> tuple[str, float | None] | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= self._clock():
            del self._values[key]
            return None
        return entry

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live_entry(key)
            return None if entry is None else entry[0]

    def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        expires_at = None if ttl_seconds is None else self._clock() + ttl_seconds
        with self._lock:
            self._values[key] = (value, expires_at)

    def incr(self, key: str, *, ttl_seconds: int) -> int:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self._values[key] = ("1", self._clock() + ttl_seconds)
                return 1
            count = int(entry[0]) + 1
            self._values[key] = (str(count), entry[1])
            return count

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._values.pop(key, None) is not None


class RedisKeyValueStore:
    """Redis-backed store shared by every engine process."""

    def __init__(self, client: Redis) -> None:
        self._client = client

    def get(self, key: str) -> str | None:
        value = self._client.get(name=key)
        if value is None:
            return None
        return str(value)

    def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        if ttl_seconds is None:
            self._client.set(name=key, value=value)
            return
        self._client.set(name=key, value=value, ex=ttl_seconds)

    def incr(self, key: str, *, ttl_seconds: int) -> int:
        pipe = self._client.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, ttl_seconds, nx=True)
        count, _ = pipe.execute()
        return int(count)

    def delete(self, key: str) -> bool:
        return bool(self._client.delete(key))


def create_redis_client(url: str, *, socket_timeout_seconds: float) -> Redis:
    """Construct a configured Redis client instance."""
    return Redis.from_url(
        url=url,
        socket_connect_timeout=socket_timeout_seconds,
        socket_timeout=socket_timeout_seconds,
        decode_responses=True,
        encoding="utf-8",
    )


def build_key_value_store() -> KeyValueStore:
    """Return a Redis store when ``redis.url`` is configured, else in-memory."""
    if settings.redis.url:
        return RedisKeyValueStore(
            create_redis_client(
                settings.redis.url,
                socket_timeout_seconds=settings.redis.socket_timeout_seconds,
            )
        )
    return InMemoryKeyValueStore()
