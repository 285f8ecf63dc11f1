"""Small key-value stores with TTL.

Redis when ``REDIS_URL`` is configured (shared across workers), otherwise an
in-process dictionary. Used for short-lived markers such as consumed OAuth
states.
"""
from __future__ import annotations

import logging
import time
from typing import Protocol

import redis

from studio365.core.config import settings

logger = logging.getLogger(__name__)


class BaseKeyValueStore(Protocol):
    """Minimal key-value interface."""

    def add(self, key: str, value: str, ttl_seconds: int) -> bool:  # pragma: no cover - protocol stub
        """Set ``key`` only if absent. Return False if it already existed."""
        ...

    def get(self, key: str) -> str | None:  # pragma: no cover - protocol stub
        ...

    def delete(self, key: str) -> None:  # pragma: no cover - protocol stub
        ...


class RedisStore(BaseKeyValueStore):
    """Redis-backed store."""

    def __init__(self, url: str) -> None:
        self._client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )

    def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(self._client.set(key, value, ex=max(int(ttl_seconds), 1), nx=True))

    def get(self, key: str) -> str | None:
        return self._client.get(key)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def ping(self) -> bool:
        return bool(self._client.ping())

    def close(self) -> None:
        self._client.close()


class InMemoryStore(BaseKeyValueStore):
    """Fallback in-memory store used for tests or when Redis is unavailable."""

    def __init__(self) -> None:
        self._data: dict[str, tuple[str, float]] = {}

    def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        if self.get(key) is not None:
            return False
        self._data[key] = (value, time.time() + ttl_seconds)
        return True

    def get(self, key: str) -> str | None:
        entry = self._data.get(key)
        if not entry:
            return None
        value, expires_at = entry
        if time.time() > expires_at:
            self._data.pop(key, None)
            return None
        return value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


_SHARED_STORE: BaseKeyValueStore | None = None


def get_kv_store() -> BaseKeyValueStore:
    global _SHARED_STORE
    if _SHARED_STORE is not None:
        return _SHARED_STORE
    if settings.REDIS_URL:
        try:
            store = RedisStore(settings.REDIS_URL)
            store.ping()
            _SHARED_STORE = store
            logger.info("Key-value store: Redis")
            return store
        except redis.RedisError as exc:
            logger.warning("Falling back to in-memory key-value store: %s", exc)
    _SHARED_STORE = InMemoryStore()
    return _SHARED_STORE


def close_kv_store() -> None:
    global _SHARED_STORE
    if isinstance(_SHARED_STORE, RedisStore):
        _SHARED_STORE.close()
    _SHARED_STORE = None
