from __future__ import annotations

import time
from threading import Lock
from typing import Protocol

import redis

from app.core.config import Settings


class KeyValueStore(Protocol):
    """String key-value store with per-entry expiry, used for sessions and query results."""

    def get(self, key: str) -> str | None:
        ...

    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryKeyValueStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: dict[str, tuple[str, float]] = {}

    def get(self, key: str) -> str | None:
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= now:
                del self._entries[key]
                return None
            return value

    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[key] = (value, time.monotonic() + ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisKeyValueStore:
    def __init__(self, client: redis.Redis, *, namespace: str = "dataplane") -> None:
        self._client = client
        self._namespace = namespace

    @classmethod
    def from_url(cls, url: str, *, namespace: str = "dataplane") -> RedisKeyValueStore:
        return cls(redis.Redis.from_url(url, decode_responses=True), namespace=namespace)

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def get(self, key: str) -> str | None:
        value = self._client.get(self._key(key))
        return None if value is None else str(value)

    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        self._client.set(self._key(key), value, ex=ttl_seconds)

    def delete(self, key: str) -> None:
        self._client.delete(self._key(key))


def build_kv_store(settings: Settings, *, namespace: str) -> KeyValueStore:
    if settings.kv_backend.lower() == "redis":
        return RedisKeyValueStore.from_url(settings.redis_url, namespace=namespace)
    return InMemoryKeyValueStore()
