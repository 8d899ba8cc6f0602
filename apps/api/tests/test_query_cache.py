from __future__ import annotations

import pytest
import redis

from app.core.kv import InMemoryKeyValueStore
from app.queries.cache import QueryResultCache


class BrokenStore:
    def get(self, key: str) -> str | None:
        raise redis.ConnectionError("connection refused")

    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        raise redis.ConnectionError("connection refused")

    def delete(self, key: str) -> None:
        raise redis.ConnectionError("connection refused")


def test_rows_round_trip_until_they_expire(monkeypatch: pytest.MonkeyPatch) -> None:
    clock = [1000.0]
    monkeypatch.setattr("app.core.kv.time.monotonic", lambda: clock[0])
    cache = QueryResultCache(InMemoryKeyValueStore())

    cache.put("k", [{"id": "T1"}], ttl_seconds=60)

    assert cache.get("k") == [{"id": "T1"}]
    clock[0] += 61
    assert cache.get("k") is None


def test_zero_ttl_is_never_stored() -> None:
    store = InMemoryKeyValueStore()
    cache = QueryResultCache(store)

    cache.put("k", [{"id": "T1"}], ttl_seconds=0)

    assert store.get("k") is None


def test_store_failures_degrade_to_misses(caplog: pytest.LogCaptureFixture) -> None:
    cache = QueryResultCache(BrokenStore())

    cache.put("k", [{"id": "T1"}], ttl_seconds=60)

    assert cache.get("k") is None
    assert [record.getMessage() for record in caplog.records] == ["query.cache_write_failed", "query.cache_read_failed"]


def test_corrupt_entries_are_misses() -> None:
    store = InMemoryKeyValueStore()
    store.put("k", "{not json", 60)

    assert QueryResultCache(store).get("k") is None
