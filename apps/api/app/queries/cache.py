from __future__ import annotations

import json
import logging
from typing import Any

import redis

from app.core.kv import KeyValueStore


logger = logging.getLogger("app.queries.cache")


class QueryResultCache:
    """Custom query results in the shared key-value store.

    Reads and writes are best effort: a failing store degrades to a miss and never
    fails the query that triggered it.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def get(self, key: str) -> list[dict[str, Any]] | None:
        try:
            raw = self._store.get(key)
            if raw is None:
                return None
            rows = json.loads(raw)
        except (redis.RedisError, ValueError) as exc:
            logger.warning("query.cache_read_failed", extra={"operation": "get", "error": str(exc)[:500]})
            return None
        return rows if isinstance(rows, list) else None

    def put(self, key: str, rows: list[dict[str, Any]], ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        try:
            self._store.put(key, json.dumps(rows, separators=(",", ":")), ttl_seconds)
        except (redis.RedisError, TypeError, ValueError) as exc:
            logger.warning("query.cache_write_failed", extra={"operation": "put", "error": str(exc)[:500]})

