"""Key-value stores backing the feed cache across sessions.

Stores are best-effort: they never raise. A failed read is a miss and a
failed write is dropped with a warning.
"""

from __future__ import annotations

from typing import Protocol

import redis
from loguru import logger

from runfeed.config.settings import settings


class KeyValueStore(Protocol):
    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def remove_prefix(self, prefix: str) -> None: ...


class InMemoryKeyValueStore:
    """Process-local store. TTLs are enforced by the cache, not here."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def remove_prefix(self, prefix: str) -> None:
        for key in [key for key in self._items if key.startswith(prefix)]:
            del self._items[key]

    def __len__(self) -> int:
        return len(self._items)


class RedisKeyValueStore:
    """Redis-backed store shared across processes."""

    def __init__(self, client: redis.Redis | None = None, url: str | None = None) -> None:
        self._client = client
        self._url = url or settings.redis_url

    def _get_client(self) -> redis.Redis | None:
        if self._client is not None:
            return self._client
        try:
            self._client = redis.from_url(self._url, decode_responses=True)
        except Exception as e:
            logger.bind(error=str(e)).warning("Failed to connect to Redis for feed cache")
            return None
        return self._client

    def get_item(self, key: str) -> str | None:
        client = self._get_client()
        if client is None:
            return None
        try:
            value = client.get(key)
        except Exception as e:
            logger.bind(key=key, error=str(e)).warning("Failed to read feed cache entry from Redis")
            return None
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode()
        return str(value)

    def set_item(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        client = self._get_client()
        if client is None:
            logger.bind(key=key).warning("Redis unavailable, skipping feed cache write")
            return
        try:
            client.set(key, value, ex=ttl_seconds)
        except Exception as e:
            logger.bind(key=key, error=str(e)).warning("Failed to write feed cache entry to Redis")

    def remove_item(self, key: str) -> None:
        client = self._get_client()
        if client is None:
            return
        try:
            client.delete(key)
        except Exception as e:
            logger.bind(key=key, error=str(e)).warning("Failed to delete feed cache entry from Redis")

    def remove_prefix(self, prefix: str) -> None:
        client = self._get_client()
        if client is None:
            return
        try:
            keys = list(client.scan_iter(match=f"{prefix}*"))
            if keys:
                client.delete(*keys)
        except Exception as e:
            logger.bind(prefix=prefix, error=str(e)).warning("Failed to clear feed cache entries from Redis")
