"""Time-boxed feed cache.

One explicitly constructed instance per session, owned by the feed assembler.
All access goes through get/set/clear; payloads are copied in and out so a
caller can never mutate a cached value in place.
"""

from __future__ import annotations

import copy
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from runfeed.config.settings import settings
from runfeed.storage.kv import KeyValueStore


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: Any
    stored_at: float
    ttl_seconds: float

    def age(self, now: float) -> float:
        return max(now - self.stored_at, 0.0)

    def is_expired(self, now: float) -> bool:
        return self.age(now) >= self.ttl_seconds


class FeedCache:
    """Key-scoped cache with lazy TTL eviction and optional write-through to a key-value store.

    Payloads must be JSON-serializable when a store is configured.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float | None = None,
        namespace: str | None = None,
        store: KeyValueStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.feed_cache_ttl_seconds
        self._namespace = namespace or settings.cache_namespace
        self._store = store
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def make_key(self, *parts: object) -> str:
        """Build a namespaced key, e.g. make_key("feed", "run") -> "runfeed:feed:run"."""
        return ":".join([self._namespace, *(str(part) for part in parts)])

    def _qualify(self, key: str) -> str:
        prefix = f"{self._namespace}:"
        return key if key.startswith(prefix) else prefix + key

    @staticmethod
    def _copy(entry: CacheEntry) -> CacheEntry:
        return CacheEntry(
            key=entry.key,
            payload=copy.deepcopy(entry.payload),
            stored_at=entry.stored_at,
            ttl_seconds=entry.ttl_seconds,
        )

    def _load_from_store(self, key: str) -> CacheEntry | None:
        if self._store is None:
            return None
        raw = self._store.get_item(key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return CacheEntry(
                key=key,
                payload=data["payload"],
                stored_at=float(data["stored_at"]),
                ttl_seconds=float(data.get("ttl", self._ttl_seconds)),
            )
        except (TypeError, ValueError, KeyError) as e:
            logger.warning(f"[FEED_CACHE] Discarding unreadable stored entry {key}: {e!s}")
            self._store.remove_item(key)
            return None

    def get(self, key: str) -> CacheEntry | None:
        """Return a copy of the entry for ``key``, or None on miss or expiry."""
        qualified = self._qualify(key)
        entry = self._entries.get(qualified)
        if entry is None:
            entry = self._load_from_store(qualified)
            if entry is not None:
                self._entries[qualified] = entry

        if entry is None:
            logger.debug("[FEED_CACHE] Cache miss", cache_key=qualified)
            return None

        now = self._clock()
        if entry.is_expired(now):
            logger.debug("[FEED_CACHE] Cache entry expired", cache_key=qualified, age=round(entry.age(now), 1))
            self.clear(qualified)
            return None

        logger.debug("[FEED_CACHE] Cache hit", cache_key=qualified, age=round(entry.age(now), 1))
        return self._copy(entry)

    def set(self, key: str, payload: Any, ttl_seconds: float | None = None) -> CacheEntry:
        qualified = self._qualify(key)
        entry = CacheEntry(
            key=qualified,
            payload=copy.deepcopy(payload),
            stored_at=self._clock(),
            ttl_seconds=ttl_seconds if ttl_seconds is not None else self._ttl_seconds,
        )
        self._entries[qualified] = entry

        if self._store is not None:
            try:
                serialized = json.dumps({"payload": entry.payload, "stored_at": entry.stored_at, "ttl": entry.ttl_seconds})
            except (TypeError, ValueError) as e:
                logger.warning(f"[FEED_CACHE] Payload for {qualified} is not serializable, keeping it in memory only: {e!s}")
            else:
                self._store.set_item(qualified, serialized, ttl_seconds=max(1, int(entry.ttl_seconds)))

        logger.debug("[FEED_CACHE] Cache set", cache_key=qualified, ttl=entry.ttl_seconds)
        return self._copy(entry)

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def clear(self, key: str | None = None) -> None:
        """Clear one key, or every key in this namespace when ``key`` is None."""
        if key is None:
            self._entries.clear()
            if self._store is not None:
                self._store.remove_prefix(f"{self._namespace}:")
            logger.debug("[FEED_CACHE] Cache cleared", namespace=self._namespace)
            return

        qualified = self._qualify(key)
        self._entries.pop(qualified, None)
        if self._store is not None:
            self._store.remove_item(qualified)
        logger.debug("[FEED_CACHE] Cache key cleared", cache_key=qualified)
