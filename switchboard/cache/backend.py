"""Key/value stores behind the response cache.

RedisCacheBackend is shared between processes and stores JSON strings.
InMemoryCacheBackend keeps a bounded LRU map in this process and is the
default when no redis_url is configured.

Neither backend raises on store trouble: a failed read is a miss and a
failed write is dropped after a warning.
"""

from __future__ import annotations

import asyncio
import fnmatch
import json
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import redis.asyncio as aioredis
import structlog

if TYPE_CHECKING:
    from switchboard.config import Settings

log = structlog.get_logger(__name__)


class CacheBackend(ABC):
    """Minimal async key/value contract used by ResponseCache."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Value stored under key; None when absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None:
        """Store value for ttl seconds, replacing any previous value."""

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Remove every key matching a glob pattern and return how many went."""

    @abstractmethod
    async def info(self) -> dict[str, Any]:
        """Stats in a common shape: backend, connected, keys, hits, misses."""


class RedisCacheBackend(CacheBackend):
    """Redis store with JSON values.

    The connection is opened on first use, so building the backend never
    touches the network.
    """

    def __init__(self, redis_url: str) -> None:
        self._url = redis_url
        self._client: aioredis.Redis | None = None

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(self._url, encoding="utf-8", decode_responses=True)
        return self._client

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self.client.get(key)
        except Exception as exc:
            log.warning("response_cache.redis_read_failed", key=key, error=str(exc))
            return None
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        payload = json.dumps(value, default=str)
        try:
            await self.client.setex(key, ttl, payload)
        except Exception as exc:
            log.warning("response_cache.redis_write_failed", key=key, error=str(exc))

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except Exception as exc:
            log.warning("response_cache.redis_delete_failed", key=key, error=str(exc))

    async def delete_pattern(self, pattern: str) -> int:
        removed = 0
        try:
            async for key in self.client.scan_iter(match=pattern, count=100):
                await self.client.delete(key)
                removed += 1
        except Exception as exc:
            log.warning("response_cache.redis_scan_failed", pattern=pattern, error=str(exc))
            return removed
        log.debug("response_cache.redis_pattern_removed", pattern=pattern, removed=removed)
        return removed

    async def info(self) -> dict[str, Any]:
        try:
            stats = await self.client.info()
            keys = await self.client.dbsize()
        except Exception as exc:
            return {"backend": "redis", "connected": False, "error": str(exc)}
        hits = stats.get("keyspace_hits", 0)
        misses = stats.get("keyspace_misses", 0)
        return {
            "backend": "redis",
            "connected": True,
            "keys": keys,
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / (hits + misses), 4) if hits + misses else 0.0,
            "memory": stats.get("used_memory_human", "unknown"),
        }

    async def close(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        try:
            await client.aclose()
        except Exception as exc:
            log.warning("response_cache.redis_close_failed", error=str(exc))


@dataclass(slots=True)
class _Slot:
    value: Any
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class InMemoryCacheBackend(CacheBackend):
    """Process-local LRU store with per-key TTL.

    When the store grows past max_entries, expired slots are dropped first
    and then the least recently read keys.
    """

    max_entries: int = 1000
    _store: OrderedDict[str, _Slot] = field(default_factory=OrderedDict, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)
    _hits: int = field(default=0, init=False)
    _misses: int = field(default=0, init=False)
    _evictions: int = field(default=0, init=False)

    def __len__(self) -> int:
        return len(self._store)

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            slot = self._store.get(key)
            if slot is not None and slot.expired(time.monotonic()):
                del self._store[key]
                slot = None
            if slot is None:
                self._misses += 1
                return None
            self._hits += 1
            self._store.move_to_end(key)
            return slot.value

    async def set(self, key: str, value: Any, ttl: int) -> None:
        async with self._lock:
            self._store[key] = _Slot(value, time.monotonic() + ttl)
            self._store.move_to_end(key)
            if len(self._store) > self.max_entries:
                self._drop_expired()
            while len(self._store) > self.max_entries:
                self._store.popitem(last=False)
                self._evictions += 1

    def _drop_expired(self) -> None:
        now = time.monotonic()
        for key in [k for k, slot in self._store.items() if slot.expired(now)]:
            del self._store[key]

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def delete_pattern(self, pattern: str) -> int:
        async with self._lock:
            matched = fnmatch.filter(list(self._store), pattern)
            for key in matched:
                del self._store[key]
            return len(matched)

    async def info(self) -> dict[str, Any]:
        async with self._lock:
            self._drop_expired()
            lookups = self._hits + self._misses
            return {
                "backend": "memory",
                "connected": True,
                "keys": len(self._store),
                "max_entries": self.max_entries,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
            }


def get_cache_backend(settings: Settings) -> CacheBackend:
    """Redis when settings.redis_url is set, otherwise the in-memory store."""
    if settings.redis_url:
        log.info("response_cache.backend_selected", backend="redis")
        return RedisCacheBackend(settings.redis_url)
    log.info("response_cache.backend_selected", backend="memory", max_entries=settings.cache_max_entries)
    return InMemoryCacheBackend(max_entries=settings.cache_max_entries)
