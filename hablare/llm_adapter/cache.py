"""
Response cache stores.

The executor treats the cache as a black box keyed by (provider id, key),
where the key is its deterministic composite of provider id, prompt and
sorted parameters. Stores hash that key so arbitrary prompt text never ends
up as a raw storage key.

Two backends:
- In-memory dict with TTL and max-entry eviction (default, dev/testing)
- Redis (for sharing cached responses across processes and restarts)
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

_REDIS_PREFIX = "hablare:cache:"


class ResponseCache(Protocol):
    async def get(self, provider_id: str, key: str) -> bytes | None: ...

    async def set(self, provider_id: str, key: str, value: bytes) -> None: ...

    async def invalidate(self, provider_id: str) -> None: ...

    async def clear(self) -> None: ...

    async def statistics(self) -> dict[str, int]: ...


def hash_key(provider_id: str, key: str) -> str:
    return hashlib.sha256(f"{provider_id}|{key}".encode()).hexdigest()


@dataclass
class _Entry:
    value: bytes
    stored_at: float
    provider_id: str


class InMemoryResponseCache:
    """Process-local cache; oldest entries are evicted past max_entries."""

    def __init__(
        self,
        max_entries: int = 100,
        ttl: float = 3600.0,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_entries = max_entries
        self._ttl = ttl
        self._enabled = enabled
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._hits = 0
        self._misses = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        if not enabled:
            self._entries.clear()

    async def get(self, provider_id: str, key: str) -> bytes | None:
        if not self._enabled:
            return None

        hashed = hash_key(provider_id, key)
        entry = self._entries.get(hashed)
        if entry is None:
            self._misses += 1
            return None

        if self._clock() - entry.stored_at > self._ttl:
            del self._entries[hashed]
            self._misses += 1
            return None

        self._hits += 1
        return entry.value

    async def set(self, provider_id: str, key: str, value: bytes) -> None:
        if not self._enabled:
            return

        hashed = hash_key(provider_id, key)
        self._entries.pop(hashed, None)
        self._entries[hashed] = _Entry(value=value, stored_at=self._clock(), provider_id=provider_id)

        overflow = len(self._entries) - self._max_entries
        if overflow > 0:
            # dict preserves insertion order, so the first keys are the oldest
            for stale in list(self._entries)[:overflow]:
                del self._entries[stale]

    async def invalidate(self, provider_id: str) -> None:
        self._entries = {
            k: e for k, e in self._entries.items() if e.provider_id != provider_id
        }

    async def clear(self) -> None:
        self._entries.clear()

    async def statistics(self) -> dict[str, int]:
        return {
            "total_entries": len(self._entries),
            "max_entries": self._max_entries,
            "ttl_seconds": int(self._ttl),
            "hits": self._hits,
            "misses": self._misses,
        }


class RedisResponseCache:
    """Redis-backed cache; entries expire through Redis TTLs."""

    def __init__(
        self,
        redis_url: str | None = None,
        ttl: int = 3600,
        client: Any | None = None,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("RedisResponseCache needs a redis_url or a client")
            client = aioredis.from_url(redis_url, decode_responses=False)
        self._redis = client
        self._ttl = ttl

    @staticmethod
    def _storage_key(provider_id: str, key: str) -> str:
        return f"{_REDIS_PREFIX}{provider_id}:{hash_key(provider_id, key)}"

    async def get(self, provider_id: str, key: str) -> bytes | None:
        return await self._redis.get(self._storage_key(provider_id, key))

    async def set(self, provider_id: str, key: str, value: bytes) -> None:
        await self._redis.set(self._storage_key(provider_id, key), value, ex=self._ttl)

    async def invalidate(self, provider_id: str) -> None:
        await self._delete_matching(f"{_REDIS_PREFIX}{provider_id}:*")

    async def clear(self) -> None:
        await self._delete_matching(f"{_REDIS_PREFIX}*")

    async def statistics(self) -> dict[str, int]:
        total = 0
        async for _ in self._redis.scan_iter(match=f"{_REDIS_PREFIX}*"):
            total += 1
        return {"total_entries": total, "ttl_seconds": self._ttl}

    async def close(self) -> None:
        await self._redis.aclose()

    async def _delete_matching(self, pattern: str) -> None:
        keys = [key async for key in self._redis.scan_iter(match=pattern)]
        if keys:
            await self._redis.delete(*keys)
            logger.debug("Deleted %d cache entries matching %s", len(keys), pattern)


def build_response_cache(
    redis_url: str | None = None,
    max_entries: int = 100,
    ttl: float = 3600.0,
) -> ResponseCache:
    """Redis when a URL is configured, otherwise the in-memory store."""
    if redis_url:
        logger.info("Using Redis response cache")
        return RedisResponseCache(redis_url=redis_url, ttl=int(ttl))
    return InMemoryResponseCache(max_entries=max_entries, ttl=ttl)
