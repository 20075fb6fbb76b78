import fnmatch

import pytest

from hablare.llm_adapter.cache import (
    InMemoryResponseCache,
    RedisResponseCache,
    build_response_cache,
    hash_key,
)


class FakeRedis:
    """Dict-backed subset of the redis.asyncio client used by RedisResponseCache."""

    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}
        self.expiries: dict[str, int] = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiries[key] = ex

    async def delete(self, *keys):
        for key in keys:
            self.data.pop(key, None)

    async def scan_iter(self, match="*"):
        for key in list(self.data):
            if fnmatch.fnmatch(key, match):
                yield key

    async def aclose(self):
        self.closed = True


class TestInMemoryResponseCache:

    @pytest.mark.asyncio
    async def test_round_trip_and_stats(self):
        cache = InMemoryResponseCache()
        assert await cache.get("mock", "k") is None

        await cache.set("mock", "k", b"value")
        assert await cache.get("mock", "k") == b"value"

        stats = await cache.statistics()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["total_entries"] == 1

    @pytest.mark.asyncio
    async def test_entries_expire(self, clock):
        cache = InMemoryResponseCache(ttl=10.0, clock=clock)
        await cache.set("mock", "k", b"v")

        clock.advance(10.5)

        assert await cache.get("mock", "k") is None
        assert (await cache.statistics())["total_entries"] == 0

    @pytest.mark.asyncio
    async def test_oldest_entries_are_evicted(self):
        cache = InMemoryResponseCache(max_entries=2)
        for key in ("a", "b", "c"):
            await cache.set("mock", key, key.encode())

        assert await cache.get("mock", "a") is None
        assert await cache.get("mock", "c") == b"c"

    @pytest.mark.asyncio
    async def test_invalidate_only_touches_one_provider(self):
        cache = InMemoryResponseCache()
        await cache.set("openai", "k", b"1")
        await cache.set("groq", "k", b"2")

        await cache.invalidate("openai")

        assert await cache.get("openai", "k") is None
        assert await cache.get("groq", "k") == b"2"

    @pytest.mark.asyncio
    async def test_disabled_cache_stores_nothing(self):
        cache = InMemoryResponseCache()
        await cache.set("mock", "k", b"v")
        cache.set_enabled(False)

        await cache.set("mock", "k2", b"v")
        assert await cache.get("mock", "k") is None
        assert (await cache.statistics())["total_entries"] == 0


class TestRedisResponseCache:

    @pytest.mark.asyncio
    async def test_keys_are_hashed_and_expire(self):
        client = FakeRedis()
        cache = RedisResponseCache(client=client, ttl=120)

        await cache.set("openai", "openai:some prompt:", b"payload")

        expected_key = f"hablare:cache:openai:{hash_key('openai', 'openai:some prompt:')}"
        assert client.data == {expected_key: b"payload"}
        assert client.expiries[expected_key] == 120
        assert await cache.get("openai", "openai:some prompt:") == b"payload"

    @pytest.mark.asyncio
    async def test_invalidate_clear_and_stats(self):
        client = FakeRedis()
        client.data["unrelated"] = b"keep"
        cache = RedisResponseCache(client=client)

        await cache.set("openai", "a", b"1")
        await cache.set("groq", "b", b"2")
        assert (await cache.statistics())["total_entries"] == 2

        await cache.invalidate("openai")
        assert await cache.get("openai", "a") is None
        assert await cache.get("groq", "b") == b"2"

        await cache.clear()
        assert client.data == {"unrelated": b"keep"}

    @pytest.mark.asyncio
    async def test_close(self):
        client = FakeRedis()
        await RedisResponseCache(client=client).close()
        assert client.closed

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisResponseCache()


def test_build_response_cache_defaults_to_memory():
    assert isinstance(build_response_cache(None), InMemoryResponseCache)
    assert isinstance(build_response_cache("redis://localhost:6379/0"), RedisResponseCache)
