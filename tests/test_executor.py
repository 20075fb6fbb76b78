import asyncio
import random

import pytest

from hablare.contracts.errors import (
    ConfigurationError,
    NetworkError,
    ProviderError,
    RequestTimeoutError,
)
from hablare.contracts.requests import DataContent, Request, TextContent
from hablare.llm_adapter.cache import InMemoryResponseCache
from hablare.llm_adapter.mock_provider import MockProvider
from hablare.runtime.executor import RequestExecutor, with_timeout
from hablare.runtime.rate_limiter import RateLimiter
from hablare.runtime.retry import NO_RETRIES, RetryConfiguration


def _executor(sleep, **kwargs) -> RequestExecutor:
    kwargs.setdefault("cache", InMemoryResponseCache())
    return RequestExecutor(sleep=sleep, rng=random.Random(7), **kwargs)


class TestExecute:

    @pytest.mark.asyncio
    async def test_success_normalizes_content(self, recording_sleep):
        provider = MockProvider(responses=[TextContent(text="hello")])
        executor = _executor(recording_sleep)

        response = await executor.execute(Request(prompt="hi", metadata={"k": "v"}), provider)

        assert response.content == b"hello"
        assert response.as_text() == "hello"
        assert response.provider_id == "mock"
        assert response.metadata == {"k": "v"}
        assert response.from_cache is False
        assert response.usage.duration_seconds >= 0

    @pytest.mark.asyncio
    async def test_cache_round_trip(self, recording_sleep):
        provider = MockProvider(responses=[DataContent(data=b"\x00payload")])
        executor = _executor(recording_sleep)

        first = await executor.execute(Request(prompt="same", parameters={"a": "1"}), provider)
        second = await executor.execute(Request(prompt="same", parameters={"a": "1"}), provider)

        assert provider.call_count == 1
        assert second.from_cache is True
        assert second.content == first.content == b"\x00payload"

    @pytest.mark.asyncio
    async def test_cache_hit_does_not_consume_a_token(self, recording_sleep):
        provider = MockProvider()
        executor = _executor(recording_sleep)
        limiter = RateLimiter(max_requests=1, time_window=3600.0)
        executor.set_rate_limiter(limiter, provider.provider_id)

        await executor.execute(Request(prompt="cached"), provider)
        response = await asyncio.wait_for(
            executor.execute(Request(prompt="cached"), provider), timeout=1.0
        )

        assert response.from_cache
        assert limiter.available_tokens() == 0

    @pytest.mark.asyncio
    async def test_use_cache_false_bypasses_cache(self, recording_sleep):
        provider = MockProvider()
        executor = _executor(recording_sleep)

        await executor.execute(Request(prompt="p", use_cache=False), provider)
        await executor.execute(Request(prompt="p", use_cache=False), provider)

        assert provider.call_count == 2
        stats = await executor.statistics()
        assert stats.cache_stats["total_entries"] == 0

    @pytest.mark.asyncio
    async def test_different_parameters_are_different_cache_entries(self, recording_sleep):
        provider = MockProvider()
        executor = _executor(recording_sleep)

        await executor.execute(Request(prompt="p", parameters={"t": "0.1"}), provider)
        await executor.execute(Request(prompt="p", parameters={"t": "0.9"}), provider)

        assert provider.call_count == 2

    @pytest.mark.asyncio
    async def test_clear_cache(self, recording_sleep):
        provider = MockProvider()
        executor = _executor(recording_sleep)

        await executor.execute(Request(prompt="p"), provider)
        await executor.clear_cache()
        await executor.execute(Request(prompt="p"), provider)

        assert provider.call_count == 2


class BrokenCache(InMemoryResponseCache):
    """Store whose backend is unreachable."""

    async def get(self, provider_id, key):
        raise ConnectionError("redis down")

    async def set(self, provider_id, key, value):
        raise ConnectionError("redis down")


class TestCacheOutage:

    @pytest.mark.asyncio
    async def test_unreachable_cache_falls_through_to_provider(self, recording_sleep):
        provider = MockProvider(responses=[TextContent(text="fresh")])
        executor = _executor(recording_sleep, cache=BrokenCache())

        response = await executor.execute(Request(prompt="p"), provider)

        assert response.as_text() == "fresh"
        assert response.from_cache is False
        assert provider.call_count == 1


class TestRetry:

    @pytest.mark.asyncio
    async def test_retryable_failures_are_retried_up_to_the_bound(self, recording_sleep):
        failure = NetworkError("down")
        provider = MockProvider(failures=[failure] * 10)
        executor = _executor(recording_sleep, retry_config=RetryConfiguration(max_retries=2))

        with pytest.raises(NetworkError) as excinfo:
            await executor.execute(Request(prompt="p"), provider)

        assert excinfo.value is failure
        assert provider.call_count == 3
        assert len(recording_sleep.delays) == 2
        assert 1.0 <= recording_sleep.delays[0] <= 1.1
        assert 2.0 <= recording_sleep.delays[1] <= 2.2

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, recording_sleep):
        provider = MockProvider(
            failures=[ProviderError("503", code="503"), RuntimeError("flaky")],
            responses=[TextContent(text="finally")],
        )
        executor = _executor(recording_sleep)

        response = await executor.execute(Request(prompt="p"), provider)

        assert response.as_text() == "finally"
        assert provider.call_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_error_is_not_retried(self, recording_sleep):
        provider = MockProvider(failures=[ConfigurationError("no key")])
        executor = _executor(recording_sleep)

        with pytest.raises(ConfigurationError):
            await executor.execute(Request(prompt="p"), provider)

        assert provider.call_count == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, recording_sleep):
        provider = MockProvider(failures=[ConfigurationError("no key")])
        executor = _executor(recording_sleep)

        with pytest.raises(ConfigurationError):
            await executor.execute(Request(prompt="p"), provider)
        response = await executor.execute(Request(prompt="p"), provider)

        assert response.from_cache is False


class TestTimeout:

    @pytest.mark.asyncio
    async def test_slow_provider_times_out(self, recording_sleep):
        provider = MockProvider(delay=1.0)
        executor = _executor(recording_sleep, retry_config=NO_RETRIES)

        with pytest.raises(RequestTimeoutError):
            await executor.execute(Request(prompt="p", timeout=0.05), provider)

    @pytest.mark.asyncio
    async def test_timeout_is_retried_per_attempt(self, recording_sleep):
        provider = MockProvider(delay=1.0)
        executor = _executor(recording_sleep, retry_config=RetryConfiguration(max_retries=1))

        with pytest.raises(RequestTimeoutError):
            await executor.execute(Request(prompt="p", timeout=0.02), provider)

        assert provider.call_count == 2

    @pytest.mark.asyncio
    async def test_with_timeout_passes_results_through(self):
        async def quick():
            return 42

        assert await with_timeout(1.0, quick()) == 42
        assert await with_timeout(None, quick()) == 42


class TestBatch:

    @pytest.mark.asyncio
    async def test_failures_are_collected(self, recording_sleep):
        provider = MockProvider(failures=[ConfigurationError("bad")])
        executor = _executor(recording_sleep, retry_config=NO_RETRIES)
        requests = [Request(prompt="one"), Request(prompt="two"), Request(prompt="three")]

        batch = await executor.execute_batch(requests, provider)

        assert batch.total_requests == 3
        assert len(batch.successes) == 2
        failed_request, error = batch.failures[0]
        assert failed_request is requests[0]
        assert isinstance(error, ConfigurationError)

    @pytest.mark.asyncio
    async def test_foreign_exceptions_are_wrapped(self, recording_sleep):
        provider = MockProvider(failures=[KeyError("missing")])
        executor = _executor(recording_sleep, retry_config=NO_RETRIES)

        batch = await executor.execute_batch([Request(prompt="p")], provider)

        assert batch.all_failed
        assert isinstance(batch.failures[0][1], NetworkError)


class TestRateLimiters:

    def test_default_limiter_is_created_once_per_provider(self, recording_sleep):
        executor = _executor(recording_sleep)
        limiter = executor.rate_limiter_for("openai")

        assert executor.rate_limiter_for("openai") is limiter
        assert executor.rate_limiter_for("groq") is not limiter
        assert limiter.max_requests == 60

    @pytest.mark.asyncio
    async def test_explicit_limiter_is_used(self, recording_sleep):
        provider = MockProvider()
        executor = _executor(recording_sleep)
        limiter = RateLimiter(max_requests=5, time_window=60.0)

        await executor.execute(Request(prompt="p"), provider, rate_limiter=limiter)

        assert limiter.available_tokens() == 4

    @pytest.mark.asyncio
    async def test_statistics(self, recording_sleep):
        executor = _executor(recording_sleep)
        executor.rate_limiter_for("a")
        stats = await executor.statistics()
        assert stats.rate_limiter_count == 1
        assert stats.max_retries == 3


def test_cache_key_sorts_parameters():
    a = Request(prompt="p", parameters={"b": "2", "a": "1"})
    b = Request(prompt="p", parameters={"a": "1", "b": "2"})
    assert RequestExecutor.cache_key(a, "mock") == RequestExecutor.cache_key(b, "mock")
    assert RequestExecutor.cache_key(a, "mock") == "mock:p:a=1&b=2"
