"""
Request executor: cache lookup, rate limiting, retrying provider invocation
and cache population for a single request.

Steps for execute():
1. If the request allows it, look the response up in the cache; a hit
   returns immediately without consuming a rate-limit token.
2. Wait for a token from the provider's rate limiter (the only blocking
   point before the provider is called).
3. Call the provider, retrying retryable failures with exponential backoff
   and jitter. Each attempt is bounded by the request timeout.
4. Normalize the content to bytes and, if requested, store it in the cache.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TypeVar

from hablare.contracts.errors import RequestTimeoutError, as_service_error
from hablare.contracts.requests import (
    BatchResponse,
    GenerationResponse,
    Request,
    ResponseContent,
    UsageStats,
)
from hablare.llm_adapter.base import GenerationProvider
from hablare.llm_adapter.cache import InMemoryResponseCache, ResponseCache
from hablare.logging.logger import log_extra
from hablare.observability.metrics import (
    cache_lookups,
    provider_calls,
    rate_limit_waits,
    request_duration,
    request_retries,
)
from hablare.runtime.rate_limiter import RateLimiter
from hablare.runtime.retry import RetryConfiguration, next_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_REQUESTS = 60
DEFAULT_TIME_WINDOW = 60.0


async def with_timeout(seconds: float | None, operation: Awaitable[T]) -> T:
    """
    Race `operation` against a timer; whichever finishes first wins and the
    other is cancelled. A missing or non-positive timeout means no bound.
    """
    if seconds is None or seconds <= 0:
        return await operation
    try:
        return await asyncio.wait_for(operation, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise RequestTimeoutError(f"Request timed out after {seconds} seconds") from exc


@dataclass(frozen=True)
class ExecutorStatistics:
    cache_stats: dict[str, int]
    rate_limiter_count: int
    max_retries: int
    base_delay: float
    max_delay: float


class RequestExecutor:
    """
    Executes requests against providers with caching, rate limiting and retry.

    Example:
        executor = RequestExecutor(cache=InMemoryResponseCache())
        response = await executor.execute(Request(prompt="Write a haiku"), provider)
        print(response.as_text())
    """

    def __init__(
        self,
        cache: ResponseCache | None = None,
        retry_config: RetryConfiguration | None = None,
        default_timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._cache: ResponseCache = cache if cache is not None else InMemoryResponseCache()
        self.retry_config = retry_config or RetryConfiguration()
        self.default_timeout = default_timeout
        self._sleep = sleep
        self._rng = rng
        self._rate_limiters: dict[str, RateLimiter] = {}

    async def execute(
        self,
        request: Request,
        provider: GenerationProvider,
        rate_limiter: RateLimiter | None = None,
    ) -> GenerationResponse:
        provider_id = provider.provider_id
        started = time.monotonic()
        cache_key = self.cache_key(request, provider_id)

        if request.use_cache:
            cached = await self._cache_get(provider_id, cache_key)
            if cached is not None:
                cache_lookups.labels(provider_id, "hit").inc()
                logger.debug(
                    "Cache HIT for request %s on %s",
                    request.id[:8],
                    provider_id,
                    extra=log_extra(request_id=request.id, provider=provider_id),
                )
                return GenerationResponse(
                    content=cached,
                    provider_id=provider_id,
                    metadata=request.metadata,
                    from_cache=True,
                    request=request,
                )
            cache_lookups.labels(provider_id, "miss").inc()
            logger.debug("Cache MISS for request %s on %s", request.id[:8], provider_id)

        limiter = rate_limiter or self.rate_limiter_for(provider_id)
        if limiter.available_tokens() == 0:
            rate_limit_waits.labels(provider_id).inc()
        await limiter.acquire()

        content = await self._invoke_with_retry(request, provider)
        elapsed = time.monotonic() - started

        response = GenerationResponse(
            content=content.to_bytes(),
            provider_id=provider_id,
            metadata=request.metadata,
            usage=UsageStats(duration_seconds=elapsed),
            from_cache=False,
            request=request,
        )

        if request.use_cache:
            await self._cache_set(provider_id, cache_key, response.content)

        request_duration.labels(provider_id, "executor").observe(elapsed)
        return response

    async def execute_batch(
        self,
        requests: Sequence[Request],
        provider: GenerationProvider,
    ) -> BatchResponse:
        """Execute requests one at a time; failures are collected, never raised."""
        batch = BatchResponse()

        for request in requests:
            try:
                batch.successes.append(await self.execute(request, provider))
            except Exception as exc:
                batch.failures.append((request, as_service_error(exc)))

        logger.info(
            "Batch finished on %s: %d succeeded, %d failed",
            provider.provider_id,
            len(batch.successes),
            len(batch.failures),
        )
        return batch

    async def _invoke_with_retry(
        self,
        request: Request,
        provider: GenerationProvider,
    ) -> ResponseContent:
        provider_id = provider.provider_id
        timeout = request.timeout or self.default_timeout
        attempt = 0

        while True:
            try:
                content = await with_timeout(
                    timeout,
                    provider.generate(request.prompt, dict(request.parameters)),
                )
                provider_calls.labels(provider_id, "success").inc()
                return content
            except Exception as exc:
                provider_calls.labels(provider_id, "failure").inc()
                attempt += 1
                decision = next_retry(exc, attempt, self.retry_config, self._rng)
                if not decision.retry:
                    if attempt > self.retry_config.max_retries:
                        logger.warning(
                            "Request %s on %s failed after %d attempt(s): %s",
                            request.id[:8],
                            provider_id,
                            attempt,
                            exc,
                            extra=log_extra(request_id=request.id, provider=provider_id),
                        )
                    raise

                request_retries.labels(provider_id).inc()
                logger.info(
                    "Retrying request %s on %s in %.2fs (attempt %d/%d): %s",
                    request.id[:8],
                    provider_id,
                    decision.delay,
                    attempt + 1,
                    self.retry_config.max_retries + 1,
                    exc,
                )
                await self._sleep(decision.delay)

    async def _cache_get(self, provider_id: str, key: str) -> bytes | None:
        """A cache store outage reads as a miss."""
        try:
            return await self._cache.get(provider_id, key)
        except Exception:
            cache_lookups.labels(provider_id, "error").inc()
            logger.warning("Cache lookup failed for %s, treating as miss", provider_id, exc_info=True)
            return None

    async def _cache_set(self, provider_id: str, key: str, value: bytes) -> None:
        try:
            await self._cache.set(provider_id, key, value)
        except Exception:
            logger.warning("Cache store failed for %s, response not cached", provider_id, exc_info=True)

    @staticmethod
    def cache_key(request: Request, provider_id: str) -> str:
        """Deterministic key: provider id, prompt and parameters sorted by name."""
        params = "&".join(f"{k}={v}" for k, v in sorted(request.parameters.items()))
        return f"{provider_id}:{request.prompt}:{params}"

    def rate_limiter_for(self, provider_id: str) -> RateLimiter:
        limiter = self._rate_limiters.get(provider_id)
        if limiter is None:
            limiter = RateLimiter(DEFAULT_MAX_REQUESTS, DEFAULT_TIME_WINDOW)
            self._rate_limiters[provider_id] = limiter
        return limiter

    def set_rate_limiter(self, limiter: RateLimiter, provider_id: str) -> None:
        self._rate_limiters[provider_id] = limiter

    async def clear_cache(self) -> None:
        await self._cache.clear()

    async def statistics(self) -> ExecutorStatistics:
        return ExecutorStatistics(
            cache_stats=await self._cache.statistics(),
            rate_limiter_count=len(self._rate_limiters),
            max_retries=self.retry_config.max_retries,
            base_delay=self.retry_config.base_delay,
            max_delay=self.retry_config.max_delay,
        )
