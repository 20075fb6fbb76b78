"""
Token-bucket admission control for provider calls.

Tokens refill continuously at max_requests / time_window per second. The
refill is computed lazily from elapsed clock time on every operation and is
clamped to capacity. Callers that find the bucket empty wait in a FIFO queue
and are granted tokens strictly in arrival order.

While the queue is non-empty a single timer task is armed for the moment the
next token is due; it runs a refill pass and re-arms itself until the queue
drains. All state is mutated synchronously on the event loop, so no two
operations ever interleave on the counters or the queue.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MIN_SCHEDULER_INTERVAL = 0.01
UNLIMITED = sys.maxsize


@dataclass(frozen=True)
class RateLimiterStatistics:
    available_tokens: int
    max_requests: int
    time_window: float
    refill_rate: float
    queue_length: int
    estimated_wait_seconds: float


class RateLimiter:
    """
    Per-provider token bucket.

    Example:
        limiter = RateLimiter(max_requests=60, time_window=60.0)
        await limiter.acquire()
        # call the provider...
    """

    def __init__(
        self,
        max_requests: int,
        time_window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")

        self.max_requests = max_requests
        self.time_window = time_window
        self._clock = clock
        self._tokens = max_requests
        self._last_refill = clock()
        self._refill_rate = max_requests / time_window if time_window > 0 else 0.0
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._refill_task: asyncio.Task[None] | None = None

    # -- presets -------------------------------------------------------------

    @classmethod
    def openai(cls) -> RateLimiter:
        return cls(max_requests=500, time_window=60.0)

    @classmethod
    def anthropic(cls) -> RateLimiter:
        return cls(max_requests=50, time_window=60.0)

    @classmethod
    def elevenlabs(cls) -> RateLimiter:
        return cls(max_requests=300, time_window=60.0)

    @classmethod
    def unlimited(cls) -> RateLimiter:
        return cls(max_requests=UNLIMITED, time_window=1.0)

    # -- public API ----------------------------------------------------------

    @property
    def is_unlimited(self) -> bool:
        return self.max_requests >= UNLIMITED

    @property
    def refill_rate(self) -> float:
        return self._refill_rate

    @property
    def queue_length(self) -> int:
        return len(self._waiters)

    async def acquire(self) -> None:
        """Wait until a token is available, then consume it."""
        self._refill()

        if self._tokens > 0 and not self._waiters:
            self._tokens -= 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        logger.debug("Rate limit reached, queued caller (queue=%d)", len(self._waiters))
        self._schedule_refill()

        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Token granted to a caller that is no longer there.
                self._tokens = min(self._tokens + 1, self.max_requests)
                self._grant_waiters()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def try_acquire(self) -> bool:
        """Consume a token if one is available right now; never queues."""
        self._refill()

        if self._tokens > 0:
            self._tokens -= 1
            return True
        return False

    def available_tokens(self) -> int:
        self._refill()
        return self._tokens

    def estimated_wait_seconds(self) -> float:
        """Estimated seconds before a new caller would be granted a token."""
        self._refill()

        if self._tokens > 0 or self.is_unlimited:
            return 0.0
        if self._refill_rate <= 0:
            return max(self.time_window, MIN_SCHEDULER_INTERVAL)
        return self._next_token_delay() + len(self._waiters) / self._refill_rate

    def reset(self) -> None:
        """Refill to capacity and release every queued caller immediately."""
        self._tokens = self.max_requests
        self._last_refill = self._clock()

        if self._refill_task is not None:
            self._refill_task.cancel()
            self._refill_task = None

        waiters = list(self._waiters)
        self._waiters.clear()
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    def statistics(self) -> RateLimiterStatistics:
        return RateLimiterStatistics(
            available_tokens=self.available_tokens(),
            max_requests=self.max_requests,
            time_window=self.time_window,
            refill_rate=self._refill_rate,
            queue_length=len(self._waiters),
            estimated_wait_seconds=self.estimated_wait_seconds(),
        )

    # -- internals -----------------------------------------------------------

    def _refill(self) -> None:
        now = self._clock()

        # Unlimited or windowless buckets are simply full on every pass.
        if self.is_unlimited or self._refill_rate <= 0:
            self._tokens = self.max_requests
            self._last_refill = now
            self._grant_waiters()
            return

        elapsed = now - self._last_refill
        if elapsed <= 0:
            return

        if self._tokens >= self.max_requests:
            self._last_refill = now
            return

        added = int(elapsed * self._refill_rate)
        if added <= 0:
            return

        self._tokens = min(self._tokens + added, self.max_requests)
        if self._tokens >= self.max_requests:
            self._last_refill = now
        else:
            # Keep the fractional progress towards the next token.
            self._last_refill += added / self._refill_rate
        self._grant_waiters()

    def _grant_waiters(self) -> None:
        while self._tokens > 0 and self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._tokens -= 1
            waiter.set_result(None)

        if self._waiters:
            self._schedule_refill()

    def _schedule_refill(self) -> None:
        if not self._waiters or self._refill_task is not None or self.is_unlimited:
            return

        delay = max(self._next_token_delay(), MIN_SCHEDULER_INTERVAL)
        self._refill_task = asyncio.get_running_loop().create_task(
            self._scheduled_refill(delay)
        )

    async def _scheduled_refill(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._refill_task = None
        self._refill()
        self._schedule_refill()

    def _next_token_delay(self) -> float:
        if self._refill_rate <= 0:
            return max(self.time_window, MIN_SCHEDULER_INTERVAL)

        time_per_token = 1.0 / self._refill_rate
        remaining = time_per_token - (self._clock() - self._last_refill)
        return max(remaining, 0.0)
