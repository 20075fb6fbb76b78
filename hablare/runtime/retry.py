from __future__ import annotations

import os
import random
from dataclasses import dataclass

from hablare.contracts.errors import is_retryable

JITTER_RATIO = 0.1


@dataclass(frozen=True)
class RetryConfiguration:
    """
    Exponential backoff settings.

    - max_retries: retries after the first attempt (0 disables retrying)
    - base_delay: seconds before the first retry
    - max_delay: upper bound for any single delay
    - backoff_multiplier: growth factor per retry, must be > 1
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier <= 1:
            raise ValueError("backoff_multiplier must be > 1")

    @classmethod
    def from_env(cls, prefix: str = "RETRY_") -> RetryConfiguration:
        return cls(
            max_retries=int(os.environ.get(f"{prefix}MAX_RETRIES", "3")),
            base_delay=float(os.environ.get(f"{prefix}BASE_DELAY", "1.0")),
            max_delay=float(os.environ.get(f"{prefix}MAX_DELAY", "60.0")),
            backoff_multiplier=float(os.environ.get(f"{prefix}BACKOFF_MULTIPLIER", "2.0")),
        )


NO_RETRIES = RetryConfiguration(max_retries=0)
AGGRESSIVE = RetryConfiguration(
    max_retries=5, base_delay=0.5, max_delay=30.0, backoff_multiplier=1.5
)
CONSERVATIVE = RetryConfiguration(
    max_retries=2, base_delay=2.0, max_delay=120.0, backoff_multiplier=3.0
)


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0


def should_retry(error: BaseException, attempt: int, config: RetryConfiguration) -> bool:
    """`attempt` is the 1-based number of failed attempts so far."""
    return attempt <= config.max_retries and is_retryable(error)


def backoff_delay(
    attempt: int,
    config: RetryConfiguration,
    rng: random.Random | None = None,
) -> float:
    """Delay before retry number `attempt`, always within [0, max_delay]."""
    rng = rng or random
    try:
        exponential = config.base_delay * config.backoff_multiplier ** max(attempt - 1, 0)
    except OverflowError:
        return config.max_delay
    jitter = rng.uniform(0.0, JITTER_RATIO) * exponential
    return min(max(exponential + jitter, 0.0), config.max_delay)


def next_retry(
    error: BaseException,
    attempt: int,
    config: RetryConfiguration,
    rng: random.Random | None = None,
) -> RetryDecision:
    if not should_retry(error, attempt, config):
        return RetryDecision(retry=False)
    return RetryDecision(retry=True, delay=backoff_delay(attempt, config, rng))
