from __future__ import annotations

import os
from dataclasses import dataclass

from hablare.runtime.retry import RetryConfiguration


@dataclass(frozen=True)
class RequestServiceConfig:
    log_level: str
    llm_provider: str
    redis_url: str | None
    rate_limit_max_requests: int
    rate_limit_window_seconds: float
    request_timeout_seconds: float
    max_cached_responses: int
    max_response_age_seconds: float
    cache_ttl_seconds: float
    cache_max_entries: int
    retry: RetryConfiguration

    @classmethod
    def from_env(cls) -> RequestServiceConfig:
        return cls(
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            llm_provider=os.environ.get("LLM_PROVIDER", "mock"),
            redis_url=os.environ.get("REDIS_URL") or None,
            rate_limit_max_requests=int(os.environ.get("RATE_LIMIT_MAX_REQUESTS", "60")),
            rate_limit_window_seconds=float(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", "60")),
            request_timeout_seconds=float(os.environ.get("REQUEST_TIMEOUT_SECONDS", "30")),
            max_cached_responses=int(os.environ.get("MAX_CACHED_RESPONSES", "100")),
            max_response_age_seconds=float(os.environ.get("MAX_RESPONSE_AGE_SECONDS", "3600")),
            cache_ttl_seconds=float(os.environ.get("CACHE_TTL_SECONDS", "3600")),
            cache_max_entries=int(os.environ.get("CACHE_MAX_ENTRIES", "100")),
            retry=RetryConfiguration.from_env(),
        )
