from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)
from fastapi import Response


provider_calls = Counter(
    "provider_calls_total",
    "Provider invocations by outcome",
    ["provider", "outcome"],
)

cache_lookups = Counter(
    "cache_lookups_total",
    "Response cache lookups",
    ["provider", "result"],
)

request_retries = Counter(
    "request_retries_total",
    "Retries scheduled after a retryable provider failure",
    ["provider"],
)

rate_limit_waits = Counter(
    "rate_limit_waits_total",
    "Callers that had to queue for a rate limit token",
    ["provider"],
)

request_duration = Histogram(
    "request_duration_seconds",
    "Wall-clock time of a generation request",
    ["provider", "path"],
    buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

requests_in_flight = Gauge(
    "requests_in_flight",
    "Requests currently executing in the request manager",
)


def metrics_response() -> Response:
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
