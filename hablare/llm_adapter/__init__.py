from hablare.llm_adapter.base import GenerationProvider
from hablare.llm_adapter.cache import (
    InMemoryResponseCache,
    RedisResponseCache,
    ResponseCache,
    build_response_cache,
)
from hablare.llm_adapter.factory import get_provider, register_provider, reset_providers
from hablare.llm_adapter.mock_provider import MockProvider

__all__ = [
    "GenerationProvider",
    "ResponseCache",
    "InMemoryResponseCache",
    "RedisResponseCache",
    "MockProvider",
    "build_response_cache",
    "get_provider",
    "register_provider",
    "reset_providers",
]
