"""
Provider factory -- single entry point for resolving providers by name.

Reads LLM_PROVIDER from env (default: 'mock') when no name is given and
returns one shared instance per provider name.

Supported providers:

  mock        Built-in deterministic mock, no API key needed (default)
  openai      OpenAI API  -- needs OPENAI_API_KEY or LLM_API_KEY
  groq        Groq API    -- needs LLM_API_KEY
  gemini      Google AI   -- needs LLM_API_KEY
  openrouter  OpenRouter  -- needs LLM_API_KEY
  local       Any OpenAI-compatible local server (no key required)

Additional providers can be plugged in with register_provider().
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable

from hablare.contracts.errors import ConfigurationError
from hablare.llm_adapter.base import GenerationProvider
from hablare.llm_adapter.mock_provider import MockProvider

logger = logging.getLogger(__name__)

_OPENAI_COMPATIBLE = {"openai", "groq", "gemini", "openrouter", "local"}

_PROVIDERS: dict[str, Callable[[], GenerationProvider]] = {
    "mock": MockProvider,
}

_instances: dict[str, GenerationProvider] = {}


def _register_openai_compatible(name: str) -> None:
    """Lazy-register any OpenAI-compatible provider."""
    from hablare.llm_adapter.openai_provider import OpenAIProvider

    def _factory() -> OpenAIProvider:
        return OpenAIProvider(provider_name=name)

    _PROVIDERS[name] = _factory


def register_provider(name: str, factory: Callable[[], GenerationProvider]) -> None:
    """Register (or replace) a provider factory under `name`."""
    key = name.lower()
    _PROVIDERS[key] = factory
    _instances.pop(key, None)


def get_provider(provider_name: str | None = None) -> GenerationProvider:
    """Return the shared provider instance for `provider_name` (or LLM_PROVIDER)."""
    name = (provider_name or os.environ.get("LLM_PROVIDER", "mock")).lower()

    existing = _instances.get(name)
    if existing is not None:
        return existing

    if name in _OPENAI_COMPATIBLE and name not in _PROVIDERS:
        _register_openai_compatible(name)

    factory = _PROVIDERS.get(name)
    if factory is None:
        raise ConfigurationError(
            f"Unknown provider '{name}'. "
            f"Available: {', '.join(sorted(set(_PROVIDERS) | _OPENAI_COMPATIBLE))}"
        )

    provider = factory()
    _instances[name] = provider
    logger.info(
        "Provider initialized: %s (id=%s, model=%s)",
        name,
        provider.provider_id,
        os.environ.get("LLM_MODEL", "provider-default"),
    )
    return provider


def reset_providers() -> None:
    """Drop every shared instance (for testing)."""
    _instances.clear()
