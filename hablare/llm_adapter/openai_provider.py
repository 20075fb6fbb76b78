"""
OpenAI-compatible text generation provider.

Works with any API that speaks the OpenAI Chat Completions protocol:
  - OpenAI      (base_url=https://api.openai.com/v1)
  - Groq        (base_url=https://api.groq.com/openai/v1)
  - Google      (base_url=https://generativelanguage.googleapis.com/v1beta/openai)
  - OpenRouter  (base_url=https://openrouter.ai/api/v1)

SDK exceptions are translated into the ServiceError taxonomy so the executor
can decide whether to retry.
"""

from __future__ import annotations

import os
from typing import Any

import openai
from openai import AsyncOpenAI

from hablare.contracts.errors import (
    AuthenticationFailedError,
    ConnectionFailedError,
    InvalidRequestError,
    MissingCredentialsError,
    ModelNotFoundError,
    ProviderError,
    RateLimitExceededError,
    RequestTimeoutError,
    ServiceError,
    UnexpectedResponseFormatError,
)
from hablare.contracts.requests import ResponseContent, TextContent
from hablare.llm_adapter.base import GenerationProvider

_BASE_URLS: dict[str, str] = {
    "openai":     "https://api.openai.com/v1",
    "groq":       "https://api.groq.com/openai/v1",
    "gemini":     "https://generativelanguage.googleapis.com/v1beta/openai/",
    "openrouter": "https://openrouter.ai/api/v1",
}

_DEFAULT_MODELS: dict[str, str] = {
    "openai":     "gpt-4o-mini",
    "groq":       "llama-3.3-70b-versatile",
    "gemini":     "gemini-2.0-flash",
    "openrouter": "meta-llama/llama-3.3-70b-instruct:free",
}


class OpenAIProvider(GenerationProvider):
    """
    OpenAI Chat Completions adapter.

    Reads from env:
      LLM_API_KEY   -- API key (also checked as OPENAI_API_KEY)
      LLM_BASE_URL  -- override the base URL
      LLM_MODEL     -- override the default model for the provider

    Request parameters understood: model, temperature, max_tokens, system.
    """

    requires_api_key = True

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        provider_name: str = "openai",
        client: Any | None = None,
    ) -> None:
        self.provider_id = provider_name
        self.display_name = f"OpenAI-compatible ({provider_name})"

        self._api_key = (
            api_key
            or os.environ.get("LLM_API_KEY", "")
            or os.environ.get("OPENAI_API_KEY", "")
        )
        # Local servers (Ollama, LM Studio) usually accept any key.
        if not self._api_key and provider_name == "local":
            self._api_key = "local-placeholder-key"
        elif not self._api_key and client is None:
            raise MissingCredentialsError(
                f"An API key is required for provider '{provider_name}'. "
                "Set LLM_API_KEY (or OPENAI_API_KEY) in your environment."
            )

        self._base_url = (
            base_url
            or os.environ.get("LLM_BASE_URL", "")
            or _BASE_URLS.get(provider_name, _BASE_URLS["openai"])
        )
        self._model = (
            model
            or os.environ.get("LLM_MODEL", "")
            or _DEFAULT_MODELS.get(provider_name, "gpt-4o-mini")
        )

        if client is None:
            timeout = float(os.environ.get("LLM_REQUEST_TIMEOUT", "120"))
            client = AsyncOpenAI(
                api_key=self._api_key,
                base_url=self._base_url,
                timeout=timeout,
                max_retries=0,
            )
        self._client = client

    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def generate(self, prompt: str, parameters: dict[str, Any]) -> ResponseContent:
        messages: list[dict[str, str]] = []
        if parameters.get("system"):
            messages.append({"role": "system", "content": str(parameters["system"])})
        messages.append({"role": "user", "content": prompt})

        kwargs: dict[str, Any] = {
            "model": parameters.get("model") or self._model,
            "messages": messages,
        }
        try:
            if "temperature" in parameters:
                kwargs["temperature"] = float(parameters["temperature"])
            if "max_tokens" in parameters:
                kwargs["max_tokens"] = int(parameters["max_tokens"])
        except (TypeError, ValueError) as exc:
            raise InvalidRequestError(f"Invalid generation parameter: {exc}") from exc

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.APIError as exc:
            raise _translate_error(exc) from exc

        if not response.choices:
            raise UnexpectedResponseFormatError("Response contained no choices")
        return TextContent(text=response.choices[0].message.content or "")


def _translate_error(exc: openai.APIError) -> ServiceError:
    message = str(exc)
    if isinstance(exc, openai.APITimeoutError):
        return RequestTimeoutError(message)
    if isinstance(exc, openai.APIConnectionError):
        return ConnectionFailedError(message)
    if isinstance(exc, openai.AuthenticationError):
        return AuthenticationFailedError(message)
    if isinstance(exc, openai.RateLimitError):
        return RateLimitExceededError(message, retry_after=_retry_after(exc))
    if isinstance(exc, openai.NotFoundError):
        return ModelNotFoundError(message)
    if isinstance(exc, (openai.BadRequestError, openai.UnprocessableEntityError)):
        return InvalidRequestError(message)
    if isinstance(exc, openai.APIStatusError):
        return ProviderError(message, code=str(exc.status_code))
    return ProviderError(message)


def _retry_after(exc: openai.APIStatusError) -> float | None:
    value = exc.response.headers.get("retry-after")
    try:
        return float(value) if value else None
    except ValueError:
        return None
