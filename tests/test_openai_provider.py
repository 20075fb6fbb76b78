from types import SimpleNamespace

import httpx
import openai
import pytest

from hablare.contracts.errors import (
    AuthenticationFailedError,
    ConnectionFailedError,
    InvalidRequestError,
    MissingCredentialsError,
    ModelNotFoundError,
    ProviderError,
    RateLimitExceededError,
    RequestTimeoutError,
    UnexpectedResponseFormatError,
)
from hablare.contracts.requests import TextContent
from hablare.llm_adapter.openai_provider import OpenAIProvider

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _status_error(cls, status: int, headers: dict[str, str] | None = None):
    response = httpx.Response(status, headers=headers or {}, request=_REQUEST)
    return cls(f"HTTP {status}", response=response, body=None)


class FakeCompletions:

    def __init__(self, result=None, error=None) -> None:
        self.result = result
        self.error = error
        self.kwargs: dict | None = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error
        return self.result


def _provider(completions: FakeCompletions) -> OpenAIProvider:
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAIProvider(api_key="sk-test", model="gpt-test", client=client)


def _completion(text: str | None):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


class TestGenerate:

    @pytest.mark.asyncio
    async def test_builds_chat_request(self):
        completions = FakeCompletions(result=_completion("generated"))
        provider = _provider(completions)

        content = await provider.generate(
            "Hello", {"system": "be brief", "temperature": "0.5", "max_tokens": "64"}
        )

        assert content == TextContent(text="generated")
        assert completions.kwargs == {
            "model": "gpt-test",
            "messages": [
                {"role": "system", "content": "be brief"},
                {"role": "user", "content": "Hello"},
            ],
            "temperature": 0.5,
            "max_tokens": 64,
        }

    @pytest.mark.asyncio
    async def test_model_parameter_overrides_default(self):
        completions = FakeCompletions(result=_completion("x"))
        await _provider(completions).generate("p", {"model": "other-model"})
        assert completions.kwargs["model"] == "other-model"

    @pytest.mark.asyncio
    async def test_generate_text(self):
        provider = _provider(FakeCompletions(result=_completion("plain")))
        assert await provider.generate_text("p") == "plain"

    @pytest.mark.asyncio
    async def test_empty_choices(self):
        provider = _provider(FakeCompletions(result=SimpleNamespace(choices=[])))
        with pytest.raises(UnexpectedResponseFormatError):
            await provider.generate("p", {})


class TestErrorTranslation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error, expected",
        [
            (openai.APITimeoutError(request=_REQUEST), RequestTimeoutError),
            (openai.APIConnectionError(request=_REQUEST), ConnectionFailedError),
            (_status_error(openai.AuthenticationError, 401), AuthenticationFailedError),
            (_status_error(openai.NotFoundError, 404), ModelNotFoundError),
            (_status_error(openai.BadRequestError, 400), InvalidRequestError),
            (_status_error(openai.UnprocessableEntityError, 422), InvalidRequestError),
            (_status_error(openai.InternalServerError, 500), ProviderError),
        ],
    )
    async def test_sdk_errors_map_to_service_errors(self, error, expected):
        provider = _provider(FakeCompletions(error=error))
        with pytest.raises(expected):
            await provider.generate("p", {})

    @pytest.mark.asyncio
    async def test_rate_limit_keeps_retry_after(self):
        error = _status_error(openai.RateLimitError, 429, {"retry-after": "7"})
        provider = _provider(FakeCompletions(error=error))

        with pytest.raises(RateLimitExceededError) as excinfo:
            await provider.generate("p", {})

        assert excinfo.value.retry_after == 7.0
        assert excinfo.value.retry_delay == 7.0

    @pytest.mark.asyncio
    async def test_status_code_is_kept(self):
        provider = _provider(FakeCompletions(error=_status_error(openai.InternalServerError, 503)))
        with pytest.raises(ProviderError) as excinfo:
            await provider.generate("p", {})
        assert excinfo.value.code == "503"


class TestCredentials:

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("LLM_API_KEY", raising=False)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(MissingCredentialsError):
            OpenAIProvider(provider_name="groq")

    def test_local_needs_no_key(self, monkeypatch):
        monkeypatch.delenv("LLM_API_KEY", raising=False)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        provider = OpenAIProvider(provider_name="local", base_url="http://localhost:11434/v1")
        assert provider.provider_id == "local"
        assert provider.is_configured()

    def test_key_from_env(self, monkeypatch):
        monkeypatch.setenv("LLM_API_KEY", "sk-env")
        provider = OpenAIProvider(provider_name="openrouter")
        assert provider.is_configured()
        assert provider.provider_id == "openrouter"


class TestParameterValidation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("parameters", [{"temperature": "hot"}, {"max_tokens": "many"}])
    async def test_malformed_numeric_parameters(self, parameters):
        completions = FakeCompletions(result=_completion("unused"))

        with pytest.raises(InvalidRequestError) as excinfo:
            await _provider(completions).generate("p", parameters)

        assert completions.kwargs is None
        assert excinfo.value.is_retryable is False
