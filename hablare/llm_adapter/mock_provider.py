"""
Deterministic mock provider for testing and development.

Returns the same text for the same prompt hash unless scripted otherwise,
so the orchestration layer can be exercised without network calls. Failures
and latency can be scripted per call.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections import deque
from collections.abc import Iterable
from typing import Any

from hablare.contracts.requests import ResponseContent, TextContent
from hablare.llm_adapter.base import GenerationProvider

_MOCK_PREFIX = "[MOCK] "


class MockProvider(GenerationProvider):

    def __init__(
        self,
        provider_id: str = "mock",
        responses: Iterable[ResponseContent] | None = None,
        failures: Iterable[BaseException] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.provider_id = provider_id
        self.display_name = "Mock Provider"
        self.delay = delay
        self.call_count = 0
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._responses: deque[ResponseContent] = deque(responses or ())
        self._failures: deque[BaseException] = deque(failures or ())

    async def generate(self, prompt: str, parameters: dict[str, Any]) -> ResponseContent:
        self.call_count += 1
        self.calls.append((prompt, dict(parameters)))

        if self.delay > 0:
            await asyncio.sleep(self.delay)

        if self._failures:
            raise self._failures.popleft()

        if self._responses:
            return self._responses.popleft()

        prompt_hash = hashlib.sha256(prompt.encode()).hexdigest()
        return TextContent(
            text=f"{_MOCK_PREFIX}Deterministic response for prompt hash {prompt_hash[:12]}."
        )
