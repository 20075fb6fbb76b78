"""Abstract base class that all generation providers must implement."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from hablare.contracts.errors import UnexpectedResponseFormatError
from hablare.contracts.requests import ResponseContent, TextContent


class GenerationProvider(ABC):
    """
    Contract for generation providers (text, audio, image).

    Every implementation MUST:
    - Expose a stable provider_id used for rate limiting and cache keys
    - Return one ResponseContent variant, or raise a ServiceError subclass
    - Be safe to call concurrently from many requests
    """

    provider_id: str = ""
    display_name: str = ""
    requires_api_key: bool = False

    def is_configured(self) -> bool:
        return True

    @abstractmethod
    async def generate(self, prompt: str, parameters: dict[str, Any]) -> ResponseContent:
        """Send a prompt and return the generated content."""

    async def generate_text(self, prompt: str, **parameters: Any) -> str:
        """Convenience wrapper for text providers: returns the generated string."""
        content = await self.generate(prompt, parameters)
        if not isinstance(content, TextContent):
            raise UnexpectedResponseFormatError(
                f"{self.provider_id} returned {content.kind} content, expected text"
            )
        return content.text
