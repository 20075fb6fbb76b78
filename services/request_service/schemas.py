"""HTTP request bodies and JSON views of the lifecycle records."""

from __future__ import annotations

import base64
from typing import Any

from pydantic import BaseModel, Field

from hablare.contracts.requests import (
    GenerationResponse,
    Request,
    ResponseData,
    StructuredContent,
    TextContent,
    TrackedRequest,
)


class SubmitRequestBody(BaseModel):
    prompt: str = Field(min_length=1)
    parameters: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, str] = Field(default_factory=dict)
    timeout: float | None = Field(default=None, gt=0)
    use_cache: bool = True

    def to_request(self) -> Request:
        return Request(
            prompt=self.prompt,
            parameters=self.parameters,
            metadata=self.metadata,
            timeout=self.timeout,
            use_cache=self.use_cache,
        )


def content_view(content: Any) -> dict[str, Any]:
    """Text and structured content stay readable; binary payloads are base64."""
    if isinstance(content, TextContent):
        return {"kind": content.kind, "text": content.text}
    if isinstance(content, StructuredContent):
        return {"kind": content.kind, "value": content.value}
    view: dict[str, Any] = {
        "kind": content.kind,
        "data_base64": base64.b64encode(content.to_bytes()).decode("ascii"),
    }
    fmt = getattr(content, "format", None)
    if fmt is not None:
        view["format"] = fmt.value
    return view


def response_data_view(response: ResponseData) -> dict[str, Any]:
    view: dict[str, Any] = {
        "request_id": response.request_id,
        "provider_id": response.provider_id,
        "success": response.is_success,
        "metadata": response.metadata,
        "received_at": response.received_at.isoformat(),
    }
    if response.content is not None:
        view["content"] = content_view(response.content)
    if response.error is not None:
        view["error"] = response.error.to_dict()
    return view


def tracked_request_view(tracked: TrackedRequest) -> dict[str, Any]:
    return {
        "id": tracked.id,
        "provider_id": tracked.provider_id,
        "prompt": tracked.request.prompt,
        "status": tracked.status.to_dict(),
        "submitted_at": tracked.submitted_at.isoformat(),
        "started_at": tracked.started_at.isoformat() if tracked.started_at else None,
        "finished_at": tracked.finished_at.isoformat() if tracked.finished_at else None,
        "duration": tracked.duration,
    }


def generation_response_view(response: GenerationResponse) -> dict[str, Any]:
    text = response.as_text()
    view: dict[str, Any] = {
        "id": response.id,
        "provider_id": response.provider_id,
        "from_cache": response.from_cache,
        "finish_reason": response.finish_reason.value,
        "metadata": response.metadata,
        "received_at": response.received_at.isoformat(),
    }
    if text is not None:
        view["text"] = text
    else:
        view["data_base64"] = base64.b64encode(response.content).decode("ascii")
    if response.usage is not None:
        view["usage"] = response.usage.model_dump(exclude_none=True)
    return view
