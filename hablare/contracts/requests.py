"""
Data contracts shared by the executor, the manager and the HTTP service.

Request and the content variants are pydantic models so they validate and
serialize like the rest of the contracts; lifecycle records that carry live
exception objects (ResponseData, RequestStatus, TrackedRequest) are frozen
dataclasses.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, JsonValue

from hablare.contracts.errors import ServiceError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class Request(BaseModel):
    """
    Immutable description of one generation call.

    Identity is the id: two requests with the same prompt and parameters but
    different ids are different requests.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    prompt: str
    parameters: dict[str, str] = Field(default_factory=dict)
    timeout: float | None = Field(default=None, gt=0)
    use_cache: bool = True
    metadata: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Request):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def with_parameters(self, **parameters: str) -> Request:
        """Return a new request (new id) with `parameters` merged over the current ones."""
        merged = {**self.parameters, **parameters}
        return Request(
            prompt=self.prompt,
            parameters=merged,
            timeout=self.timeout,
            use_cache=self.use_cache,
            metadata=self.metadata,
        )

    def with_timeout(self, timeout: float) -> Request:
        return Request(
            prompt=self.prompt,
            parameters=self.parameters,
            timeout=timeout,
            use_cache=self.use_cache,
            metadata=self.metadata,
        )

    def with_cache(self, use_cache: bool) -> Request:
        return Request(
            prompt=self.prompt,
            parameters=self.parameters,
            timeout=self.timeout,
            use_cache=use_cache,
            metadata=self.metadata,
        )


# ---------------------------------------------------------------------------
# Response content (tagged union)
# ---------------------------------------------------------------------------


class AudioFormat(str, Enum):
    MP3 = "mp3"
    WAV = "wav"
    AAC = "aac"
    FLAC = "flac"
    OGG = "ogg"
    OPUS = "opus"
    PCM = "pcm"
    UNKNOWN = "unknown"


class ImageFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    GIF = "gif"
    WEBP = "webp"
    HEIC = "heic"
    TIFF = "tiff"
    BMP = "bmp"
    UNKNOWN = "unknown"


class TextContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    text: str

    def to_bytes(self) -> bytes:
        return self.text.encode("utf-8")


class DataContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["data"] = "data"
    data: bytes

    def to_bytes(self) -> bytes:
        return self.data


class AudioContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["audio"] = "audio"
    data: bytes
    format: AudioFormat = AudioFormat.UNKNOWN

    def to_bytes(self) -> bytes:
        return self.data


class ImageContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["image"] = "image"
    data: bytes
    format: ImageFormat = ImageFormat.UNKNOWN

    def to_bytes(self) -> bytes:
        return self.data


class StructuredContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["structured"] = "structured"
    value: dict[str, JsonValue]

    def to_bytes(self) -> bytes:
        return json.dumps(self.value, separators=(",", ":")).encode("utf-8")


ResponseContent = Annotated[
    Union[TextContent, DataContent, AudioContent, ImageContent, StructuredContent],
    Field(discriminator="kind"),
]


class UsageStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    cost_usd: float | None = None
    duration_seconds: float | None = None


# ---------------------------------------------------------------------------
# Executor output
# ---------------------------------------------------------------------------


class FinishReason(str, Enum):
    COMPLETED = "completed"
    LENGTH_LIMIT = "length_limit"
    CONTENT_FILTER = "content_filter"
    STOP_SEQUENCE = "stop_sequence"
    CANCELLED = "cancelled"
    ERROR = "error"
    UNKNOWN = "unknown"


class GenerationResponse(BaseModel):
    """Normalized result returned by RequestExecutor: content is opaque bytes."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    content: bytes
    provider_id: str
    model: str | None = None
    finish_reason: FinishReason = FinishReason.COMPLETED
    usage: UsageStats | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    from_cache: bool = False
    request: Request | None = None
    received_at: datetime = Field(default_factory=utcnow)

    def as_text(self) -> str | None:
        try:
            return self.content.decode("utf-8")
        except UnicodeDecodeError:
            return None

    def decode_json(self) -> Any:
        return json.loads(self.content)


@dataclass
class BatchResponse:
    successes: list[GenerationResponse] = field(default_factory=list)
    failures: list[tuple[Request, ServiceError]] = field(default_factory=list)
    completed_at: datetime = field(default_factory=utcnow)

    @property
    def total_requests(self) -> int:
        return len(self.successes) + len(self.failures)

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return len(self.successes) / self.total_requests

    @property
    def all_succeeded(self) -> bool:
        return not self.failures

    @property
    def any_succeeded(self) -> bool:
        return bool(self.successes)

    @property
    def all_failed(self) -> bool:
        return not self.successes


# ---------------------------------------------------------------------------
# Manager records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResponseData:
    """
    Outcome of one request as stored by RequestManager.

    Exactly one of `content` and `error` is set.
    """

    request_id: str
    provider_id: str
    content: ResponseContent | None = None
    error: ServiceError | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    received_at: datetime = field(default_factory=utcnow)
    usage: UsageStats | None = None

    def __post_init__(self) -> None:
        if (self.content is None) == (self.error is None):
            raise ValueError("ResponseData needs exactly one of content or error")

    @classmethod
    def success(
        cls,
        request_id: str,
        provider_id: str,
        content: ResponseContent,
        metadata: dict[str, str] | None = None,
        usage: UsageStats | None = None,
    ) -> ResponseData:
        return cls(
            request_id=request_id,
            provider_id=provider_id,
            content=content,
            metadata=dict(metadata or {}),
            usage=usage,
        )

    @classmethod
    def failure(
        cls,
        request_id: str,
        provider_id: str,
        error: ServiceError,
        metadata: dict[str, str] | None = None,
    ) -> ResponseData:
        return cls(
            request_id=request_id,
            provider_id=provider_id,
            error=error,
            metadata=dict(metadata or {}),
        )

    @property
    def is_success(self) -> bool:
        return self.content is not None

    @property
    def is_failure(self) -> bool:
        return not self.is_success


class RequestState(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL_STATES = frozenset(
    {RequestState.COMPLETED, RequestState.FAILED, RequestState.CANCELLED}
)


@dataclass(frozen=True)
class RequestStatus:
    state: RequestState
    progress: float | None = None
    response: ResponseData | None = None
    error: ServiceError | None = None

    @classmethod
    def pending(cls) -> RequestStatus:
        return cls(RequestState.PENDING)

    @classmethod
    def executing(cls, progress: float | None = None) -> RequestStatus:
        return cls(RequestState.EXECUTING, progress=progress)

    @classmethod
    def completed(cls, response: ResponseData) -> RequestStatus:
        return cls(RequestState.COMPLETED, response=response)

    @classmethod
    def failed(cls, error: ServiceError) -> RequestStatus:
        return cls(RequestState.FAILED, error=error)

    @classmethod
    def cancelled(cls) -> RequestStatus:
        return cls(RequestState.CANCELLED)

    @property
    def is_in_progress(self) -> bool:
        return self.state not in _TERMINAL_STATES

    @property
    def is_finished(self) -> bool:
        return self.state in _TERMINAL_STATES

    @property
    def is_completed(self) -> bool:
        return self.state == RequestState.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.state == RequestState.FAILED

    @property
    def is_cancelled(self) -> bool:
        return self.state == RequestState.CANCELLED

    @property
    def description(self) -> str:
        if self.state == RequestState.EXECUTING:
            if self.progress is not None:
                return f"Executing ({int(self.progress * 100)}%)"
            return "Executing"
        if self.state == RequestState.FAILED:
            return f"Failed: {self.error.message if self.error else ''}"
        return self.state.value.capitalize()

    def to_dict(self) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "state": self.state.value,
            "description": self.description,
        }
        if self.progress is not None:
            entry["progress"] = self.progress
        if self.error is not None:
            entry["error"] = self.error.to_dict()
        return entry


@dataclass(frozen=True)
class TrackedRequest:
    request: Request
    status: RequestStatus
    provider_id: str
    submitted_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def id(self) -> str:
        return self.request.id

    @property
    def duration(self) -> float | None:
        """Seconds from submission to finish, or running time while executing."""
        if self.finished_at is not None:
            return (self.finished_at - self.submitted_at).total_seconds()
        if self.started_at is not None:
            return (utcnow() - self.started_at).total_seconds()
        return None

    def with_status(self, status: RequestStatus) -> TrackedRequest:
        now = utcnow()
        started_at = self.started_at
        finished_at = self.finished_at
        if status.state == RequestState.EXECUTING:
            started_at = started_at or now
        elif status.is_finished:
            finished_at = finished_at or now
        return replace(self, status=status, started_at=started_at, finished_at=finished_at)

    def with_progress(self, progress: float) -> TrackedRequest:
        return self.with_status(RequestStatus.executing(progress))


@dataclass(frozen=True)
class RequestStatistics:
    total_requests: int
    pending_requests: int
    executing_requests: int
    completed_requests: int
    failed_requests: int
    cancelled_requests: int
    average_duration: float | None
    success_rate: float | None

    @classmethod
    def from_tracked(cls, requests: list[TrackedRequest]) -> RequestStatistics:
        counts = {state: 0 for state in RequestState}
        durations: list[float] = []
        for tracked in requests:
            counts[tracked.status.state] += 1
            if tracked.status.is_completed and tracked.duration is not None:
                durations.append(tracked.duration)

        completed = counts[RequestState.COMPLETED]
        failed = counts[RequestState.FAILED]
        finished = completed + failed

        return cls(
            total_requests=len(requests),
            pending_requests=counts[RequestState.PENDING],
            executing_requests=counts[RequestState.EXECUTING],
            completed_requests=completed,
            failed_requests=failed,
            cancelled_requests=counts[RequestState.CANCELLED],
            average_duration=sum(durations) / len(durations) if durations else None,
            success_rate=completed / finished if finished else None,
        )
