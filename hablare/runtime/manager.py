"""
Lifecycle manager for many concurrently in-flight generation requests.

Responsibilities:
- Track requests by id from submission through completion
- Run at most one execution per request id, joining callers onto it
- Apply cooperative cancellation before the provider call and before results
  are stored, so a late success never overwrites a cancellation
- Stream status transitions to any number of observers
- Retain responses within count and age bounds

All bookkeeping is owned by the manager and mutated only from the event loop,
synchronously between suspension points; provider calls run in their own
tasks, so many requests can be in flight at once without two operations ever
interleaving on the maps.

The manager calls providers directly. Caching, rate limiting and retry live
in RequestExecutor, which is a separate call path.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Sequence

from hablare.contracts.errors import (
    InvalidRequestError,
    RequestCancelledError,
    ServiceError,
    as_service_error,
)
from hablare.contracts.requests import (
    Request,
    RequestState,
    RequestStatistics,
    RequestStatus,
    ResponseData,
    TrackedRequest,
    utcnow,
)
from hablare.llm_adapter.base import GenerationProvider
from hablare.logging.logger import log_extra
from hablare.observability.metrics import provider_calls, request_duration, requests_in_flight

logger = logging.getLogger(__name__)

_STREAM_CLOSED = object()


class CancellationToken:
    """Flag checked by an execution at its cancellation points."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self, request_id: str) -> None:
        if self._cancelled:
            raise RequestCancelledError(f"Request was cancelled: {request_id}")


class RequestManager:
    """
    Example:
        manager = RequestManager()
        request_id = manager.submit(Request(prompt="Hello"), provider)
        async for status in manager.status_stream(request_id):
            print(status.description)
    """

    def __init__(
        self,
        max_cached_responses: int = 100,
        max_response_age: float = 3600.0,
    ) -> None:
        self.max_cached_responses = max_cached_responses
        self.max_response_age = max_response_age

        self._tracked: dict[str, TrackedRequest] = {}
        self._responses: dict[str, ResponseData] = {}
        self._providers: dict[str, GenerationProvider] = {}
        self._tasks: dict[str, asyncio.Task[ResponseData]] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._subscribers: dict[str, list[asyncio.Queue]] = {}

    # -- submission and execution --------------------------------------------

    def submit(self, request: Request, provider: GenerationProvider) -> str:
        """Record a pending request; work starts only when execute() is called."""
        tracked = TrackedRequest(
            request=request,
            status=RequestStatus.pending(),
            provider_id=provider.provider_id,
        )
        self._tracked[request.id] = tracked
        self._providers[request.id] = provider
        self._notify(request.id, tracked.status)

        logger.debug(
            "Submitted request %s for %s",
            request.id[:8],
            provider.provider_id,
            extra=log_extra(request_id=request.id, provider=provider.provider_id),
        )
        return request.id

    async def execute(self, request_id: str) -> ResponseData:
        """
        Execute a submitted request, or join the execution already running.

        Provider failures are returned as a failed ResponseData. Raises
        InvalidRequestError for unknown ids and RequestCancelledError when the
        request has been cancelled.
        """
        stored = self._responses.get(request_id)
        if stored is not None:
            return stored

        task = self._tasks.get(request_id)
        if task is None:
            tracked = self._tracked.get(request_id)
            provider = self._providers.get(request_id)
            if tracked is None or provider is None:
                raise InvalidRequestError(f"Request not found: {request_id}")

            finished = self._finished_response(tracked)
            if finished is not None:
                return finished

            token = CancellationToken()
            self._tokens[request_id] = token
            task = asyncio.create_task(self._run(tracked.request, provider, token))
            self._tasks[request_id] = task

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise RequestCancelledError(f"Request was cancelled: {request_id}") from None
            raise

    async def submit_and_execute(
        self,
        request: Request,
        provider: GenerationProvider,
    ) -> ResponseData:
        request_id = self.submit(request, provider)
        return await self.execute(request_id)

    async def generate(
        self,
        prompt: str,
        provider: GenerationProvider,
        parameters: dict[str, str] | None = None,
        metadata: dict[str, str] | None = None,
    ) -> ResponseData:
        request = Request(
            prompt=prompt,
            parameters=parameters or {},
            metadata=metadata or {},
        )
        return await self.submit_and_execute(request, provider)

    async def execute_batch(
        self,
        request_ids: Sequence[str],
    ) -> list[ResponseData | ServiceError]:
        """Execute sequentially in input order; one failure never stops the rest."""
        results: list[ResponseData | ServiceError] = []
        for request_id in request_ids:
            try:
                results.append(await self.execute(request_id))
            except ServiceError as exc:
                results.append(exc)
        return results

    async def _run(
        self,
        request: Request,
        provider: GenerationProvider,
        token: CancellationToken,
    ) -> ResponseData:
        request_id = request.id
        provider_id = provider.provider_id
        started = time.monotonic()

        self._update_status(request_id, RequestStatus.executing())
        requests_in_flight.inc()
        try:
            token.raise_if_cancelled(request_id)

            try:
                content = await provider.generate(request.prompt, dict(request.parameters))
            except Exception as exc:
                provider_calls.labels(provider_id, "failure").inc()
                response = ResponseData.failure(
                    request_id, provider_id, as_service_error(exc), request.metadata
                )
            else:
                provider_calls.labels(provider_id, "success").inc()
                response = ResponseData.success(
                    request_id, provider_id, content, request.metadata
                )

            token.raise_if_cancelled(request_id)

            self._store_response(response)
            if response.is_success:
                self._update_status(request_id, RequestStatus.completed(response))
            else:
                logger.info(
                    "Request %s failed on %s: %s",
                    request_id[:8],
                    provider_id,
                    response.error,
                    extra=log_extra(request_id=request_id, provider=provider_id),
                )
                self._update_status(request_id, RequestStatus.failed(response.error))

            request_duration.labels(provider_id, "manager").observe(time.monotonic() - started)
            return response
        finally:
            requests_in_flight.dec()
            if self._tasks.get(request_id) is asyncio.current_task():
                del self._tasks[request_id]
            if self._tokens.get(request_id) is token:
                del self._tokens[request_id]

    def _finished_response(self, tracked: TrackedRequest) -> ResponseData | None:
        """Outcome of a request that already reached a terminal status."""
        status = tracked.status
        if status.is_cancelled:
            raise RequestCancelledError(f"Request was cancelled: {tracked.id}")
        if status.is_completed:
            return status.response
        if status.is_failed:
            return ResponseData.failure(
                tracked.id, tracked.provider_id, status.error, tracked.request.metadata
            )
        return None

    # -- cancellation --------------------------------------------------------

    def cancel(self, request_id: str) -> bool:
        """Cancel a pending or executing request; False if unknown or finished."""
        tracked = self._tracked.get(request_id)
        if tracked is None or tracked.status.is_finished:
            return False

        token = self._tokens.pop(request_id, None)
        if token is not None:
            token.cancel()
        task = self._tasks.pop(request_id, None)
        if task is not None:
            task.cancel()

        self._update_status(request_id, RequestStatus.cancelled())
        logger.info("Cancelled request %s", request_id[:8])
        return True

    def cancel_all(self) -> int:
        in_progress = [t.id for t in self._tracked.values() if t.status.is_in_progress]
        return sum(1 for request_id in in_progress if self.cancel(request_id))

    # -- progress and observation --------------------------------------------

    def update_progress(self, request_id: str, progress: float) -> bool:
        """Publish a progress value (0.0 to 1.0) for an executing request."""
        tracked = self._tracked.get(request_id)
        if tracked is None or tracked.status.state != RequestState.EXECUTING:
            return False
        updated = tracked.with_progress(min(max(progress, 0.0), 1.0))
        self._tracked[request_id] = updated
        self._notify(request_id, updated.status)
        return True

    def status_stream(self, request_id: str) -> AsyncIterator[RequestStatus]:
        """
        Observe a request: yields the current status, then every transition,
        and ends after the first terminal status. Unknown ids end immediately.
        """
        queue: asyncio.Queue = asyncio.Queue()
        tracked = self._tracked.get(request_id)

        if tracked is None:
            queue.put_nowait(_STREAM_CLOSED)
        else:
            queue.put_nowait(tracked.status)
            if tracked.status.is_in_progress:
                self._subscribers.setdefault(request_id, []).append(queue)

        return self._consume(request_id, queue)

    async def _consume(
        self,
        request_id: str,
        queue: asyncio.Queue,
    ) -> AsyncIterator[RequestStatus]:
        try:
            while True:
                item = await queue.get()
                if item is _STREAM_CLOSED:
                    return
                yield item
                if item.is_finished:
                    return
        finally:
            subscribers = self._subscribers.get(request_id)
            if subscribers and queue in subscribers:
                subscribers.remove(queue)
                if not subscribers:
                    del self._subscribers[request_id]

    def _notify(self, request_id: str, status: RequestStatus) -> None:
        subscribers = self._subscribers.get(request_id)
        if not subscribers:
            return
        for queue in subscribers:
            queue.put_nowait(status)
        if status.is_finished:
            del self._subscribers[request_id]

    def _close_streams(self, request_id: str) -> None:
        for queue in self._subscribers.pop(request_id, []):
            queue.put_nowait(_STREAM_CLOSED)

    def _update_status(self, request_id: str, status: RequestStatus) -> None:
        tracked = self._tracked.get(request_id)
        # Terminal statuses are final.
        if tracked is None or tracked.status.is_finished:
            return
        self._tracked[request_id] = tracked.with_status(status)
        self._notify(request_id, status)

    # -- queries -------------------------------------------------------------

    def status(self, request_id: str) -> RequestStatus | None:
        tracked = self._tracked.get(request_id)
        return tracked.status if tracked else None

    def response(self, request_id: str) -> ResponseData | None:
        return self._responses.get(request_id)

    def tracked_request(self, request_id: str) -> TrackedRequest | None:
        return self._tracked.get(request_id)

    def tracked_requests(
        self,
        provider_id: str | None = None,
        in_progress: bool | None = None,
    ) -> list[TrackedRequest]:
        result: list[TrackedRequest] = []
        for tracked in self._tracked.values():
            if provider_id is not None and tracked.provider_id != provider_id:
                continue
            if in_progress is not None and tracked.status.is_in_progress != in_progress:
                continue
            result.append(tracked)
        return result

    def statistics(self, provider_id: str | None = None) -> RequestStatistics:
        return RequestStatistics.from_tracked(self.tracked_requests(provider_id=provider_id))

    @property
    def response_count(self) -> int:
        return len(self._responses)

    # -- retention and cleanup -----------------------------------------------

    def cleanup_old_responses(self) -> int:
        """Drop responses past max_response_age, then the oldest beyond the count limit."""
        now = utcnow()
        removed = 0

        for request_id, response in list(self._responses.items()):
            if (now - response.received_at).total_seconds() > self.max_response_age:
                del self._responses[request_id]
                removed += 1

        overflow = len(self._responses) - self.max_cached_responses
        if overflow > 0:
            oldest = sorted(self._responses.items(), key=lambda item: item[1].received_at)
            for request_id, _ in oldest[:overflow]:
                del self._responses[request_id]
                removed += 1

        if removed:
            logger.debug("Removed %d stored responses", removed)
        return removed

    def _store_response(self, response: ResponseData) -> None:
        self._responses[response.request_id] = response
        if len(self._responses) > self.max_cached_responses:
            self.cleanup_old_responses()

    def remove_response(self, request_id: str) -> None:
        self._responses.pop(request_id, None)

    def clear_responses(self) -> None:
        self._responses.clear()

    def remove_tracking(self, request_id: str) -> None:
        """Forget a request's bookkeeping (its stored response is kept) and end its streams."""
        self._tracked.pop(request_id, None)
        self._providers.pop(request_id, None)
        self._tasks.pop(request_id, None)
        self._tokens.pop(request_id, None)
        self._close_streams(request_id)

    def clear_all(self) -> None:
        """Cancel active executions and drop all requests, responses and streams."""
        self.cancel_all()
        self._tracked.clear()
        self._responses.clear()
        self._providers.clear()
        self._tasks.clear()
        self._tokens.clear()
        for request_id in list(self._subscribers):
            self._close_streams(request_id)
