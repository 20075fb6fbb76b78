"""
Request Service -- HTTP surface over the request orchestration core.

Responsibilities:
1. POST /api/requests            -- submit a request to the manager
2. POST /api/requests/{id}/execute -- run (or join) the manager execution
3. GET  /api/requests/{id}       -- tracked request and current status
4. GET  /api/requests/{id}/response -- stored response
5. DELETE /api/requests/{id}     -- cancel a pending or executing request
6. POST /api/generate            -- one-shot executor call (cache, rate limit, retry)
7. GET  /api/statistics          -- manager and executor statistics
8. WebSocket /ws/requests/{id}   -- stream status transitions until terminal

One provider, resolved from LLM_PROVIDER, backs both paths.
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hablare.contracts.errors import (
    InvalidRequestError,
    RateLimitExceededError,
    RequestCancelledError,
    RequestTimeoutError,
    ServiceError,
    as_service_error,
)
from hablare.llm_adapter.base import GenerationProvider
from hablare.llm_adapter.cache import ResponseCache, build_response_cache
from hablare.llm_adapter.factory import get_provider
from hablare.logging.logger import setup_logging
from hablare.observability.metrics import metrics_response
from hablare.runtime.executor import RequestExecutor
from hablare.runtime.manager import RequestManager
from hablare.runtime.rate_limiter import RateLimiter
from services.request_service.config import RequestServiceConfig
from services.request_service.schemas import (
    SubmitRequestBody,
    generation_response_view,
    response_data_view,
    tracked_request_view,
)

SERVICE_NAME = "request_service"
cfg: RequestServiceConfig | None = None
provider: GenerationProvider | None = None
cache: ResponseCache | None = None
executor: RequestExecutor | None = None
manager: RequestManager | None = None


@asynccontextmanager
async def lifespan(application: FastAPI):
    global cfg, provider, cache, executor, manager
    cfg = RequestServiceConfig.from_env()
    logger = setup_logging(SERVICE_NAME, cfg.log_level, {"provider": cfg.llm_provider})

    provider = get_provider(cfg.llm_provider)
    cache = build_response_cache(
        redis_url=cfg.redis_url,
        max_entries=cfg.cache_max_entries,
        ttl=cfg.cache_ttl_seconds,
    )
    executor = RequestExecutor(
        cache=cache,
        retry_config=cfg.retry,
        default_timeout=cfg.request_timeout_seconds,
    )
    executor.set_rate_limiter(
        RateLimiter(cfg.rate_limit_max_requests, cfg.rate_limit_window_seconds),
        provider.provider_id,
    )
    manager = RequestManager(
        max_cached_responses=cfg.max_cached_responses,
        max_response_age=cfg.max_response_age_seconds,
    )

    logger.info("Request Service ready (provider=%s)", provider.provider_id)
    yield

    logger.info("Shutting down")
    cancelled = manager.cancel_all()
    if cancelled:
        logger.info("Cancelled %d in-flight requests", cancelled)
    close = getattr(cache, "close", None)
    if close is not None:
        await close()


app = FastAPI(
    title="Hablare - Request Service",
    version="0.1.0",
    description="Request lifecycle management, caching, rate limiting and retry for generation providers",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = logging.getLogger(SERVICE_NAME)


def _error_response(exc: ServiceError) -> JSONResponse:
    if isinstance(exc, InvalidRequestError):
        status_code = 400
    elif isinstance(exc, RequestCancelledError):
        status_code = 409
    elif isinstance(exc, RateLimitExceededError):
        status_code = 429
    elif isinstance(exc, RequestTimeoutError):
        status_code = 504
    else:
        status_code = 502
    return JSONResponse(content={"error": exc.to_dict()}, status_code=status_code)


def _not_found(request_id: str) -> JSONResponse:
    return JSONResponse(
        content={"error": f"Request not found: {request_id}"}, status_code=404
    )


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "provider": provider.provider_id if provider else None,
        "stored_responses": manager.response_count if manager else 0,
    }


@app.get("/metrics")
async def metrics():
    return metrics_response()


@app.post("/api/requests", status_code=201)
async def submit_request(body: SubmitRequestBody):
    request = body.to_request()
    request_id = manager.submit(request, provider)
    return {"id": request_id, "status": manager.status(request_id).to_dict()}


@app.post("/api/requests/{request_id}/execute")
async def execute_request(request_id: str):
    if manager.tracked_request(request_id) is None and manager.response(request_id) is None:
        return _not_found(request_id)
    try:
        response = await manager.execute(request_id)
    except ServiceError as exc:
        return _error_response(exc)
    return response_data_view(response)


@app.get("/api/requests/{request_id}")
async def get_request(request_id: str):
    tracked = manager.tracked_request(request_id)
    if tracked is None:
        return _not_found(request_id)
    return tracked_request_view(tracked)


@app.get("/api/requests/{request_id}/response")
async def get_response(request_id: str):
    response = manager.response(request_id)
    if response is None:
        return JSONResponse(
            content={"error": f"No response stored for request {request_id}"},
            status_code=404,
        )
    return response_data_view(response)


@app.delete("/api/requests/{request_id}")
async def cancel_request(request_id: str):
    status = manager.status(request_id)
    if status is None:
        return _not_found(request_id)
    if not manager.cancel(request_id):
        return JSONResponse(
            content={"error": f"Request already {status.state.value}", "status": status.to_dict()},
            status_code=409,
        )
    return {"id": request_id, "status": manager.status(request_id).to_dict()}


@app.post("/api/generate")
async def generate(body: SubmitRequestBody):
    try:
        response = await executor.execute(body.to_request(), provider)
    except Exception as exc:
        error = as_service_error(exc)
        logger.warning("Generation failed: %s", error)
        return _error_response(error)
    return generation_response_view(response)


@app.get("/api/statistics")
async def statistics(provider_id: str | None = None):
    executor_stats = await executor.statistics()
    return {
        "requests": asdict(manager.statistics(provider_id)),
        "stored_responses": manager.response_count,
        "executor": asdict(executor_stats),
    }


@app.websocket("/ws/requests/{request_id}")
async def request_status_stream(websocket: WebSocket, request_id: str):
    await websocket.accept()
    try:
        async for status in manager.status_stream(request_id):
            await websocket.send_text(
                json.dumps({"type": "status", "request_id": request_id, "status": status.to_dict()})
            )
        await websocket.close()
    except WebSocketDisconnect:
        logger.debug("Status stream client for %s disconnected", request_id[:8])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        log_config=None,
    )
