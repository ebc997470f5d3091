"""
FastAPI server for DeepEx with Server-Sent Event responses.

Endpoints:
- POST /v1/reason: start a run (``{query, conversation?, mode_override?, image?, run_id?}``)
  or resume one (``{stage: "continue_<kind>", checkpoint}``); streams events
- GET /health: status, version and configured credential counts

Usage:
    $ uvicorn deepex.api.server:app --host 0.0.0.0 --port 8000

    $ curl -N -X POST http://localhost:8000/v1/reason \
      -H 'Content-Type: application/json' \
      -d '{"query":"Should we shard the orders table?"}'
    data: {"type": "classification", "timestamp": 1760000000000, ...}
    ...
    data: {"type": "final_complete", "confidence": 82, ...}

Malformed bodies are rejected with HTTP 400 before any stream is opened.
When a run hits its time budget the stream ends with a ``stage_data`` event
whose payload can be posted back unchanged to continue.
"""

import asyncio
import json
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from .. import __version__
from ..clients.errors import ConfigurationError, InvocationError
from ..config.container import Container, setup_container
from ..config.settings import get_settings
from ..core.engine import parse_invocation
from ..core.events import EventChannel
from ..observability.logging import get_logger

logger = get_logger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no", "Connection": "keep-alive"}


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    credentials: dict[str, int]


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "invalid_request", "detail": message})


def create_app(container: Container | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = container.settings if container else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Starting DeepEx API server", version=__version__, environment=settings.environment)
        c = container or setup_container(settings)
        app.state.container = c
        app.state.startup_time = time.time()
        app.state.tasks = set()
        try:
            app.state.engine = c.get("engine")
        except ConfigurationError as e:
            logger.error("Engine unavailable, reasoning requests will be refused", error=str(e))
            app.state.engine = None

        logger.info("DeepEx API server ready", engine=app.state.engine is not None)
        yield

        logger.info("Shutting down DeepEx API server...")
        for task in list(app.state.tasks):
            task.cancel()
        if app.state.tasks:
            await asyncio.gather(*app.state.tasks, return_exceptions=True)
        recorder = c.get("audit_recorder")
        if recorder is not None:
            await recorder.drain()
        await c.cleanup()

    app = FastAPI(
        title="DeepEx",
        description="Resumable multi-stage LLM reasoning engine",
        version=__version__,
        docs_url="/docs" if settings.api.enable_docs else None,
        redoc_url="/redoc" if settings.api.enable_docs else None,
        lifespan=lifespan,
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check_endpoint(request: Request) -> HealthResponse:
        state = request.app.state
        startup_time = getattr(state, "startup_time", time.time())
        engine = getattr(state, "engine", None)
        c = getattr(state, "container", None)
        return HealthResponse(
            status="healthy" if engine is not None else "degraded",
            version=__version__,
            uptime_seconds=max(0.0, time.time() - startup_time),
            credentials=c.credential_counts() if c is not None else {},
        )

    @app.post("/v1/reason")
    async def reason_endpoint(request: Request):
        try:
            payload = json.loads(await request.body())
        except ValueError:
            return _bad_request("request body is not valid JSON")

        try:
            invocation = parse_invocation(payload, settings.api.max_query_length)
        except InvocationError as e:
            logger.warning("Rejected reasoning request", error=str(e))
            return _bad_request(str(e))

        engine = getattr(request.app.state, "engine", None)
        if engine is None:
            return JSONResponse(
                status_code=503,
                content={"error": "unavailable", "detail": "reasoning engine is not configured"},
            )

        channel = EventChannel(keepalive_interval=settings.pipeline.keepalive_interval)
        task = asyncio.create_task(engine.run(invocation, channel))
        tasks: set = request.app.state.tasks
        tasks.add(task)
        task.add_done_callback(tasks.discard)

        async def stream() -> AsyncGenerator[str, None]:
            try:
                async for frame in channel.sse():
                    yield frame
            finally:
                if not task.done():
                    logger.info("Client disconnected, cancelling run")
                    task.cancel()

        return StreamingResponse(stream(), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled API error",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return JSONResponse(status_code=500, content={"error": "internal_error", "detail": "Internal server error"})

    return app


app = create_app()
