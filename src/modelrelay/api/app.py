"""
OpenAI-compatible HTTP adapter for modelrelay.

A thin layer over :class:`~modelrelay.agent.engine.Engine`.  It exposes the following endpoints:
- **GET /health**               - liveness probe plus backend availability.
- **GET /v1/models**            - models every available backend can serve.
- **POST /v1/chat/completions** - chat completion, JSON or SSE (``"stream": true``).
"""

import json
import logging
from functools import lru_cache
from typing import (
    Any,
    AsyncIterator,
    Dict,
)

from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from modelrelay.agent.engine import Engine
from modelrelay.api.models import (
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChunkChoice,
    ChunkDelta,
    DeltaToolCall,
    DeltaToolCallFunction,
    ModelCard,
    ModelList,
)
from modelrelay.backends.base import describe_backends
from modelrelay.common import (
    AnsiColors,
    colored_print,
)
from modelrelay.config import settings
from modelrelay.core.errors import (
    BackendError,
    ModelRelayError,
    NoRouteError,
    UnknownModelError,
)
from modelrelay.core.schema import (
    ChatCompletionResponse,
    GenerationRequest,
    Role,
    new_call_id,
    new_completion_id,
)
from modelrelay.core.signals import ToolInvocation

logger = logging.getLogger(__name__)

app = FastAPI(
    title="modelrelay", version="0.1.0", description="Model dispatch and streaming engine API"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------
@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Process-wide engine; tests swap it through ``app.dependency_overrides``."""
    return Engine(source="api")


def _http_error(exc: ModelRelayError) -> HTTPException:
    if isinstance(exc, (NoRouteError, UnknownModelError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, BackendError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _to_request(body: ChatCompletionRequest) -> GenerationRequest:
    try:
        return body.to_generation_request()
    except (ValidationError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _sse(payload: Any) -> str:
    data = payload if isinstance(payload, str) else payload.model_dump_json(exclude_none=True)
    return f"data: {data}\n\n"


async def _sse_stream(
    stream: AsyncIterator[Any], model: str, completion_id: str
) -> AsyncIterator[str]:
    def _chunk(delta: ChunkDelta, finish_reason: str | None = None) -> ChatCompletionChunk:
        return ChatCompletionChunk(
            id=completion_id,
            model=model,
            choices=[ChunkChoice(delta=delta, finish_reason=finish_reason)],
        )

    yield _sse(_chunk(ChunkDelta(role=Role.ASSISTANT, content="")))
    finish_reason = "stop"
    try:
        async for item in stream:
            if isinstance(item, ToolInvocation):
                call = DeltaToolCall(
                    id=item.tool_call_id or new_call_id(),
                    function=DeltaToolCallFunction(
                        name=item.tool_name, arguments=item.arguments_json
                    ),
                )
                yield _sse(_chunk(ChunkDelta(tool_calls=[call])))
                finish_reason = "tool_calls"
                break
            if item:
                yield _sse(_chunk(ChunkDelta(content=item)))
    except ModelRelayError as exc:
        # Headers are already sent; report in-band
        logger.error("Streaming failed: %s", exc)
        yield _sse(json.dumps({"error": {"message": str(exc)}}))
        yield _sse("[DONE]")
        return
    yield _sse(_chunk(ChunkDelta(), finish_reason=finish_reason))
    yield _sse("[DONE]")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/health", summary="Health check")
async def health(engine: Engine = Depends(get_engine)) -> Dict[str, Any]:
    """Return a liveness payload with backend availability."""
    return {"status": "ok", "backends": describe_backends(engine.backends)}


@app.get("/v1/models", response_model=ModelList, summary="List models")
async def list_models(engine: Engine = Depends(get_engine)) -> ModelList:
    return ModelList(
        data=[ModelCard(id=model, owned_by=backend) for model, backend in engine.list_models()]
    )


@app.post("/v1/chat/completions", summary="Create a chat completion")
async def chat_completions(
    body: ChatCompletionRequest, engine: Engine = Depends(get_engine)
) -> Any:
    """OpenAI Chat Completions; streams Server-Sent Events when ``stream`` is set."""
    request = _to_request(body)

    if not request.stream:
        try:
            response: ChatCompletionResponse = await engine.complete_chat(request)
        except ModelRelayError as exc:
            logger.warning("Completion failed: %s", exc)
            raise _http_error(exc) from exc
        return response.model_dump(mode="json", exclude_none=True)

    try:
        stream = await engine.stream_chat(request)
    except ModelRelayError as exc:
        logger.warning("Streaming request rejected: %s", exc)
        raise _http_error(exc) from exc
    return StreamingResponse(
        _sse_stream(stream, request.model, new_completion_id()),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str | None = None, port: int | None = None, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server (defaults from settings).
    reload:
        If *True*, enable auto-reload (useful in development).
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn out of the import path of library users
    import uvicorn  # pylint: disable=import-outside-toplevel

    host = host or settings.API_HOST
    port = port or settings.API_PORT
    if log_level is None:
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting modelrelay API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    logger.debug("Backends: %s", describe_backends(get_engine().backends))

    colored_print(f"modelrelay API is running at http://{host}:{port}.", AnsiColors.GREEN)
    colored_print(f"Visit http://{host}:{port}/docs for API documentation.", AnsiColors.BLUE)
    uvicorn.run(
        "modelrelay.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# `python -m modelrelay.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(reload=True)
