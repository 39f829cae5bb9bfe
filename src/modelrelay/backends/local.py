"""
Local-weights backend.

Models live on disk under ``LOCAL_MODEL_PATH`` in Hugging Face layout
(``<org>/<name>/config.json`` or ``<name>/config.json``) and are served by a self-hosted
text-generation-inference compatible runtime reachable at ``LOCAL_RUNTIME_URL``.

Two pieces of process-wide state live here:

* :class:`ModelDirectory` - the disk scan, cached for ``MODEL_SCAN_TTL`` seconds.
* :class:`ModelGate` - a counting semaphore per model id, so two requests never decode through
  the same loaded model at once.
"""

import asyncio
import json
import logging
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
)

import httpx

from modelrelay.backends.base import (
    ToolCapableBackend,
    is_default_model,
    register_backend,
)
from modelrelay.backends.tool_detection import (
    detect_inline_tool_call,
    render_tool_instructions,
)
from modelrelay.config import settings
from modelrelay.core.errors import (
    BackendError,
    UnknownModelError,
)
from modelrelay.core.schema import (
    ChatMessage,
    GenerationParameters,
    Role,
    ToolChoice,
    ToolSpec,
)
from modelrelay.core.signals import (
    StreamItem,
    ToolInvocation,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Model discovery
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class LocalModel:
    """An installed model: its id (``org/name``) and where it lives."""

    model_id: str
    path: Path

    @property
    def name(self) -> str:
        return self.model_id.rsplit("/", 1)[-1]

    def context_length(self) -> Optional[int]:
        """``max_position_embeddings`` (or similar) from the model's config.json."""
        config_path = self.path / "config.json"
        try:
            config = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        for key in ("max_position_embeddings", "max_sequence_length", "n_ctx", "seq_length"):
            value = config.get(key)
            if isinstance(value, int) and value > 0:
                return value
        return None


class ModelDirectory:
    """
    Cached scan of the local model directory.

    The scan is re-run once the cached result is older than *ttl* seconds, or after
    :meth:`invalidate`.  When an expired lookup happens on a running event loop, the stale
    result is returned and the rescan runs on the default executor instead.  *clock* is
    injectable so tests can move time deterministically.
    """

    def __init__(
        self,
        root: str | Path | None,
        *,
        ttl: float = settings.MODEL_SCAN_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._root = Path(root).expanduser() if root else None
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: Optional[Dict[str, LocalModel]] = None
        self._scanned_at = 0.0
        self._refreshing = False
        self._generation = 0
        self.scan_count = 0

    def invalidate(self) -> None:
        """Drop the cached scan; the next lookup re-reads the disk."""
        with self._lock:
            self._cache = None
            self._generation += 1

    def models(self) -> List[LocalModel]:
        return list(self._snapshot().values())

    def names(self) -> List[str]:
        return sorted(self._snapshot())

    def find(self, name: str) -> Optional[LocalModel]:
        """Match on the full id or the bare model name, case-insensitively."""
        wanted = name.strip().lower()
        if not wanted:
            return None
        models = self._snapshot()
        for model_id, model in models.items():
            if model_id.lower() == wanted:
                return model
        for model in models.values():
            if model.name.lower() == wanted:
                return model
        return None

    def _snapshot(self) -> Dict[str, LocalModel]:
        with self._lock:
            now = self._clock()
            if self._cache is not None and now - self._scanned_at < self._ttl:
                return self._cache
            if self._cache is not None:
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    loop = None
                if loop is not None:
                    # Inside the event loop: serve the stale result and rescan on a worker thread
                    if not self._refreshing:
                        self._refreshing = True
                        loop.run_in_executor(None, self._refresh, self._generation)
                    return self._cache
            self._cache = self._scan()
            self._scanned_at = now
            self.scan_count += 1
            return self._cache

    def _refresh(self, generation: int) -> None:
        try:
            found = self._scan()
        except OSError as exc:
            logger.warning("Background scan of %s failed: %s", self._root, exc)
            found = None
        with self._lock:
            self._refreshing = False
            # An invalidate() during the scan wins over this result
            if found is not None and generation == self._generation:
                self._cache = found
                self._scanned_at = self._clock()
                self.scan_count += 1

    def _scan(self) -> Dict[str, LocalModel]:
        found: Dict[str, LocalModel] = {}
        if self._root is None or not self._root.is_dir():
            return found
        for entry in sorted(self._root.iterdir()):
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            if (entry / "config.json").is_file():
                found[entry.name] = LocalModel(entry.name, entry)
                continue
            for child in sorted(entry.iterdir()):
                if child.is_dir() and (child / "config.json").is_file():
                    model_id = f"{entry.name}/{child.name}"
                    found[model_id] = LocalModel(model_id, child)
        logger.debug("Scanned %s: %d local model(s)", self._root, len(found))
        return found


# ---------------------------------------------------------------------------
# Concurrency gate
# ---------------------------------------------------------------------------
class ModelGate:
    """Per-model counting semaphore around a non-reentrant loaded-model resource."""

    def __init__(self, limit: int = settings.MODEL_CONCURRENCY) -> None:
        self._limit = max(1, limit)
        self._lock = threading.Lock()
        self._semaphores: Dict[str, asyncio.Semaphore] = {}

    def semaphore(self, model_id: str) -> asyncio.Semaphore:
        with self._lock:
            sem = self._semaphores.get(model_id)
            if sem is None:
                sem = asyncio.Semaphore(self._limit)
                self._semaphores[model_id] = sem
            return sem

    @asynccontextmanager
    async def hold(self, model_id: str) -> AsyncIterator[None]:
        sem = self.semaphore(model_id)
        async with sem:
            yield


_shared_directory: Optional[ModelDirectory] = None
_shared_gate = ModelGate()


def shared_model_directory() -> ModelDirectory:
    """Process-wide directory over ``settings.LOCAL_MODEL_PATH``."""
    global _shared_directory  # pylint: disable=global-statement
    if _shared_directory is None:
        _shared_directory = ModelDirectory(settings.LOCAL_MODEL_PATH)
    return _shared_directory


# ---------------------------------------------------------------------------
# Prompt rendering
# ---------------------------------------------------------------------------
def render_prompt(messages: Sequence[ChatMessage], tools: Sequence[ToolSpec] = ()) -> str:
    """Flatten the history into a plain chat transcript for a text-only runtime."""
    lines: List[str] = []
    if tools:
        lines.append(
            render_tool_instructions({tool.name: json.dumps(tool.parameters) for tool in tools})
        )
        lines.append("")
    for message in messages:
        if message.role is Role.TOOL:
            lines.append(f"Tool ({message.tool_call_id}): {message.text}")
        elif message.role is Role.ASSISTANT and message.tool_calls:
            for call in message.tool_calls:
                payload = {"name": call.function.name, "arguments": call.function.arguments}
                lines.append(f"Assistant: {json.dumps(payload)}")
            if message.content:
                lines.append(f"Assistant: {message.content}")
        else:
            lines.append(f"{message.role.value.capitalize()}: {message.text}")
    lines.append("Assistant:")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------
@register_backend("local")
class LocalBackend(ToolCapableBackend):
    """Installed local models served through a TGI-compatible runtime via httpx."""

    id = "local"

    def __init__(
        self,
        directory: ModelDirectory | None = None,
        *,
        gate: ModelGate | None = None,
        runtime_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._directory = directory or shared_model_directory()
        self._gate = gate or _shared_gate
        self._runtime_url = (runtime_url or settings.LOCAL_RUNTIME_URL).rstrip("/")
        self._client = client

    # -- availability / routing -------------------------------------------
    def is_available(self) -> bool:
        return bool(self._directory.names())

    def handles(self, requested_model: str | None) -> bool:
        if is_default_model(requested_model):
            return settings.DEFAULT_BACKEND == self.id
        return self._directory.find(requested_model or "") is not None

    def list_models(self) -> List[str]:
        return self._directory.names()

    def context_length(self, requested_model: str | None) -> int | None:
        try:
            return self._select(requested_model).context_length()
        except UnknownModelError:
            return None

    # -- generation ---------------------------------------------------------
    async def stream_deltas(
        self,
        messages: Sequence[ChatMessage],
        parameters: GenerationParameters,
        requested_model: str | None,
    ) -> AsyncIterator[str]:
        async for item in self._generate(messages, parameters, requested_model, tools=()):
            if isinstance(item, str):
                yield item

    async def stream_with_tools(
        self,
        messages: Sequence[ChatMessage],
        parameters: GenerationParameters,
        tools: Sequence[ToolSpec],
        tool_choice: ToolChoice | None,
        requested_model: str | None,
    ) -> AsyncIterator[StreamItem]:
        offered = _filter_tools(tools, tool_choice)
        async for item in self._generate(messages, parameters, requested_model, tools=offered):
            yield item

    async def respond_with_tools(
        self,
        messages: Sequence[ChatMessage],
        parameters: GenerationParameters,
        tools: Sequence[ToolSpec],
        tool_choice: ToolChoice | None,
        requested_model: str | None,
    ) -> str | ToolInvocation:
        parts: List[str] = []
        async for item in self.stream_with_tools(
            messages, parameters, tools, tool_choice, requested_model
        ):
            if isinstance(item, ToolInvocation):
                return item
            parts.append(item)
        return "".join(parts)

    async def _generate(
        self,
        messages: Sequence[ChatMessage],
        parameters: GenerationParameters,
        requested_model: str | None,
        *,
        tools: Sequence[ToolSpec],
    ) -> AsyncIterator[StreamItem]:
        """Stream tokens, cutting at stop sequences and at the first inline tool call."""
        model = self._select(requested_model)
        payload = {
            "inputs": render_prompt(messages, tools),
            "parameters": _runtime_parameters(parameters),
        }
        tool_names = [tool.name for tool in tools]
        accumulated = ""
        emitted = 0

        async with self._gate.hold(model.model_id):
            logger.debug("Local generation on '%s' (%d message(s))", model.model_id, len(messages))
            tokens = self._stream_tokens(model, payload)
            try:
                async for token in tokens:
                    accumulated += token

                    if tool_names:
                        found = detect_inline_tool_call(accumulated, tool_names)
                        if found:
                            yield ToolInvocation(tool_name=found[0], arguments_json=found[1])
                            return

                    stop_at = _first_stop(accumulated, parameters.stop)
                    if stop_at is not None:
                        if stop_at > emitted:
                            yield accumulated[emitted:stop_at]
                        return

                    # With tools offered, text from the first "{" may be a call in progress
                    held = accumulated.find("{", emitted) if tool_names else -1
                    upto = held if held >= 0 else len(accumulated)
                    # A stop sequence may be split across tokens
                    upto = min(upto, len(accumulated) - _stop_prefix_length(accumulated, parameters.stop))
                    if upto > emitted:
                        yield accumulated[emitted:upto]
                        emitted = upto
            finally:
                await tokens.aclose()

            if len(accumulated) > emitted:
                yield accumulated[emitted:]

    async def _stream_tokens(self, model: "LocalModel", payload: Dict[str, Any]) -> AsyncIterator[str]:
        """Read the runtime's server-sent events and yield non-special token texts."""
        client = self._client or httpx.AsyncClient(timeout=settings.LOCAL_REQUEST_TIMEOUT)
        try:
            async with client.stream(
                "POST",
                f"{self._runtime_url}/generate_stream",
                json=payload,
                headers={"X-Model-Id": model.model_id},
            ) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:") :].strip()
                    if not data or data == "[DONE]":
                        continue
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        logger.warning("Skipping malformed runtime event: %s", data[:200])
                        continue
                    token = event.get("token") or {}
                    if token.get("special"):
                        continue
                    text = token.get("text")
                    if text:
                        yield text
        except httpx.HTTPError as exc:
            logger.error("Local runtime request error: %s", exc)
            raise BackendError(f"Local runtime error for '{model.model_id}': {exc}") from exc
        finally:
            if self._client is None:
                await client.aclose()

    def _select(self, requested_model: str | None) -> LocalModel:
        if is_default_model(requested_model):
            models = self._directory.models()
            if models:
                return models[0]
            raise UnknownModelError(requested_model, self.id)
        model = self._directory.find(requested_model or "")
        if model is None:
            raise UnknownModelError(requested_model, self.id)
        return model


def _runtime_parameters(parameters: GenerationParameters) -> Dict[str, Any]:
    params: Dict[str, Any] = {"max_new_tokens": parameters.max_tokens, "details": False}
    if parameters.temperature is not None and parameters.temperature > 0:
        params["temperature"] = parameters.temperature
        params["do_sample"] = True
    if parameters.top_p is not None and 0 < parameters.top_p < 1:
        params["top_p"] = parameters.top_p
    if parameters.repetition_penalty is not None:
        params["repetition_penalty"] = parameters.repetition_penalty
    if parameters.stop:
        params["stop"] = list(parameters.stop)
    return params


def _first_stop(text: str, stops: Sequence[str]) -> Optional[int]:
    positions = [text.find(stop) for stop in stops if stop and stop in text]
    return min(positions) if positions else None


def _stop_prefix_length(text: str, stops: Sequence[str]) -> int:
    """Length of the longest suffix of *text* that is a proper prefix of some stop sequence."""
    longest = 0
    for stop in stops:
        for size in range(min(len(stop) - 1, len(text)), longest, -1):
            if text.endswith(stop[:size]):
                longest = size
                break
    return longest


def _filter_tools(tools: Sequence[ToolSpec], tool_choice: ToolChoice | None) -> List[ToolSpec]:
    if tool_choice is None or tool_choice.mode == "auto":
        return list(tools)
    if tool_choice.mode == "none":
        return []
    return [tool for tool in tools if tool.name == tool_choice.function_name]
