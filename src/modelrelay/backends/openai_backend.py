"""OpenAI (and OpenAI-compatible) remote backend."""

import base64
import logging
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Sequence,
)

from openai import (
    APIError,
    AsyncOpenAI,
)

from modelrelay.backends.base import (
    ToolCapableBackend,
    is_default_model,
    register_backend,
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


def guess_image_mime(data: bytes) -> str:
    """Sniff the image type from magic bytes (PNG is the fallback)."""
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"GIF8"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


def to_openai_messages(messages: Sequence[ChatMessage]) -> List[Dict[str, Any]]:
    """Convert engine messages into the Chat Completions wire shape."""
    converted: List[Dict[str, Any]] = []
    for message in messages:
        item: Dict[str, Any] = {"role": message.role.value}
        if message.images:
            parts: List[Dict[str, Any]] = []
            if message.content:
                parts.append({"type": "text", "text": message.content})
            for image in message.images:
                encoded = base64.b64encode(image).decode("ascii")
                url = f"data:{guess_image_mime(image)};base64,{encoded}"
                parts.append({"type": "image_url", "image_url": {"url": url}})
            item["content"] = parts
        else:
            item["content"] = message.content
        if message.tool_calls:
            item["tool_calls"] = [call.model_dump() for call in message.tool_calls]
        if message.role is Role.TOOL:
            item["tool_call_id"] = message.tool_call_id
        converted.append(item)
    return converted


class _ToolCallAccumulator:
    """Collects streamed tool-call fragments by index (id and name arrive first)."""

    def __init__(self) -> None:
        self._calls: Dict[int, Dict[str, str]] = {}

    def add(self, fragment: Any) -> None:
        index = getattr(fragment, "index", 0) or 0
        call = self._calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
        if getattr(fragment, "id", None):
            call["id"] = fragment.id
        function = getattr(fragment, "function", None)
        if function is not None:
            if getattr(function, "name", None):
                call["name"] += function.name
            if getattr(function, "arguments", None):
                call["arguments"] += function.arguments

    def first(self) -> ToolInvocation | None:
        # One tool call per turn; later parallel calls are dropped
        for index in sorted(self._calls):
            call = self._calls[index]
            if call["name"]:
                if len(self._calls) > 1:
                    logger.warning(
                        "Model requested %d parallel tool calls; only '%s' is executed",
                        len(self._calls),
                        call["name"],
                    )
                return ToolInvocation(
                    tool_name=call["name"],
                    arguments_json=call["arguments"] or "{}",
                    tool_call_id=call["id"] or None,
                )
        return None


@register_backend("openai")
class OpenAIBackend(ToolCapableBackend):
    """Remote OpenAI backend; serves ``openai/<model>`` and, if configured, the default route."""

    id = "openai"
    prefix = "openai/"

    def __init__(self, client: AsyncOpenAI | None = None, *, api_key: str | None = None) -> None:
        self._api_key = api_key or settings.OPENAI_API_KEY
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self._api_key, base_url=settings.OPENAI_BASE_URL)
        return self._client

    # -- availability / routing -------------------------------------------
    def is_available(self) -> bool:
        return bool(self._api_key) or self._client is not None

    def handles(self, requested_model: str | None) -> bool:
        if is_default_model(requested_model):
            return settings.DEFAULT_BACKEND == self.id
        return (requested_model or "").strip().lower().startswith(self.prefix)

    def list_models(self) -> List[str]:
        return [self.prefix + settings.OPENAI_MODEL]

    def context_length(self, requested_model: str | None) -> int | None:
        return settings.REMOTE_CONTEXT_LENGTH

    def provider_model(self, requested_model: str | None) -> str:
        """Strip the routing prefix; the default route maps to ``OPENAI_MODEL``."""
        if is_default_model(requested_model):
            return settings.OPENAI_MODEL
        trimmed = (requested_model or "").strip()
        if not trimmed.lower().startswith(self.prefix):
            raise UnknownModelError(requested_model, self.id)
        return trimmed[len(self.prefix) :]

    # -- generation ---------------------------------------------------------
    def _payload(
        self,
        messages: Sequence[ChatMessage],
        parameters: GenerationParameters,
        requested_model: str | None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.provider_model(requested_model),
            "messages": to_openai_messages(messages),
            "max_tokens": parameters.max_tokens,
        }
        if parameters.temperature is not None:
            payload["temperature"] = parameters.temperature
        if parameters.top_p is not None:
            payload["top_p"] = parameters.top_p
        if parameters.stop:
            payload["stop"] = list(parameters.stop)
        return payload

    async def stream_deltas(
        self,
        messages: Sequence[ChatMessage],
        parameters: GenerationParameters,
        requested_model: str | None,
    ) -> AsyncIterator[str]:
        async for item in self._stream(self._payload(messages, parameters, requested_model)):
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
        payload = self._payload(messages, parameters, requested_model)
        payload["tools"] = [tool.to_openai() for tool in tools]
        if tool_choice is not None:
            payload["tool_choice"] = tool_choice.to_openai()
        async for item in self._stream(payload):
            yield item

    async def respond_with_tools(
        self,
        messages: Sequence[ChatMessage],
        parameters: GenerationParameters,
        tools: Sequence[ToolSpec],
        tool_choice: ToolChoice | None,
        requested_model: str | None,
    ) -> str | ToolInvocation:
        payload = self._payload(messages, parameters, requested_model)
        payload["tools"] = [tool.to_openai() for tool in tools]
        if tool_choice is not None:
            payload["tool_choice"] = tool_choice.to_openai()
        try:
            resp = await self.client.chat.completions.create(**payload)
        except APIError as exc:
            logger.error("OpenAI request error: %s", exc)
            raise BackendError(f"Error calling OpenAI: {exc}") from exc

        message = resp.choices[0].message
        if message.tool_calls:
            call = message.tool_calls[0]
            return ToolInvocation(
                tool_name=call.function.name,
                arguments_json=call.function.arguments or "{}",
                tool_call_id=call.id,
            )
        return message.content or ""

    async def _stream(self, payload: Dict[str, Any]) -> AsyncIterator[StreamItem]:
        logger.debug(
            "Starting streamed OpenAI completion via %s with %d message(s)",
            payload["model"],
            len(payload["messages"]),
        )
        tool_calls = _ToolCallAccumulator()
        try:
            stream = await self.client.chat.completions.create(stream=True, **payload)
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is None:
                    continue
                if delta.content:
                    yield delta.content
                for fragment in delta.tool_calls or []:
                    tool_calls.add(fragment)
        except APIError as exc:
            logger.error("OpenAI streaming error: %s", exc)
            raise BackendError(f"Error calling OpenAI: {exc}") from exc

        invocation = tool_calls.first()
        if invocation is not None:
            yield invocation
