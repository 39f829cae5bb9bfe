"""Anthropic Claude remote backend."""

import base64
import json
import logging
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Sequence,
    Tuple,
)

from anthropic import (
    APIError,
    AsyncAnthropic,
)

from modelrelay.backends.base import (
    ToolCapableBackend,
    is_default_model,
    register_backend,
)
from modelrelay.backends.openai_backend import guess_image_mime
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


def to_anthropic_messages(
    messages: Sequence[ChatMessage],
) -> Tuple[str, List[Dict[str, Any]]]:
    """
    Split the history into Anthropic's ``system`` string and message list.

    Tool results become ``tool_result`` blocks on a user message; assistant tool calls become
    ``tool_use`` blocks.  Consecutive same-role messages are merged, as the API requires
    alternating roles.
    """
    system_parts: List[str] = []
    converted: List[Dict[str, Any]] = []

    def _append(role: str, blocks: List[Dict[str, Any]]) -> None:
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": blocks})

    for message in messages:
        if message.role is Role.SYSTEM:
            if message.content:
                system_parts.append(message.content)
        elif message.role is Role.TOOL:
            _append(
                "user",
                [
                    {
                        "type": "tool_result",
                        "tool_use_id": message.tool_call_id,
                        "content": message.text,
                    }
                ],
            )
        elif message.role is Role.ASSISTANT:
            blocks: List[Dict[str, Any]] = []
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            for call in message.tool_calls or []:
                try:
                    arguments = json.loads(call.function.arguments or "{}")
                except json.JSONDecodeError:
                    arguments = {}
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call.id,
                        "name": call.function.name,
                        "input": arguments,
                    }
                )
            if blocks:
                _append("assistant", blocks)
        else:
            blocks = []
            for image in message.images or []:
                blocks.append(
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": guess_image_mime(image),
                            "data": base64.b64encode(image).decode("ascii"),
                        },
                    }
                )
            blocks.append({"type": "text", "text": message.text})
            _append("user", blocks)

    return "\n\n".join(system_parts), converted


def _tool_choice(tool_choice: ToolChoice | None) -> Dict[str, Any] | None:
    if tool_choice is None or tool_choice.mode == "none":
        return None
    if tool_choice.mode == "function":
        return {"type": "tool", "name": tool_choice.function_name}
    return {"type": "auto"}


@register_backend("anthropic")
class AnthropicBackend(ToolCapableBackend):
    """Remote Claude backend; serves ``anthropic/<model>`` and, if configured, the default route."""

    id = "anthropic"
    prefix = "anthropic/"

    def __init__(self, client: AsyncAnthropic | None = None, *, api_key: str | None = None) -> None:
        self._api_key = api_key or settings.ANTHROPIC_API_KEY
        self._client = client

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(api_key=self._api_key)
        return self._client

    def is_available(self) -> bool:
        return bool(self._api_key) or self._client is not None

    def handles(self, requested_model: str | None) -> bool:
        if is_default_model(requested_model):
            return settings.DEFAULT_BACKEND == self.id
        return (requested_model or "").strip().lower().startswith(self.prefix)

    def list_models(self) -> List[str]:
        return [self.prefix + settings.ANTHROPIC_MODEL]

    def context_length(self, requested_model: str | None) -> int | None:
        return settings.REMOTE_CONTEXT_LENGTH

    def provider_model(self, requested_model: str | None) -> str:
        if is_default_model(requested_model):
            return settings.ANTHROPIC_MODEL
        trimmed = (requested_model or "").strip()
        if not trimmed.lower().startswith(self.prefix):
            raise UnknownModelError(requested_model, self.id)
        return trimmed[len(self.prefix) :]

    def _payload(
        self,
        messages: Sequence[ChatMessage],
        parameters: GenerationParameters,
        requested_model: str | None,
        tools: Sequence[ToolSpec] = (),
        tool_choice: ToolChoice | None = None,
    ) -> Dict[str, Any]:
        system, converted = to_anthropic_messages(messages)
        payload: Dict[str, Any] = {
            "model": self.provider_model(requested_model),
            "max_tokens": parameters.max_tokens,
            "messages": converted,
        }
        if system:
            payload["system"] = system
        if parameters.temperature is not None:
            payload["temperature"] = parameters.temperature
        if parameters.top_p is not None:
            payload["top_p"] = parameters.top_p
        if parameters.stop:
            payload["stop_sequences"] = list(parameters.stop)
        if tools and (tool_choice is None or tool_choice.mode != "none"):
            payload["tools"] = [tool.to_anthropic() for tool in tools]
            choice = _tool_choice(tool_choice)
            if choice:
                payload["tool_choice"] = choice
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
        payload = self._payload(messages, parameters, requested_model, tools, tool_choice)
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
        payload = self._payload(messages, parameters, requested_model, tools, tool_choice)
        try:
            response = await self.client.messages.create(**payload)
        except APIError as exc:
            logger.error("Anthropic request error: %s", exc)
            raise BackendError(f"Error calling Anthropic: {exc}") from exc
        return _invocation_or_text(response.content)

    async def _stream(self, payload: Dict[str, Any]) -> AsyncIterator[StreamItem]:
        logger.debug("Starting streamed Anthropic message via %s", payload["model"])
        try:
            async with self.client.messages.stream(**payload) as stream:
                async for event in stream:
                    if getattr(event, "type", None) == "text" and event.text:
                        yield event.text
                final = await stream.get_final_message()
        except APIError as exc:
            logger.error("Anthropic streaming error: %s", exc)
            raise BackendError(f"Error calling Anthropic: {exc}") from exc

        result = _invocation_or_text(final.content, text=False)
        if isinstance(result, ToolInvocation):
            yield result


def _invocation_or_text(blocks: Sequence[Any], *, text: bool = True) -> str | ToolInvocation:
    """First ``tool_use`` block as an invocation, otherwise the joined text blocks."""
    for block in blocks:
        if getattr(block, "type", None) == "tool_use":
            return ToolInvocation(
                tool_name=block.name,
                arguments_json=json.dumps(block.input or {}),
                tool_call_id=block.id,
            )
    if not text:
        return ""
    return "".join(block.text for block in blocks if getattr(block, "type", None) == "text")
