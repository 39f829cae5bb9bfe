"""Shared fakes for the test-suite."""

from __future__ import annotations

from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
    AsyncIterator,
    Callable,
    List,
    Optional,
    Sequence,
)

from modelrelay.backends.base import (
    GenerationBackend,
    ToolCapableBackend,
    is_default_model,
)
from modelrelay.core.schema import (
    ChatMessage,
    GenerationParameters,
    ToolChoice,
    ToolSpec,
)
from modelrelay.core.signals import (
    StreamItem,
    ToolInvocation,
)


@dataclass
class RecordedRequest:
    messages: List[ChatMessage]
    parameters: GenerationParameters
    model: Optional[str]
    tools: List[ToolSpec] = field(default_factory=list)

    @property
    def tool_names(self) -> List[str]:
        return [tool.name for tool in self.tools]

    @property
    def system_prompt(self) -> str:
        return self.messages[0].text if self.messages and self.messages[0].role.value == "system" else ""


class FakeBackend(GenerationBackend):
    """Text-only backend streaming a fixed list of deltas."""

    def __init__(
        self,
        backend_id: str = "fake",
        *,
        available: bool = True,
        default: bool = True,
        models: Sequence[str] = ("fake/model",),
        deltas: Sequence[str] = ("a", "b", "c"),
        context: int | None = None,
    ) -> None:
        self.id = backend_id
        self.available = available
        self.default = default
        self.models = list(models)
        self.deltas = list(deltas)
        self.context = context
        self.requests: List[RecordedRequest] = []

    def is_available(self) -> bool:
        return self.available

    def handles(self, requested_model: str | None) -> bool:
        if is_default_model(requested_model):
            return self.default
        return requested_model in self.models

    def list_models(self) -> List[str]:
        return list(self.models)

    def context_length(self, requested_model: str | None) -> int | None:
        return self.context

    async def stream_deltas(
        self,
        messages: Sequence[ChatMessage],
        parameters: GenerationParameters,
        requested_model: str | None,
    ) -> AsyncIterator[str]:
        self.requests.append(RecordedRequest(list(messages), parameters, requested_model))
        for delta in self.deltas:
            yield delta


class ScriptedToolBackend(ToolCapableBackend):
    """
    Tool-capable backend replaying one scripted response per call.

    Each script entry is the list of items that call streams; the last entry repeats once the
    script runs out.  *before_item* is invoked with every item just before it is yielded.
    """

    id = "scripted"

    def __init__(
        self,
        script: Sequence[Sequence[StreamItem]],
        *,
        before_item: Callable[[StreamItem], Any] | None = None,
    ) -> None:
        self.script = [list(entry) for entry in script]
        self.before_item = before_item
        self.requests: List[RecordedRequest] = []
        self.closed = 0

    def is_available(self) -> bool:
        return True

    def handles(self, requested_model: str | None) -> bool:
        return True

    def _next(self) -> List[StreamItem]:
        index = min(len(self.requests) - 1, len(self.script) - 1)
        return self.script[index]

    async def stream_deltas(
        self,
        messages: Sequence[ChatMessage],
        parameters: GenerationParameters,
        requested_model: str | None,
    ) -> AsyncIterator[str]:
        async for item in self.stream_with_tools(messages, parameters, [], None, requested_model):
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
        self.requests.append(RecordedRequest(list(messages), parameters, requested_model, list(tools)))
        try:
            for item in self._next():
                if self.before_item is not None:
                    self.before_item(item)
                yield item
        finally:
            self.closed += 1

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


async def collect(stream: AsyncIterator[StreamItem]) -> List[StreamItem]:
    return [item async for item in stream]
