"""Tests for the stateless engine entry points (stream_chat / complete_chat)."""

import pytest

from modelrelay.agent.engine import Engine
from modelrelay.config import settings
from modelrelay.core.schema import (
    ChatMessage,
    GenerationRequest,
    Role,
    ToolChoice,
    ToolSpec,
)
from modelrelay.core.signals import ToolInvocation
from tests.helpers import (
    FakeBackend,
    ScriptedToolBackend,
    collect,
)

WEATHER = ToolSpec(
    name="get_weather",
    description="Current weather for a city",
    parameters={"type": "object", "properties": {"city": {"type": "string"}}},
)


def _request(**kwargs) -> GenerationRequest:
    kwargs.setdefault("messages", [ChatMessage(role=Role.USER, content="hi")])
    return GenerationRequest(**kwargs)


@pytest.mark.asyncio
async def test_stream_chat_yields_each_delta_once() -> None:
    """Deltas reach the caller in order, exactly once."""

    engine = Engine([FakeBackend(deltas=["a", "b", "c"])])

    items = await collect(await engine.stream_chat(_request(model="")))

    assert items == ["a", "b", "c"]
    assert "".join(items) == "abc"


@pytest.mark.asyncio
async def test_stream_chat_prepends_global_system_prompt(monkeypatch) -> None:
    """The configured system prompt is added only when the request has none."""

    monkeypatch.setattr(settings, "SYSTEM_PROMPT", "Be brief.")
    backend = FakeBackend()
    engine = Engine([backend])

    await collect(await engine.stream_chat(_request()))
    own_prompt = [
        ChatMessage(role=Role.SYSTEM, content="Custom"),
        ChatMessage(role=Role.USER, content="hi"),
    ]
    await collect(await engine.stream_chat(_request(messages=own_prompt)))

    first, second = backend.requests
    assert first.messages[0].role is Role.SYSTEM
    assert first.messages[0].content == "Be brief."
    assert [m.content for m in second.messages] == ["Custom", "hi"]


@pytest.mark.asyncio
async def test_stream_chat_ends_with_tool_invocation() -> None:
    """A tool decision is the last stream item, after any text."""

    invocation = ToolInvocation(tool_name="get_weather", arguments_json='{"city": "SF"}')
    engine = Engine([ScriptedToolBackend([["Let me check. ", invocation, "ignored"]])])

    items = await collect(await engine.stream_chat(_request(tools=[WEATHER])))

    assert items == ["Let me check. ", invocation]


@pytest.mark.asyncio
async def test_tool_choice_none_uses_plain_path() -> None:
    """tool_choice="none" keeps tools away from the backend."""

    backend = ScriptedToolBackend([["plain"]])
    engine = Engine([backend])

    await collect(
        await engine.stream_chat(_request(tools=[WEATHER], tool_choice=ToolChoice(mode="none")))
    )

    assert backend.requests[0].tools == []


@pytest.mark.asyncio
async def test_complete_chat_text() -> None:
    """Plain completions finish with "stop" and a chatcmpl id."""

    engine = Engine([FakeBackend(deltas=["Hel", "lo"])])

    response = await engine.complete_chat(_request(model="default"))

    assert response.id.startswith("chatcmpl-")
    assert len(response.id) == len("chatcmpl-") + 12
    assert response.choices[0].finish_reason == "stop"
    assert response.choices[0].message.content == "Hello"
    assert response.usage.total_tokens == (
        response.usage.prompt_tokens + response.usage.completion_tokens
    )


@pytest.mark.asyncio
async def test_complete_chat_tool_call_keeps_provider_id() -> None:
    """A backend-preserved call id is passed through unchanged."""

    invocation = ToolInvocation(
        tool_name="get_weather", arguments_json='{"city":"SF"}', tool_call_id="call_provider123"
    )
    engine = Engine([ScriptedToolBackend([[invocation]])])

    response = await engine.complete_chat(_request(tools=[WEATHER]))
    choice = response.choices[0]

    assert choice.finish_reason == "tool_calls"
    assert choice.message.content is None
    call = choice.message.tool_calls[0]
    assert call.function.name == "get_weather"
    assert call.function.arguments == '{"city":"SF"}'
    assert call.id == "call_provider123"


@pytest.mark.asyncio
async def test_complete_chat_tool_call_synthesizes_id() -> None:
    """Without a provider id the engine makes one of the form call_<24 hex>."""

    invocation = ToolInvocation(tool_name="get_weather", arguments_json='{"city":"SF"}')
    engine = Engine([ScriptedToolBackend([[invocation]])])

    response = await engine.complete_chat(_request(tools=[WEATHER]))
    call = response.choices[0].message.tool_calls[0]

    assert call.id.startswith("call_")
    assert len(call.id) == len("call_") + 24
    int(call.id[len("call_") :], 16)


def test_context_length_falls_back_to_settings() -> None:
    """Unknown context windows use CONTEXT_LENGTH; known ones come from the backend."""

    assert Engine([FakeBackend(context=None)]).context_length_for("") == settings.CONTEXT_LENGTH
    assert Engine([FakeBackend(context=32768)]).context_length_for("") == 32768


def test_generation_parameters_map_penalties() -> None:
    """Frequency penalty wins over presence penalty when both are positive."""

    params = _request(frequency_penalty=0.5, presence_penalty=0.2).generation_parameters()
    assert params.repetition_penalty == pytest.approx(1.5)

    params = _request(presence_penalty=0.2).generation_parameters()
    assert params.repetition_penalty == pytest.approx(1.2)

    params = _request().generation_parameters()
    assert params.repetition_penalty is None
    assert params.max_tokens == settings.DEFAULT_MAX_TOKENS
