"""Tests for the stateful tool loop (Engine.run_turn) and ChatSession."""

import asyncio
import json

import pytest

from modelrelay.agent.capabilities import (
    SELECT_CAPABILITIES,
    CapabilitySelector,
)
from modelrelay.agent.conversation import (
    ChatSession,
    Conversation,
)
from modelrelay.agent.engine import (
    Engine,
    TurnOptions,
    TurnOutcome,
)
from modelrelay.agent.tool_executor import ToolExecutor
from modelrelay.core.errors import (
    BoundedAttemptsExceeded,
    NoRouteError,
)
from modelrelay.core.schema import Role
from modelrelay.core.signals import ToolInvocation
from modelrelay.skills.library import SkillLibrary
from modelrelay.tools import ToolRegistry
from tests.helpers import (
    FakeBackend,
    ScriptedToolBackend,
)


def _weather(city: str) -> str:
    """Current weather for a city."""
    return f"Sunny in {city}"


def _failing() -> str:
    """Always fails."""
    raise RuntimeError("boom")


@pytest.fixture
def registry() -> ToolRegistry:
    reg = ToolRegistry()
    reg.register("get_weather", _weather)
    reg.register("explode", _failing)
    return reg


def _collaborators(registry: ToolRegistry, two_phase: bool = False):
    return {
        "executor": ToolExecutor(registry),
        "selector": CapabilitySelector(tools=registry, skills=SkillLibrary(), two_phase=two_phase),
    }


def _conversation(text: str = "What's the weather in SF?") -> Conversation:
    conversation = Conversation()
    conversation.append_user(text)
    return conversation


WEATHER_CALL = ToolInvocation(tool_name="get_weather", arguments_json='{"city": "SF"}')


@pytest.mark.asyncio
async def test_tool_call_is_executed_and_generation_continues(registry) -> None:
    """tool-call -> tool-result -> continued assistant text, in that order."""

    backend = ScriptedToolBackend([["Checking. ", WEATHER_CALL], ["It is sunny."]])
    conversation = _conversation()

    result = await Engine([backend]).run_turn(conversation, **_collaborators(registry))

    assert result.outcome is TurnOutcome.FINISHED
    assert result.attempts == 2
    roles = [turn.role for turn in conversation.turns]
    assert roles == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]

    assistant, tool, final = conversation.turns[1:]
    assert assistant.content == "Checking. "
    call = assistant.tool_calls[0]
    assert call.function.name == "get_weather"
    assert call.id.startswith("call_")
    assert tool.tool_call_id == call.id
    assert tool.content == "Sunny in SF"
    assert assistant.tool_results == {call.id: "Sunny in SF"}
    assert final.content == "It is sunny."

    # The second request carries the call and its answer
    second = backend.requests[1].messages
    assert second[-2].tool_calls[0].id == call.id
    assert second[-1].role is Role.TOOL


@pytest.mark.asyncio
async def test_provider_call_id_is_reused(registry) -> None:
    """A call id preserved by the backend becomes the ToolCall id."""

    invocation = ToolInvocation(
        tool_name="get_weather", arguments_json='{"city": "SF"}', tool_call_id="toolu_1"
    )
    backend = ScriptedToolBackend([[invocation], ["done"]])
    conversation = _conversation()

    await Engine([backend]).run_turn(conversation, **_collaborators(registry))

    assert conversation.turns[1].tool_calls[0].id == "toolu_1"
    assert conversation.turns[2].tool_call_id == "toolu_1"


@pytest.mark.asyncio
async def test_tool_failure_records_rejection_and_stops(registry) -> None:
    """A failing tool yields a [REJECTED] tool result and ends the loop."""

    backend = ScriptedToolBackend([[ToolInvocation(tool_name="explode")], ["never"]])
    conversation = _conversation()

    result = await Engine([backend]).run_turn(conversation, **_collaborators(registry))

    assert result.outcome is TurnOutcome.REJECTED
    assert len(backend.requests) == 1
    tool_turn = conversation.turns[-1]
    assert tool_turn.role is Role.TOOL
    assert tool_turn.content.startswith("[REJECTED]")
    assert "boom" in tool_turn.content
    # Still a valid, continuable history
    assert conversation.outbound_messages()[-1].role is Role.TOOL


@pytest.mark.asyncio
async def test_unknown_tool_is_rejected(registry) -> None:
    """Calling a tool that is not registered is a rejection, not a crash."""

    backend = ScriptedToolBackend([[ToolInvocation(tool_name="nope")]])
    conversation = _conversation()

    result = await Engine([backend]).run_turn(conversation, **_collaborators(registry))

    assert result.outcome is TurnOutcome.REJECTED
    assert "not registered" in conversation.turns[-1].content


@pytest.mark.asyncio
async def test_bounded_attempts(registry) -> None:
    """A model that never stops calling tools hits the iteration cap."""

    backend = ScriptedToolBackend([[WEATHER_CALL]])
    conversation = _conversation()

    with pytest.raises(BoundedAttemptsExceeded) as excinfo:
        await Engine([backend]).run_turn(
            conversation, TurnOptions(max_attempts=3), **_collaborators(registry)
        )

    assert excinfo.value.attempts == 3
    assert len(backend.requests) == 3
    # No empty placeholder left behind
    assert conversation.turns[-1].role is Role.TOOL


@pytest.mark.asyncio
async def test_cancellation_keeps_partial_output(registry) -> None:
    """Cancelling mid-stream flushes buffered text and closes the backend stream."""

    cancel = asyncio.Event()

    def _cancel_on_first(item) -> None:
        cancel.set()

    backend = ScriptedToolBackend([["partial ", "never seen"]], before_item=_cancel_on_first)
    conversation = _conversation()

    result = await Engine([backend]).run_turn(
        conversation, cancel_event=cancel, **_collaborators(registry)
    )

    assert result.outcome is TurnOutcome.CANCELLED
    assert conversation.turns[-1].role is Role.ASSISTANT
    assert conversation.turns[-1].content == "partial "
    assert backend.closed == 1


@pytest.mark.asyncio
async def test_cancel_before_start_leaves_no_placeholder(registry) -> None:
    """A turn cancelled before generating adds nothing to the conversation."""

    cancel = asyncio.Event()
    cancel.set()
    conversation = _conversation()

    result = await Engine([ScriptedToolBackend([["x"]])]).run_turn(
        conversation, cancel_event=cancel, **_collaborators(registry)
    )

    assert result.outcome is TurnOutcome.CANCELLED
    assert len(conversation) == 1


@pytest.mark.asyncio
async def test_run_turn_without_route(registry) -> None:
    """Routing failures surface as NoRouteError."""

    with pytest.raises(NoRouteError):
        await Engine([FakeBackend(models=["x"])]).run_turn(
            _conversation(), TurnOptions(model="missing/model"), **_collaborators(registry)
        )


@pytest.mark.asyncio
async def test_think_tags_are_routed_to_thinking(registry) -> None:
    """Thinking text lands on the turn's thinking channel, not its content."""

    backend = ScriptedToolBackend([["<thi", "nk>plan</think>", "Answer"]])
    conversation = _conversation()

    await Engine([backend]).run_turn(conversation, **_collaborators(registry))

    turn = conversation.turns[-1]
    assert turn.thinking == "plan"
    assert turn.content == "Answer"


@pytest.mark.asyncio
async def test_two_phase_selection_expands_toolset(registry) -> None:
    """Phase 1 offers only select_capabilities; phase 2 offers the selected tools too."""

    select = ToolInvocation(
        tool_name=SELECT_CAPABILITIES,
        arguments_json=json.dumps({"tools": ["get_weather"], "skills": []}),
    )
    backend = ScriptedToolBackend([[select], [WEATHER_CALL], ["Sunny."]])
    conversation = _conversation()
    collaborators = _collaborators(registry, two_phase=True)

    result = await Engine([backend]).run_turn(conversation, **collaborators)

    assert result.outcome is TurnOutcome.FINISHED
    first, second, third = backend.requests
    assert first.tool_names == [SELECT_CAPABILITIES]
    assert "# Available Capabilities" in first.system_prompt
    assert second.tool_names == ["get_weather", SELECT_CAPABILITIES]
    assert "# Available Capabilities" not in second.system_prompt
    assert third.tool_names == second.tool_names
    assert collaborators["selector"].selected_tool_names == ["get_weather"]
    assert "# Capabilities Loaded" in conversation.turns[2].content


@pytest.mark.asyncio
async def test_chat_session_streams_events(registry) -> None:
    """ChatSession relays the engine's events through its queue, ending with done."""

    backend = ScriptedToolBackend([[WEATHER_CALL], ["Sunny."]])
    session = ChatSession(
        Engine([backend]),
        executor=ToolExecutor(registry),
        selector=CapabilitySelector(tools=registry, skills=SkillLibrary(), two_phase=False),
    )

    events = [event async for event in session.send("weather?")]
    kinds = [event.kind for event in events]

    assert kinds[0] == "tool_call"
    assert kinds[1] == "tool_result"
    assert "content" in kinds
    assert kinds[-1] == "done"
    assert events[-1].result.outcome is TurnOutcome.FINISHED
    assert "".join(e.text for e in events if e.kind == "content") == "Sunny."
    assert not session.busy


@pytest.mark.asyncio
async def test_chat_session_reports_errors(registry) -> None:
    """Engine failures become a terminal error event."""

    session = ChatSession(Engine([]), executor=ToolExecutor(registry))

    events = [event async for event in session.send("hello")]

    assert [e.kind for e in events] == ["error"]
    assert isinstance(events[0].error, NoRouteError)


@pytest.mark.asyncio
async def test_chat_session_reset_clears_state(registry) -> None:
    """reset() empties the conversation and the capability selection."""

    selector = CapabilitySelector(tools=registry, skills=SkillLibrary(), two_phase=True)
    selector.select('{"tools": ["get_weather"], "skills": []}')
    session = ChatSession(Engine([ScriptedToolBackend([["hi"]])]), selector=selector)
    _ = [event async for event in session.send("hello")]

    await session.reset()

    assert len(session.conversation) == 0
    assert not selector.has_selected
    assert selector.selected_tool_names == []


@pytest.mark.asyncio
async def test_chat_session_reset_waits_for_running_turn(registry) -> None:
    """reset() during a turn stops it first, so nothing lands in the cleared conversation."""

    async def _slow_weather(city: str) -> str:
        """Weather after a short delay."""
        await asyncio.sleep(0.05)
        return f"Sunny in {city}"

    registry.register("slow_weather", _slow_weather)
    slow_call = ToolInvocation(tool_name="slow_weather", arguments_json='{"city": "SF"}')
    backend = ScriptedToolBackend([[slow_call], ["Sunny."]])
    session = ChatSession(
        Engine([backend]),
        executor=ToolExecutor(registry),
        selector=CapabilitySelector(tools=registry, skills=SkillLibrary(), two_phase=False),
    )

    async for event in session.send("weather?"):
        if event.kind == "tool_call":
            await session.reset()
            break

    assert not session.busy
    assert len(session.conversation) == 0
    assert len(backend.requests) == 1

    events = [event async for event in session.send("again")]

    assert events[-1].kind == "done"
    assert [turn.role for turn in session.conversation.turns] == [Role.USER, Role.ASSISTANT]
    assert session.conversation.turns[0].content == "again"


@pytest.mark.asyncio
async def test_text_only_backend_gets_no_capability_catalog(registry) -> None:
    """Two-phase selection is skipped for backends that cannot call tools."""

    backend = FakeBackend()
    conversation = _conversation()

    result = await Engine([backend]).run_turn(conversation, **_collaborators(registry, two_phase=True))

    assert result.outcome is TurnOutcome.FINISHED
    request = backend.requests[0]
    assert request.tools == []
    assert all("# Available Capabilities" not in (m.content or "") for m in request.messages)
    assert conversation.turns[-1].content == "abc"
