"""
Conversation state and the chat session that drives it.

:class:`Conversation` is the full, never-pruned record of a chat.  Outbound message lists are
derived from it per request.  :class:`ChatSession` owns one conversation and runs each turn
on a background task; the caller only sees :class:`SessionEvent` values pulled from a queue.
"""

import asyncio
import logging
import uuid
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    TYPE_CHECKING,
    AsyncIterator,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
)

from modelrelay.agent.capabilities import CapabilitySelector
from modelrelay.agent.tool_executor import ToolExecutor
from modelrelay.core.schema import (
    ChatMessage,
    Role,
    ToolCall,
    ToolCallFunction,
    new_call_id,
)
from modelrelay.core.signals import ToolInvocation

if TYPE_CHECKING:
    from modelrelay.agent.engine import (
        Engine,
        TurnOptions,
        TurnResult,
    )

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Turns
# ---------------------------------------------------------------------------
@dataclass
class ChatTurn:
    role: Role
    content: str = ""
    thinking: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    images: List[bytes] = field(default_factory=list)
    # call id -> result text, for the calls this turn made
    tool_results: Dict[str, str] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_empty(self) -> bool:
        return not self.content and not self.tool_calls

    def to_message(self) -> ChatMessage:
        content: Optional[str] = self.content
        if self.role is Role.ASSISTANT and not self.content and self.tool_calls:
            content = None
        return ChatMessage(
            role=self.role,
            content=content,
            tool_calls=list(self.tool_calls) or None,
            tool_call_id=self.tool_call_id,
            images=list(self.images) or None,
        )


class Conversation:
    """Ordered list of turns; the engine appends, nothing here ever prunes."""

    def __init__(self, turns: Sequence[ChatTurn] = ()) -> None:
        self.turns: List[ChatTurn] = list(turns)

    def __len__(self) -> int:
        return len(self.turns)

    def append_user(self, text: str, images: Sequence[bytes] = ()) -> ChatTurn:
        turn = ChatTurn(role=Role.USER, content=text, images=list(images))
        self.turns.append(turn)
        return turn

    def open_assistant_turn(self) -> ChatTurn:
        """Return the trailing empty assistant turn, creating it if needed."""
        last = self.turns[-1] if self.turns else None
        if last is not None and last.role is Role.ASSISTANT and last.is_empty:
            return last
        turn = ChatTurn(role=Role.ASSISTANT)
        self.turns.append(turn)
        return turn

    def record_tool_call(self, turn: ChatTurn, invocation: ToolInvocation) -> ToolCall:
        """Attach *invocation* to *turn*, keeping the provider id when it has one."""
        call = ToolCall(
            id=invocation.tool_call_id or new_call_id(),
            function=ToolCallFunction(name=invocation.tool_name, arguments=invocation.arguments_json),
        )
        turn.tool_calls.append(call)
        return call

    def append_tool_result(self, call_id: str, result: str) -> ChatTurn:
        for turn in reversed(self.turns):
            if any(call.id == call_id for call in turn.tool_calls):
                turn.tool_results[call_id] = result
                break
        tool_turn = ChatTurn(role=Role.TOOL, content=result, tool_call_id=call_id)
        self.turns.append(tool_turn)
        return tool_turn

    def drop_trailing_placeholder(self) -> None:
        if self.turns and self.turns[-1].role is Role.ASSISTANT and self.turns[-1].is_empty:
            self.turns.pop()

    def outbound_messages(self, system_prompt: str = "") -> List[ChatMessage]:
        """
        Messages to send to a backend.

        The system prompt comes first.  Assistant turns with neither content nor tool calls
        are left out, which also drops the in-flight streaming placeholder.
        """
        messages: List[ChatMessage] = []
        if system_prompt:
            messages.append(ChatMessage(role=Role.SYSTEM, content=system_prompt))
        for turn in self.turns:
            if turn.role is Role.ASSISTANT and turn.is_empty:
                continue
            messages.append(turn.to_message())
        return messages

    def clear(self) -> None:
        self.turns.clear()


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------
@dataclass
class SessionEvent:
    """What the engine task reports to the consumer."""

    kind: str  # content | thinking | tool_call | tool_result | done | error
    text: str = ""
    tool_name: Optional[str] = None
    tool_call_id: Optional[str] = None
    result: Optional["TurnResult"] = None
    error: Optional[BaseException] = None

    @property
    def terminal(self) -> bool:
        return self.kind in ("done", "error")


class ChatSession:
    """
    A conversation plus the collaborators needed to run turns on it.

    Example
    -------
    >>> session = ChatSession(Engine(), model="default")
    >>> async for event in session.send("hello"):
    ...     if event.kind == "content":
    ...         print(event.text, end="")
    """

    def __init__(
        self,
        engine: "Engine",
        model: str = "default",
        system_prompt: str = "",
        executor: Optional[ToolExecutor] = None,
        selector: Optional[CapabilitySelector] = None,
        tool_overrides: Mapping[str, bool] | None = None,
    ) -> None:
        # Imported here: engine imports this module
        from modelrelay.agent.engine import (  # pylint: disable=import-outside-toplevel
            TurnOptions,
        )

        self.engine = engine
        self.conversation = Conversation()
        self.options: "TurnOptions" = TurnOptions(
            model=model,
            system_prompt=system_prompt,
            tool_overrides=dict(tool_overrides or {}),
        )
        self.executor = executor or ToolExecutor()
        self.selector = selector or CapabilitySelector(overrides=self.options.tool_overrides)
        self._cancel = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    async def send(self, text: str, images: Sequence[bytes] = ()) -> AsyncIterator[SessionEvent]:
        """Append a user message, run the turn in the background and yield its events."""
        if self.busy:
            raise RuntimeError("A turn is already in progress for this session")

        queue: "asyncio.Queue[SessionEvent]" = asyncio.Queue()
        self.conversation.append_user(text, images)
        self._cancel = asyncio.Event()
        self._task = asyncio.create_task(self._run(queue))
        try:
            while True:
                event = await queue.get()
                yield event
                if event.terminal:
                    break
        finally:
            if self.busy:
                # Consumer stopped reading: stop the turn but keep what was generated
                self._cancel.set()
                await self._task

    async def _run(self, queue: "asyncio.Queue[SessionEvent]") -> None:
        try:
            result = await self.engine.run_turn(
                self.conversation,
                self.options,
                executor=self.executor,
                selector=self.selector,
                on_event=queue.put_nowait,
                cancel_event=self._cancel,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Chat turn failed")
            queue.put_nowait(SessionEvent("error", text=str(exc), error=exc))
            return
        queue.put_nowait(SessionEvent("done", result=result))

    def cancel(self) -> None:
        """Ask the running turn to stop after the next delta; partial output is kept."""
        self._cancel.set()

    async def reset(self) -> None:
        """Stop a running turn, then forget the conversation and the capability selection."""
        if self.busy:
            self._cancel.set()
            await self._task
        self.conversation.clear()
        self.selector.reset()
