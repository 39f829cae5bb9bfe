"""
Orchestration engine.

``Engine`` is the only entry point transports and the CLI use:

* :meth:`Engine.stream_chat` / :meth:`Engine.complete_chat` for stateless, OpenAI-style requests;
* :meth:`Engine.run_turn` for the stateful tool loop over a :class:`Conversation`.

The engine never talks to a provider directly; it routes to a
:class:`~modelrelay.backends.base.GenerationBackend` and shapes each outbound request with the
capability selector and the context budgeter.
"""

import asyncio
import logging
import time
from dataclasses import (
    dataclass,
    field,
)
from enum import Enum
from typing import (
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
)

from modelrelay.agent.capabilities import (
    SELECT_CAPABILITIES,
    CapabilitySelector,
)
from modelrelay.agent.context_budget import (
    ContextBudgeter,
    estimate_tokens,
)
from modelrelay.agent.conversation import (
    ChatTurn,
    Conversation,
    SessionEvent,
)
from modelrelay.agent.streaming import (
    StreamFlushController,
    resolve_middleware,
)
from modelrelay.agent.tool_executor import (
    ToolExecutionError,
    ToolExecutor,
)
from modelrelay.backends.base import (
    GenerationBackend,
    load_backends,
    supports_tools,
)
from modelrelay.backends.router import (
    Route,
    resolve,
)
from modelrelay.config import settings
from modelrelay.core.errors import (
    BoundedAttemptsExceeded,
    NoRouteError,
)
from modelrelay.core.schema import (
    ChatChoice,
    ChatCompletionResponse,
    ChatMessage,
    GenerationParameters,
    GenerationRequest,
    Role,
    ToolCall,
    ToolCallFunction,
    ToolChoice,
    ToolSpec,
    Usage,
    new_call_id,
)
from modelrelay.core.signals import (
    StreamItem,
    ToolInvocation,
)

logger = logging.getLogger(__name__)

REJECTED_PREFIX = "[REJECTED]"

EventSink = Callable[[SessionEvent], None]


@dataclass
class TurnOptions:
    """Per-session knobs for :meth:`Engine.run_turn`."""

    model: str = "default"
    system_prompt: str = ""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stop: List[str] = field(default_factory=list)
    tool_overrides: Dict[str, bool] = field(default_factory=dict)
    max_attempts: int = field(default_factory=lambda: settings.MAX_TOOL_ATTEMPTS)

    def generation_parameters(self) -> GenerationParameters:
        return GenerationParameters(
            temperature=self.temperature,
            max_tokens=self.max_tokens or settings.DEFAULT_MAX_TOKENS,
            top_p=self.top_p,
            stop=list(self.stop),
        )


class TurnOutcome(str, Enum):
    FINISHED = "finished"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


@dataclass
class TurnResult:
    outcome: TurnOutcome
    attempts: int
    tool_calls: List[ToolCall] = field(default_factory=list)


class Engine:
    """
    Routes requests to backends and runs the tool loop.

    Parameters
    ----------
    backends:
        Candidates in priority order.  Defaults to :func:`load_backends`.
    source:
        Label of the caller (``"api"``, ``"cli"``...) used in inference logs.
    """

    def __init__(
        self,
        backends: Sequence[GenerationBackend] | None = None,
        *,
        source: str = "api",
    ) -> None:
        self.backends: List[GenerationBackend] = (
            list(backends) if backends is not None else load_backends()
        )
        self.source = source

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------
    def route(self, requested_model: str | None) -> Route:
        """
        Raises
        ------
        NoRouteError
            No available backend handles *requested_model*.
        """
        route = resolve(requested_model, self.backends)
        if route is None:
            raise NoRouteError(requested_model)
        logger.debug("Routed '%s' to backend '%s'", requested_model, route.backend.id)
        return route

    def context_length_for(self, requested_model: str | None) -> int:
        """Context window of the model: backend value if known, else ``CONTEXT_LENGTH``."""
        route = resolve(requested_model, self.backends)
        if route is not None:
            length = route.backend.context_length(route.effective_model)
            if length:
                return length
        return settings.CONTEXT_LENGTH

    def list_models(self) -> List[Tuple[str, str]]:
        """``(model id, backend id)`` of every available backend's models."""
        models: List[Tuple[str, str]] = []
        for backend in self.backends:
            if backend.is_available():
                models.extend((model, backend.id) for model in backend.list_models())
        return models

    # ------------------------------------------------------------------
    # Stateless requests
    # ------------------------------------------------------------------
    @staticmethod
    def _with_system_prompt(messages: Sequence[ChatMessage]) -> List[ChatMessage]:
        prompt = settings.SYSTEM_PROMPT.strip()
        if not prompt or any(m.role is Role.SYSTEM for m in messages):
            return list(messages)
        return [ChatMessage(role=Role.SYSTEM, content=prompt), *messages]

    def _open_stream(
        self,
        route: Route,
        messages: Sequence[ChatMessage],
        parameters: GenerationParameters,
        tools: Sequence[ToolSpec],
        tool_choice: ToolChoice | None,
    ) -> AsyncIterator[StreamItem]:
        backend = route.backend
        if tools and supports_tools(backend):
            return backend.stream_with_tools(
                messages, parameters, tools, tool_choice, route.effective_model
            )
        return backend.stream_deltas(messages, parameters, route.effective_model)

    async def stream_chat(self, request: GenerationRequest) -> AsyncIterator[StreamItem]:
        """
        Route *request* and return its stream of text deltas.

        Routing happens before this coroutine returns, so :class:`NoRouteError` is raised by
        the ``await`` rather than during iteration.  When the model calls a tool the stream
        ends with a :class:`ToolInvocation`.
        """
        route = self.route(request.model)
        messages = self._with_system_prompt(request.messages)
        tools = request.tools if request.wants_tools else []
        stream = self._open_stream(
            route, messages, request.generation_parameters(), tools or [], request.tool_choice
        )
        return self._logged(stream, route, messages)

    async def _logged(
        self,
        stream: AsyncIterator[StreamItem],
        route: Route,
        messages: Sequence[ChatMessage],
    ) -> AsyncIterator[StreamItem]:
        started = time.perf_counter()
        deltas = 0
        output_chars = 0
        finish_reason = "stop"
        try:
            async for item in stream:
                if isinstance(item, ToolInvocation):
                    finish_reason = "tool_calls"
                    yield item
                    break
                deltas += 1
                output_chars += len(item)
                yield item
        except Exception:
            finish_reason = "error"
            raise
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
            logger.info(
                "Inference source=%s backend=%s model=%s prompt_tokens~%d output_tokens~%d "
                "deltas=%d duration=%.2fs finish=%s",
                self.source,
                route.backend.id,
                route.effective_model,
                sum(estimate_tokens(m.content) for m in messages),
                max(1, output_chars // 4) if output_chars else 0,
                deltas,
                time.perf_counter() - started,
                finish_reason,
            )

    async def complete_chat(self, request: GenerationRequest) -> ChatCompletionResponse:
        """Non-streaming variant; a tool call yields ``finish_reason="tool_calls"``."""
        route = self.route(request.model)
        backend = route.backend
        messages = self._with_system_prompt(request.messages)
        parameters = request.generation_parameters()

        if request.wants_tools and supports_tools(backend):
            result = await backend.respond_with_tools(
                messages, parameters, request.tools or [], request.tool_choice, route.effective_model
            )
        else:
            result = await backend.generate_one_shot(messages, parameters, route.effective_model)

        if isinstance(result, ToolInvocation):
            call = ToolCall(
                id=result.tool_call_id or new_call_id(),
                function=ToolCallFunction(name=result.tool_name, arguments=result.arguments_json),
            )
            message = ChatMessage(role=Role.ASSISTANT, content=None, tool_calls=[call])
            finish_reason = "tool_calls"
            completion_text = call.function.name + call.function.arguments
        else:
            message = ChatMessage(role=Role.ASSISTANT, content=result)
            finish_reason = "stop"
            completion_text = result

        prompt_tokens = sum(estimate_tokens(m.content) for m in messages)
        completion_tokens = estimate_tokens(completion_text)
        logger.info(
            "Completion source=%s backend=%s model=%s finish=%s",
            self.source,
            backend.id,
            route.effective_model,
            finish_reason,
        )
        return ChatCompletionResponse(
            model=request.model or route.effective_model,
            choices=[ChatChoice(index=0, message=message, finish_reason=finish_reason)],
            usage=Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
        )

    # ------------------------------------------------------------------
    # Tool loop
    # ------------------------------------------------------------------
    async def run_turn(
        self,
        conversation: Conversation,
        options: TurnOptions | None = None,
        *,
        executor: ToolExecutor | None = None,
        selector: CapabilitySelector | None = None,
        on_event: EventSink | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnResult:
        """
        Generate the assistant's answer to the conversation, executing tool calls as they come.

        Each iteration builds the outbound messages from *conversation*, lets *selector* pick
        the system prompt and toolset, prunes to the context budget and streams one response
        into a fresh assistant turn.  A tool call is executed and the loop goes around again.

        Returns
        -------
        TurnResult
            ``FINISHED`` when the model answered, ``REJECTED`` when a tool failed (the
            rejection is recorded as the tool result) or ``CANCELLED``.

        Raises
        ------
        NoRouteError
            Nothing can serve ``options.model``.
        BoundedAttemptsExceeded
            The model kept calling tools for ``options.max_attempts`` generations.
        """
        options = options or TurnOptions()
        executor = executor or ToolExecutor()
        selector = selector or CapabilitySelector(overrides=options.tool_overrides)
        emit: EventSink = on_event or (lambda event: None)

        route = self.route(options.model)
        budgeter = ContextBudgeter(
            route.backend.context_length(route.effective_model) or settings.CONTEXT_LENGTH,
            options.max_tokens,
        )
        parameters = options.generation_parameters()
        base_prompt = options.system_prompt or settings.SYSTEM_PROMPT
        executed: List[ToolCall] = []
        attempts = 0

        turn = conversation.open_assistant_turn()
        try:
            while True:
                if attempts >= options.max_attempts:
                    logger.error("Tool loop exceeded %d attempts", options.max_attempts)
                    raise BoundedAttemptsExceeded(attempts)
                attempts += 1

                tool_capable = supports_tools(route.backend)
                # Text-only backends get neither tools nor the capability catalog
                prompt = selector.system_prompt(base_prompt) if tool_capable else base_prompt
                messages, report = budgeter.prune(conversation.outbound_messages(prompt))
                tools = selector.toolset() if tool_capable else []
                logger.debug(
                    "Attempt %d: %d message(s), ~%d tokens, %d tool(s)",
                    attempts,
                    len(messages),
                    report.tokens_after,
                    len(tools),
                )

                invocation, cancelled = await self._stream_into(
                    route, messages, parameters, tools, turn, emit, cancel_event
                )
                if cancelled:
                    logger.info("Turn cancelled after %d attempt(s)", attempts)
                    return TurnResult(TurnOutcome.CANCELLED, attempts, executed)
                if invocation is None:
                    return TurnResult(TurnOutcome.FINISHED, attempts, executed)

                call = conversation.record_tool_call(turn, invocation)
                executed.append(call)
                emit(
                    SessionEvent(
                        "tool_call",
                        text=call.function.arguments,
                        tool_name=call.function.name,
                        tool_call_id=call.id,
                    )
                )

                if call.function.name == SELECT_CAPABILITIES:
                    result = selector.select(call.function.arguments)
                else:
                    try:
                        result = await executor.execute(
                            call.function.name, call.function.arguments, options.tool_overrides
                        )
                    except ToolExecutionError as exc:
                        logger.warning("Tool '%s' rejected: %s", call.function.name, exc)
                        rejection = f"{REJECTED_PREFIX} {exc}"
                        conversation.append_tool_result(call.id, rejection)
                        emit(self._result_event(call, rejection))
                        return TurnResult(TurnOutcome.REJECTED, attempts, executed)

                conversation.append_tool_result(call.id, result)
                emit(self._result_event(call, result))
                turn = conversation.open_assistant_turn()
        finally:
            conversation.drop_trailing_placeholder()

    @staticmethod
    def _result_event(call: ToolCall, result: str) -> SessionEvent:
        return SessionEvent(
            "tool_result", text=result, tool_name=call.function.name, tool_call_id=call.id
        )

    async def _stream_into(
        self,
        route: Route,
        messages: Sequence[ChatMessage],
        parameters: GenerationParameters,
        tools: Sequence[ToolSpec],
        turn: ChatTurn,
        emit: EventSink,
        cancel_event: asyncio.Event | None,
    ) -> Tuple[Optional[ToolInvocation], bool]:
        """Stream one response into *turn*; returns ``(invocation, cancelled)``."""

        def _content(text: str) -> None:
            turn.content += text
            emit(SessionEvent("content", text=text))

        def _thinking(text: str) -> None:
            turn.thinking += text
            emit(SessionEvent("thinking", text=text))

        controller = StreamFlushController(
            _content, _thinking, middleware=resolve_middleware(route.effective_model)
        )
        if cancel_event is not None and cancel_event.is_set():
            return None, True

        stream = self._open_stream(route, messages, parameters, tools, None)
        invocation: Optional[ToolInvocation] = None
        cancelled = False
        try:
            async for item in stream:
                if isinstance(item, ToolInvocation):
                    invocation = item
                    break
                controller.receive(item)
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    break
        finally:
            # Buffered text belongs to the turn even when generation stopped early
            controller.finalize()
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return invocation, cancelled
