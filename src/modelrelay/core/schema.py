"""
Schema definitions for caller <-> engine <-> backend messages.

These data models serve as the contract between the transport adapters, the orchestration engine
and individual generation backends.  We keep them separate from runtime logic so they can be
imported anywhere without side-effects.
"""

import time
import uuid
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Literal,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
    model_validator,
)

from modelrelay.config import settings


class Role(str, Enum):
    """Author of a chat message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


def new_call_id() -> str:
    """Synthesize an OpenAI-style tool call id (``call_`` + 24 hex chars)."""
    return "call_" + uuid.uuid4().hex[:24]


def new_completion_id() -> str:
    """Synthesize a completion id (``chatcmpl-`` + 12 hex chars)."""
    return "chatcmpl-" + uuid.uuid4().hex[:12]


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------
class ToolCallFunction(BaseModel):
    """Function half of a tool call: which tool and the raw JSON arguments."""

    name: str
    arguments: str = "{}"


class ToolCall(BaseModel):
    """A call that the model wants the engine to execute."""

    id: str = Field(default_factory=new_call_id, description="Unique within a turn")
    type: Literal["function"] = "function"
    function: ToolCallFunction


class ToolSpec(BaseModel):
    """Declares a callable capability offered to the model."""

    name: str = Field(..., description="Registered tool name")
    description: str = ""
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON schema of the keyword arguments",
    )

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


class ToolChoice(BaseModel):
    """How the model may use the offered tools."""

    mode: Literal["auto", "none", "function"] = "auto"
    function_name: Optional[str] = None

    @classmethod
    def parse(cls, value: Any) -> Optional["ToolChoice"]:
        """Accept ``"auto"``, ``"none"`` or ``{"type": "function", "function": {"name": ...}}``."""
        if value is None or isinstance(value, ToolChoice):
            return value
        if isinstance(value, str):
            if value in ("auto", "none"):
                return cls(mode=value)
            if value == "required":
                return cls(mode="auto")
            return cls(mode="function", function_name=value)
        if isinstance(value, dict):
            function = value.get("function") or {}
            name = function.get("name") or value.get("name")
            if name:
                return cls(mode="function", function_name=name)
        raise ValueError(f"Unsupported tool_choice: {value!r}")

    def to_openai(self) -> Any:
        if self.mode == "function":
            return {"type": "function", "function": {"name": self.function_name}}
        return self.mode


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
class ChatMessage(BaseModel):
    """One message of the outbound conversation."""

    role: Role
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    images: Optional[List[bytes]] = None

    @model_validator(mode="after")
    def _check_protocol(self) -> "ChatMessage":
        if self.role is Role.ASSISTANT and self.content is None and not self.tool_calls:
            raise ValueError("assistant message needs content or tool_calls")
        if self.role is Role.TOOL and not self.tool_call_id:
            raise ValueError("tool message must carry the tool_call_id it answers")
        return self

    @property
    def text(self) -> str:
        return self.content or ""


# ---------------------------------------------------------------------------
# Requests / responses
# ---------------------------------------------------------------------------
class GenerationParameters(BaseModel):
    """Provider-agnostic sampling parameters handed to a backend."""

    temperature: Optional[float] = None
    max_tokens: int = settings.DEFAULT_MAX_TOKENS
    top_p: Optional[float] = None
    repetition_penalty: Optional[float] = None
    stop: List[str] = Field(default_factory=list)


class GenerationRequest(BaseModel):
    """A chat request as consumed by the engine."""

    model: str = "default"
    messages: List[ChatMessage]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop: Optional[List[str]] = None
    stream: bool = False
    tools: Optional[List[ToolSpec]] = None
    tool_choice: Optional[ToolChoice] = None

    @property
    def wants_tools(self) -> bool:
        """True when tools are offered and the caller did not switch them off."""
        if not self.tools:
            return False
        return self.tool_choice is None or self.tool_choice.mode != "none"

    def generation_parameters(self) -> GenerationParameters:
        """Map request fields to backend parameters."""
        # OpenAI penalties collapse to a single repetition penalty
        repetition_penalty: Optional[float] = None
        if self.frequency_penalty is not None and self.frequency_penalty > 0:
            repetition_penalty = 1.0 + self.frequency_penalty
        elif self.presence_penalty is not None and self.presence_penalty > 0:
            repetition_penalty = 1.0 + self.presence_penalty

        return GenerationParameters(
            temperature=self.temperature,
            max_tokens=self.max_tokens or settings.DEFAULT_MAX_TOKENS,
            top_p=self.top_p,
            repetition_penalty=repetition_penalty,
            stop=list(self.stop or []),
        )


class Usage(BaseModel):
    """Estimated token accounting for a completion."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatChoice(BaseModel):
    """A single completion choice."""

    index: int = 0
    message: ChatMessage
    finish_reason: Literal["stop", "tool_calls", "length"] = "stop"


class ChatCompletionResponse(BaseModel):
    """Non-streaming completion result."""

    id: str = Field(default_factory=new_completion_id)
    object: Literal["chat.completion"] = "chat.completion"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str
    choices: List[ChatChoice]
    usage: Usage = Field(default_factory=Usage)
