"""
Pydantic models for the OpenAI-compatible HTTP surface.

These translate the Chat Completions wire format to and from the engine's own schema
(:mod:`modelrelay.core.schema`).  Nothing here carries logic beyond that translation.
"""

import base64
import binascii
import time
from typing import (
    Any,
    Dict,
    List,
    Literal,
    Optional,
    Union,
)

from pydantic import (
    BaseModel,
    Field,
)

from modelrelay.core.schema import (
    ChatMessage,
    GenerationRequest,
    Role,
    ToolCall,
    ToolChoice,
    ToolSpec,
    new_completion_id,
)


# ---------------------------------------------------------------------------
# Request schema
# ---------------------------------------------------------------------------
class WireFunction(BaseModel):
    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class WireTool(BaseModel):
    type: Literal["function"] = "function"
    function: WireFunction


class WireMessage(BaseModel):
    """A message as sent by OpenAI clients; content may be a list of typed parts."""

    role: Role
    content: Union[str, List[Dict[str, Any]], None] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def to_chat_message(self) -> ChatMessage:
        text = self.content
        images: List[bytes] = []
        if isinstance(self.content, list):
            texts: List[str] = []
            for part in self.content:
                if part.get("type") == "text":
                    texts.append(str(part.get("text", "")))
                elif part.get("type") == "image_url":
                    image = _decode_data_url((part.get("image_url") or {}).get("url", ""))
                    if image is not None:
                        images.append(image)
            text = "\n".join(texts)
        return ChatMessage(
            role=self.role,
            content=text,
            tool_calls=self.tool_calls,
            tool_call_id=self.tool_call_id,
            images=images or None,
        )


def _decode_data_url(url: str) -> Optional[bytes]:
    """Inline ``data:image/...;base64,`` payloads only; remote URLs are not fetched."""
    if not url.startswith("data:") or ";base64," not in url:
        return None
    try:
        return base64.b64decode(url.split(";base64,", 1)[1], validate=True)
    except (binascii.Error, ValueError):
        return None


class ChatCompletionRequest(BaseModel):
    """Incoming ``POST /v1/chat/completions`` body."""

    model: str = "default"
    messages: List[WireMessage] = Field(..., min_length=1)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop: Union[str, List[str], None] = None
    stream: bool = False
    tools: Optional[List[WireTool]] = None
    tool_choice: Union[str, Dict[str, Any], None] = None

    def to_generation_request(self) -> GenerationRequest:
        stop = [self.stop] if isinstance(self.stop, str) else self.stop
        return GenerationRequest(
            model=self.model,
            messages=[m.to_chat_message() for m in self.messages],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            top_p=self.top_p,
            frequency_penalty=self.frequency_penalty,
            presence_penalty=self.presence_penalty,
            stop=stop,
            stream=self.stream,
            tools=[
                ToolSpec(
                    name=t.function.name,
                    description=t.function.description,
                    parameters=t.function.parameters,
                )
                for t in self.tools or []
            ]
            or None,
            tool_choice=ToolChoice.parse(self.tool_choice),
        )


# ---------------------------------------------------------------------------
# Response schema
# ---------------------------------------------------------------------------
class ModelCard(BaseModel):
    id: str
    object: Literal["model"] = "model"
    created: int = Field(default_factory=lambda: int(time.time()))
    owned_by: str


class ModelList(BaseModel):
    object: Literal["list"] = "list"
    data: List[ModelCard]


class DeltaToolCallFunction(BaseModel):
    name: Optional[str] = None
    arguments: Optional[str] = None


class DeltaToolCall(BaseModel):
    index: int = 0
    id: Optional[str] = None
    type: Literal["function"] = "function"
    function: DeltaToolCallFunction


class ChunkDelta(BaseModel):
    role: Optional[Role] = None
    content: Optional[str] = None
    tool_calls: Optional[List[DeltaToolCall]] = None


class ChunkChoice(BaseModel):
    index: int = 0
    delta: ChunkDelta
    finish_reason: Optional[Literal["stop", "tool_calls", "length"]] = None


class ChatCompletionChunk(BaseModel):
    """One SSE ``data:`` payload of a streamed completion."""

    id: str = Field(default_factory=new_completion_id)
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str
    choices: List[ChunkChoice]
