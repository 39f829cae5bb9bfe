"""
Stream items produced by generation backends.

A backend that decides to call a function does not raise: it ends its stream with a
:class:`ToolInvocation` value.  Consumers tell the two item kinds apart with ``isinstance``.
"""

from typing import (
    Optional,
    Union,
)

from pydantic import (
    BaseModel,
    ConfigDict,
)


class ToolInvocation(BaseModel):
    """The model finished a function-call decision mid-generation."""

    model_config = ConfigDict(frozen=True)

    tool_name: str
    arguments_json: str = "{}"
    # Provider call id ("call_xxx" / "toolu_xxx"); None means the engine synthesizes one
    tool_call_id: Optional[str] = None


StreamItem = Union[str, ToolInvocation]
"""Either a text delta or the terminal tool invocation of a stream."""
