"""
Tool registry for modelrelay.

This module provides a decorator to register tools and a registry to look them up by name.
The tools are functions (plain or ``async``) that are called with keyword arguments and return a
value.  Each registered tool carries an ``enabled`` flag that callers may override per
conversation scope with a ``{name: bool}`` mapping.
"""

import inspect
import logging
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    get_type_hints,
)

from modelrelay.core.schema import ToolSpec

logger = logging.getLogger(__name__)

_JSON_TYPES: Dict[Any, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}


def _json_type(annotation: Any) -> str:
    origin = getattr(annotation, "__origin__", None)
    return _JSON_TYPES.get(annotation) or _JSON_TYPES.get(origin) or "string"


def parameters_schema(fn: Callable) -> Dict[str, Any]:
    """Build a JSON schema for *fn*'s keyword arguments from its signature."""
    sig = inspect.signature(fn)
    try:
        type_hints = get_type_hints(fn)
    except (NameError, TypeError):
        type_hints = {}
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for param_name, param in sig.parameters.items():
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        properties[param_name] = {"type": _json_type(type_hints.get(param_name, str))}
        if param.default is inspect.Parameter.empty:
            required.append(param_name)
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


@dataclass
class ToolEntry:
    """A registered tool function plus its catalog metadata."""

    name: str
    fn: Callable
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    category: Optional[str] = None

    def spec(self) -> ToolSpec:
        return ToolSpec(name=self.name, description=self.description, parameters=self.parameters)


class ToolRegistry:
    """Name -> tool lookup with enable flags and per-scope overrides."""

    def __init__(self) -> None:
        self._entries: Dict[str, ToolEntry] = {}

    def register(
        self,
        name: str,
        fn: Callable,
        *,
        description: str | None = None,
        parameters: Dict[str, Any] | None = None,
        enabled: bool = True,
        category: str | None = None,
    ) -> ToolEntry:
        """
        Register *fn* under *name*.

        Raises
        ------
        ValueError
            If a function with the same name is already registered.
        """
        if name in self._entries:
            raise ValueError(f"Tool '{name}' is already registered.")
        logger.debug("Registering tool '%s'", name)
        entry = ToolEntry(
            name=name,
            fn=fn,
            description=(description if description is not None else inspect.getdoc(fn) or ""),
            parameters=parameters or parameters_schema(fn),
            enabled=enabled,
            category=category,
        )
        self._entries[name] = entry
        return entry

    def unregister(self, name: str) -> None:
        self._entries.pop(name, None)

    def get(self, name: str) -> Optional[ToolEntry]:
        return self._entries.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def names(self) -> List[str]:
        return list(self._entries)

    def is_enabled(self, name: str, overrides: Mapping[str, bool] | None = None) -> bool:
        """Per-scope override wins over the registered flag."""
        entry = self._entries.get(name)
        if entry is None:
            return False
        if overrides and name in overrides:
            return bool(overrides[name])
        return entry.enabled

    def enabled_entries(self, overrides: Mapping[str, bool] | None = None) -> List[ToolEntry]:
        return [entry for entry in self._entries.values() if self.is_enabled(entry.name, overrides)]

    def specs(self, overrides: Mapping[str, bool] | None = None) -> List[ToolSpec]:
        """Full specs of every enabled tool."""
        return [entry.spec() for entry in self.enabled_entries(overrides)]


TOOL_REGISTRY = ToolRegistry()
"""Global registry of tool functions."""


def register_tool(name: str, **metadata: Any) -> Callable:
    """
    Register a tool function with the given name in :data:`TOOL_REGISTRY`.

    The function is registered as a decorator, so it can be used like this:
        @register_tool("my_tool")
        def my_tool_function(arg1: str, arg2: int = 0) -> str:
            '''One-line description shown to the model.'''
            return result

    Parameters
    ----------
    name: str
        The name of the tool.  This must be unique.
    metadata:
        Optional ``description``, ``parameters``, ``enabled`` and ``category`` overrides.

    Raises
    ------
    ValueError
        If a function with the same name is already registered.
    """
    if name in TOOL_REGISTRY:
        raise ValueError(f"Tool '{name}' is already registered.")

    def wrapper(fn: Callable) -> Callable:
        TOOL_REGISTRY.register(name, fn, **metadata)
        return fn

    return wrapper


@register_tool("echo")
def echo_tool(text: str) -> str:
    """Echo the input text back to the caller."""
    return text
