"""Dispatches tool calls registered in ``modelrelay.tools`` and wraps errors."""

import asyncio
import inspect
import json
import logging
from typing import (
    Any,
    Dict,
    Mapping,
)

from modelrelay.tools import (
    TOOL_REGISTRY,
    ToolRegistry,
)

logger = logging.getLogger(__name__)


class ToolExecutionError(RuntimeError):
    """Raised when a requested tool cannot run or fails."""


def _stringify(result: Any) -> str:
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(result)


class ToolExecutor:
    """Tool-execution collaborator used by the engine's tool loop."""

    def __init__(self, registry: ToolRegistry | None = None) -> None:
        self.registry = registry or TOOL_REGISTRY

    async def execute(
        self,
        name: str,
        arguments_json: str,
        overrides: Mapping[str, bool] | None = None,
    ) -> str:
        """
        Look up *name*, decode *arguments_json* and invoke the tool.

        Parameters
        ----------
        name:
            The registered tool name.
        arguments_json:
            JSON object text with the keyword arguments.  Empty text means no arguments.
        overrides:
            Per-scope ``{name: enabled}`` overrides.

        Returns
        -------
        str
            The tool result; non-string results are JSON encoded.

        Raises
        ------
        ToolExecutionError
            If the tool is missing or disabled, the arguments are not a JSON object, or its
            invocation raises an exception.
        """
        entry = self.registry.get(name)
        if entry is None:
            raise ToolExecutionError(f"Tool '{name}' is not registered.")
        if not self.registry.is_enabled(name, overrides):
            raise ToolExecutionError(f"Tool '{name}' is disabled.")

        args = self._decode_arguments(name, arguments_json)

        try:
            logger.debug("Executing tool '%s' with args=%s", name, args)
            if inspect.iscoroutinefunction(entry.fn):
                result = await entry.fn(**args)
            else:
                # Synchronous tools run on a worker thread, off the event loop
                result = await asyncio.to_thread(entry.fn, **args)
                if inspect.isawaitable(result):
                    result = await result
        except TypeError as exc:
            # Argument mismatch
            logger.exception("Argument error while executing tool '%s'", name)
            raise ToolExecutionError(f"Invalid arguments for tool '{name}': {exc}") from exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unhandled error in tool '%s'", name)
            raise ToolExecutionError(f"Tool '{name}' raised an error: {exc}") from exc
        return _stringify(result)

    @staticmethod
    def _decode_arguments(name: str, arguments_json: str) -> Dict[str, Any]:
        if not arguments_json or not arguments_json.strip():
            return {}
        try:
            args = json.loads(arguments_json)
        except json.JSONDecodeError as exc:
            raise ToolExecutionError(f"Invalid JSON arguments for tool '{name}': {exc}") from exc
        if not isinstance(args, dict):
            raise ToolExecutionError(f"Arguments for tool '{name}' must be a JSON object.")
        return args
