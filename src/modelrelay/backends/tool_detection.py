"""
Best-effort detection of tool-call JSON written inline by text-only runtimes.

Local runtimes only produce text, so a model that wants a tool writes an object such as
    {"name": "get_weather", "arguments": {"city": "SF"}}
    {"tool_name": "get_weather", "arguments": "{\"city\": \"SF\"}"}
    {"function": {"name": "get_weather", "arguments": {...}}}
somewhere in its output.  :func:`detect_inline_tool_call` finds the last such object that names
an offered tool and returns ``(name, arguments_json)``.
"""

import json
import re
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
)

# Only the tail of the text is scanned; the call is most likely the last thing generated
MAX_SCAN_WINDOW = 45_000
MAX_BRACE_CANDIDATES = 10_000


class ToolCallParseError(RuntimeError):
    """Raised when a candidate object cannot be delimited."""


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------
def _skip_string(s: str, i: int) -> int:
    """Given s[i] == '"', return index just past the closing quote (honouring escapes)."""
    i += 1
    escaped = False
    while i < len(s):
        ch = s[i]
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == '"':
            return i + 1
        i += 1
    raise ToolCallParseError("unterminated string literal")


def _find_matching_brace(s: str, i: int) -> int:
    """Given s[i] == '{', return index just past its matching '}'."""
    depth = 0
    while i < len(s):
        ch = s[i]
        if ch == '"':
            i = _skip_string(s, i)
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    raise ToolCallParseError("unbalanced braces")


def _enclosing_objects(s: str, index: int) -> Iterable[Tuple[int, int]]:
    """Yield (start, end) of JSON-looking objects that enclose *index*, innermost first."""
    starts: List[int] = []
    i = index
    while i > 0 and len(starts) <= MAX_BRACE_CANDIDATES:
        i -= 1
        if s[i] == "{":
            starts.append(i)
    for start in starts:
        try:
            end = _find_matching_brace(s, start)
        except ToolCallParseError:
            continue
        if start <= index < end:
            yield start, end


def _arguments_to_json(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value if value is not None else {})


def _extract_call(candidate: str) -> Optional[Tuple[str, str]]:
    """Parse ``candidate`` and pull out (name, arguments_json) in any supported shape."""
    try:
        obj = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict):
        return None

    function = obj.get("function")
    if isinstance(function, dict) and isinstance(function.get("name"), str):
        return function["name"], _arguments_to_json(function.get("arguments"))
    for key in ("tool_name", "name"):
        name = obj.get(key)
        if isinstance(name, str):
            return name, _arguments_to_json(obj.get("arguments", obj.get("args")))
    return None


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------
def detect_inline_tool_call(text: str, tool_names: Iterable[str]) -> Optional[Tuple[str, str]]:
    """
    Return ``(tool_name, arguments_json)`` for the last inline call to one of *tool_names*.

    Mentions of a tool name that are not inside a parseable object (e.g. in prose) are ignored.
    """
    names = set(tool_names)
    if not names or not text:
        return None

    window = text[-MAX_SCAN_WINDOW:]
    alternatives = "|".join(re.escape(name) for name in sorted(names))
    pattern = re.compile(r'"(?:tool_)?name"\s*:\s*"(?:' + alternatives + r')"')

    matches = list(pattern.finditer(window))
    for match in reversed(matches):
        for start, end in _enclosing_objects(window, match.start()):
            found = _extract_call(window[start:end])
            if found and found[0] in names:
                return found
    return None


def render_tool_instructions(tools: Dict[str, str]) -> str:
    """System-prompt section telling a text-only model how to call *tools* (name -> schema)."""
    lines = [
        "# Tools",
        "To call a tool, reply with a single JSON object and nothing else:",
        '{"name": "<tool name>", "arguments": { ... }}',
        "",
        "Available tools:",
    ]
    lines.extend(f"- {name}: {schema}" for name, schema in tools.items())
    return "\n".join(lines)
