"""Terminal helpers shared by the interactive shell and the API launcher."""

from enum import Enum
from typing import Any

PREVIEW_LIMIT = 200


class AnsiColors(Enum):
    """
    ANSI color codes for terminal output.

    The shell prints thinking in grey, answers in yellow and tool traffic in green.
    """

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[33m"
    BLUE = "\033[94m"
    GREY = "\033[90m"
    RESET = "\033[0m"


def colored_print(text: str, color: AnsiColors, *args: Any, **kwargs: Any) -> None:
    """
    Print text in color.

    Args:
        text: The text to print
        color: The color to use (AnsiColors enum)
        args: Additional positional arguments for print
        kwargs: Additional keyword arguments for print
    """
    print(f"{color.value}{text}{AnsiColors.RESET.value}", *args, **kwargs)


def preview(text: str, limit: int = PREVIEW_LIMIT) -> str:
    """Collapse whitespace and cut *text* to *limit* characters for one-line display."""
    flat = " ".join((text or "").split())
    if len(flat) <= limit:
        return flat
    return flat[: max(0, limit - 3)] + "..."
