"""Tests for the terminal helpers."""

from modelrelay.common import (
    AnsiColors,
    colored_print,
    preview,
)


def test_preview_collapses_and_truncates() -> None:
    """Previews are single-line and bounded."""

    assert preview("a\n  b\tc") == "a b c"
    assert preview("x" * 50, limit=10) == "xxxxxxx..."
    assert preview(None) == ""


def test_colored_print_resets(capsys) -> None:
    """Colored output always ends with the reset code."""

    colored_print("hi", AnsiColors.GREEN, end="")

    assert capsys.readouterr().out == "\033[92mhi\033[0m"
