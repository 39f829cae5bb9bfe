"""Interactive shell that chats with the engine in-process."""

import asyncio
import logging
from typing import Tuple

from modelrelay.agent.capabilities import CapabilitySelector
from modelrelay.agent.conversation import ChatSession
from modelrelay.agent.engine import (
    Engine,
    TurnOutcome,
)
from modelrelay.common import (
    AnsiColors,
    colored_print,
    preview,
)
from modelrelay.config import settings
from modelrelay.skills.library import SkillLibrary

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CLI Client
# ---------------------------------------------------------------------------
def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


async def _print_turn(session: ChatSession, message: str) -> None:
    in_thinking = False
    async for event in session.send(message):
        if event.kind == "thinking":
            in_thinking = True
            colored_print(event.text, AnsiColors.GREY, end="", flush=True)
        elif event.kind == "content":
            if in_thinking:
                print()
                in_thinking = False
            colored_print(event.text, AnsiColors.YELLOW, end="", flush=True)
        elif event.kind == "tool_call":
            colored_print(f"\n[{event.tool_name}] {preview(event.text)}", AnsiColors.GREEN)
        elif event.kind == "tool_result":
            colored_print(f"[{event.tool_name}] -> {preview(event.text)}", AnsiColors.GREEN)
        elif event.kind == "error":
            colored_print(f"\nError: {event.text}", AnsiColors.RED)
        elif event.kind == "done":
            print()
            if event.result is not None and event.result.outcome is TurnOutcome.REJECTED:
                colored_print("Tool call rejected; the conversation can continue.", AnsiColors.RED)


async def _shell(session: ChatSession) -> None:
    loop = asyncio.get_running_loop()
    colored_print(
        f"\nmodelrelay shell [{session.options.model}] - type 'exit' or 'quit' (or Ctrl+C) to exit,"
        " '/reset' to start over",
        AnsiColors.GREEN,
    )
    while True:
        colored_print("\nYou: ", AnsiColors.BLUE, end="")
        user_msg, ok = await loop.run_in_executor(None, get_user_message)
        if not ok or user_msg.lower() in {"exit", "quit"}:
            break
        if user_msg.lower() == "/reset":
            await session.reset()
            colored_print("Conversation cleared.", AnsiColors.GREEN)
            continue
        if not user_msg:
            continue
        try:
            await _print_turn(session, user_msg)
        except KeyboardInterrupt:
            session.cancel()


def run_cli(model: str = "default") -> None:
    """Run the interactive shell against an in-process engine."""
    engine = Engine(source="cli")
    selector = CapabilitySelector(skills=SkillLibrary.discover(settings.SKILLS_DIR))
    session = ChatSession(engine, model=model, selector=selector)
    try:
        asyncio.run(_shell(session))
    except KeyboardInterrupt:
        logger.info("Shell interrupted")


if __name__ == "__main__":
    run_cli()
