"""Token estimation and FIFO history pruning for a model's context window."""

import logging
import math
from dataclasses import dataclass
from typing import (
    List,
    Sequence,
    Tuple,
)

from modelrelay.config import settings
from modelrelay.core.schema import (
    ChatMessage,
    Role,
)

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str | None) -> int:
    """Rough token count: one token per four characters, never less than one."""
    return max(1, len(text or "") // CHARS_PER_TOKEN)


def estimate_image_tokens(image: bytes) -> int:
    # base64 expands 3 bytes into 4 characters
    return max(1, math.ceil(len(image) * 4 / 3) // CHARS_PER_TOKEN)


def estimate_message_tokens(message: ChatMessage) -> int:
    total = estimate_tokens(message.content)
    for call in message.tool_calls or []:
        total += estimate_tokens(call.function.name + call.function.arguments)
    for image in message.images or []:
        total += estimate_image_tokens(image)
    return total


@dataclass
class BudgetReport:
    budget: int
    tokens_before: int
    tokens_after: int
    removed: int

    @property
    def pruned(self) -> bool:
        return self.removed > 0


class ContextBudgeter:
    """
    Keeps an outbound message list inside ``context_length`` minus the response reserve.

    Eviction is strict FIFO from the front over non-system messages.  System messages are
    never removed and the window never starts with a tool result whose call was evicted.
    """

    def __init__(self, context_length: int | None = None, max_tokens: int | None = None) -> None:
        self.context_length = context_length or settings.CONTEXT_LENGTH
        self.reserve = max_tokens or settings.RESPONSE_TOKEN_RESERVE

    @property
    def budget(self) -> int:
        return max(settings.MIN_HISTORY_TOKENS, self.context_length - self.reserve)

    def total_tokens(self, messages: Sequence[ChatMessage]) -> int:
        return sum(estimate_message_tokens(m) for m in messages)

    def prune(self, messages: Sequence[ChatMessage]) -> Tuple[List[ChatMessage], BudgetReport]:
        """Return a pruned copy of *messages*; the input sequence is left untouched."""
        window = list(messages)
        before = total = self.total_tokens(window)
        budget = self.budget
        removed = 0

        def _non_system() -> List[int]:
            return [i for i, m in enumerate(window) if m.role is not Role.SYSTEM]

        candidates = _non_system()
        while total > budget and len(candidates) > 1:
            evicted = window.pop(candidates[0])
            total -= estimate_message_tokens(evicted)
            removed += 1
            candidates = _non_system()

        # A tool result must not open the window once its assistant call is gone
        candidates = _non_system()
        while candidates and window[candidates[0]].role is Role.TOOL:
            evicted = window.pop(candidates[0])
            total -= estimate_message_tokens(evicted)
            removed += 1
            candidates = _non_system()

        report = BudgetReport(budget=budget, tokens_before=before, tokens_after=total, removed=removed)
        if removed:
            logger.info(
                "Pruned %d message(s) to fit context: %d -> %d tokens (budget %d)",
                removed,
                before,
                total,
                budget,
            )
        return window, report
