"""
Consumer-side buffering of streamed deltas.

:class:`StreamFlushController` batches raw deltas and flushes them on a size/latency threshold
that grows with the amount of text already streamed.  Each flush runs through a
:class:`ThinkTagSplitter`, which routes ``<think>...</think>`` spans to a separate channel
without leaking partial tags across chunk boundaries.
"""

import logging
import time
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Callable,
    List,
    Optional,
    Sequence,
    Tuple,
)

from modelrelay.config import settings

logger = logging.getLogger(__name__)

OPEN_TAG = "<think>"
CLOSE_TAG = "</think>"


# ---------------------------------------------------------------------------
# Flush thresholds
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class FlushTier:
    """Thresholds that apply once ``min_chars`` characters have been emitted."""

    min_chars: int
    interval_ms: float
    max_buffer: int


DEFAULT_TIERS: Tuple[FlushTier, ...] = (
    FlushTier(0, 50.0, 256),
    FlushTier(4_000, 75.0, 384),
    FlushTier(16_000, 110.0, 512),
    FlushTier(48_000, 160.0, 768),
    FlushTier(96_000, 220.0, 1024),
    FlushTier(160_000, 300.0, 1536),
    FlushTier(260_000, 380.0, 2048),
    FlushTier(420_000, 500.0, 3072),
)

# (longest flush below this many ms, multiplier)
DEFAULT_BACKOFF: Tuple[Tuple[float, float], ...] = (
    (16.0, 1.0),
    (33.0, 1.25),
    (60.0, 1.5),
)


@dataclass
class FlushPolicy:
    """
    Size tiers plus a backoff multiplier driven by the slowest flush seen so far.

    The numbers are tuning, not contract; override them per controller or through the
    ``FLUSH_MAX_INTERVAL_MS`` / ``FLUSH_MAX_BUFFER`` caps.
    """

    tiers: Sequence[FlushTier] = DEFAULT_TIERS
    backoff: Sequence[Tuple[float, float]] = DEFAULT_BACKOFF
    slow_backoff: float = 2.0
    max_interval_ms: float = field(default_factory=lambda: settings.FLUSH_MAX_INTERVAL_MS)
    max_buffer: int = field(default_factory=lambda: settings.FLUSH_MAX_BUFFER)

    def tier_for(self, total_chars: int) -> FlushTier:
        chosen = self.tiers[0]
        for tier in self.tiers:
            if total_chars >= tier.min_chars:
                chosen = tier
        return chosen

    def backoff_factor(self, longest_flush_ms: float) -> float:
        for limit, factor in self.backoff:
            if longest_flush_ms < limit:
                return factor
        return self.slow_backoff

    def thresholds(self, total_chars: int, longest_flush_ms: float = 0.0) -> Tuple[float, int]:
        """Return ``(interval_ms, max_buffer)`` for the current stream state."""
        tier = self.tier_for(total_chars)
        factor = self.backoff_factor(longest_flush_ms)
        interval = min(tier.interval_ms * factor, self.max_interval_ms)
        buffer = min(int(tier.max_buffer * factor), self.max_buffer)
        return interval, buffer


# ---------------------------------------------------------------------------
# <think> splitter
# ---------------------------------------------------------------------------
def _partial_suffix_length(text: str, delimiter: str) -> int:
    """Length of the longest suffix of *text* that is a proper prefix of *delimiter*."""
    lowered = text.lower()
    for size in range(min(len(delimiter) - 1, len(lowered)), 0, -1):
        if delimiter.startswith(lowered[-size:]):
            return size
    return 0


class ThinkTagSplitter:
    """Splits text into ``(visible, thinking)`` across arbitrarily cut chunks."""

    def __init__(self) -> None:
        self.inside_thinking = False
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, text: str) -> Tuple[str, str]:
        text = self._pending + text
        self._pending = ""
        visible: List[str] = []
        thinking: List[str] = []

        while text:
            delimiter = CLOSE_TAG if self.inside_thinking else OPEN_TAG
            target = thinking if self.inside_thinking else visible
            index = text.lower().find(delimiter)
            if index >= 0:
                target.append(text[:index])
                text = text[index + len(delimiter) :]
                self.inside_thinking = not self.inside_thinking
                continue
            keep = _partial_suffix_length(text, delimiter)
            target.append(text[: len(text) - keep])
            self._pending = text[len(text) - keep :]
            break

        return "".join(visible), "".join(thinking)

    def finish(self) -> Tuple[str, str]:
        """Release a leftover partial tag as text of the current channel."""
        leftover, self._pending = self._pending, ""
        if self.inside_thinking:
            return "", leftover
        return leftover, ""

    def reset(self) -> None:
        self.inside_thinking = False
        self._pending = ""


# ---------------------------------------------------------------------------
# Model-specific middleware
# ---------------------------------------------------------------------------
class StreamMiddleware:
    """Rewrites raw deltas before tag parsing.  One instance per stream."""

    def process(self, delta: str) -> str:
        return delta


class PrependThinkTag(StreamMiddleware):
    """For models that emit ``</think>`` without ever opening the block."""

    def __init__(self) -> None:
        self._fired = False

    def process(self, delta: str) -> str:
        if self._fired or not delta:
            return delta
        self._fired = True
        return OPEN_TAG + delta


def resolve_middleware(model_id: str | None) -> Optional[StreamMiddleware]:
    lower = (model_id or "").lower()
    if "glm" in lower and "flash" in lower:
        return PrependThinkTag()
    return None


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------
TextCallback = Callable[[str], None]


class StreamFlushController:
    """
    Adaptive batching of deltas for a UI-style consumer.

    Parameters
    ----------
    on_content:
        Receives visible text on every flush that produced some.
    on_thinking:
        Receives ``<think>`` text.  When omitted, thinking is dropped.
    policy:
        Flush thresholds; defaults to :class:`FlushPolicy`.
    clock:
        Monotonic clock in seconds, injectable for tests.
    middleware:
        Optional :class:`StreamMiddleware` applied to each raw delta.
    """

    def __init__(
        self,
        on_content: TextCallback,
        on_thinking: TextCallback | None = None,
        *,
        policy: FlushPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        middleware: StreamMiddleware | None = None,
    ) -> None:
        self._on_content = on_content
        self._on_thinking = on_thinking
        self.policy = policy or FlushPolicy()
        self._clock = clock
        self.middleware = middleware
        self.splitter = ThinkTagSplitter()
        self.reset()

    def reset(self, middleware: StreamMiddleware | None = None) -> None:
        self._buffer: List[str] = []
        self._buffered_chars = 0
        self.content_chars = 0
        self.thinking_chars = 0
        self.longest_flush_ms = 0.0
        self.flush_count = 0
        self._last_flush = self._clock()
        self.splitter.reset()
        if middleware is not None:
            self.middleware = middleware

    @property
    def buffered(self) -> str:
        return "".join(self._buffer)

    @property
    def total_chars(self) -> int:
        return self.content_chars + self.thinking_chars

    def receive(self, delta: str) -> bool:
        """Buffer *delta*; returns ``True`` when the call triggered a flush."""
        if self.middleware is not None:
            delta = self.middleware.process(delta)
        if not delta:
            return False
        self._buffer.append(delta)
        self._buffered_chars += len(delta)

        interval_ms, max_buffer = self.policy.thresholds(self.total_chars, self.longest_flush_ms)
        elapsed_ms = (self._clock() - self._last_flush) * 1000.0
        if self._buffered_chars >= max_buffer or elapsed_ms >= interval_ms:
            self.flush()
            return True
        return False

    def flush(self) -> None:
        if not self._buffer:
            return
        started = self._clock()
        text = "".join(self._buffer)
        self._buffer = []
        self._buffered_chars = 0

        self._emit(*self.splitter.feed(text))

        self._last_flush = self._clock()
        self.flush_count += 1
        self.longest_flush_ms = max(self.longest_flush_ms, (self._last_flush - started) * 1000.0)

    def finalize(self) -> None:
        """Drain everything, including a partial tag held by the splitter."""
        self.flush()
        self._emit(*self.splitter.finish())
        logger.debug(
            "Stream finalized: %d content / %d thinking chars in %d flush(es)",
            self.content_chars,
            self.thinking_chars,
            self.flush_count,
        )

    def _emit(self, visible: str, thinking: str) -> None:
        if visible:
            self.content_chars += len(visible)
            self._on_content(visible)
        if thinking:
            self.thinking_chars += len(thinking)
            if self._on_thinking is not None:
                self._on_thinking(thinking)
