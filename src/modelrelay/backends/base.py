"""
Generation backend interface for modelrelay.

Backends are the only place that *directly* talks to a model.  Everything else (router, engine,
tool loop, context budget) stays model-agnostic.

We support three kinds out of the box:

1. **Remote providers** (OpenAI / Anthropic) via their SDKs.
2. **Local weights** served by a text-generation-inference compatible runtime.
3. A **default** route: whichever backend is configured as ``DEFAULT_BACKEND`` answers requests
   for ``""`` / ``"default"``.

Additional providers can be added by subclassing :class:`GenerationBackend` (or
:class:`ToolCapableBackend`) and registering via :func:`register_backend`.
"""

import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    AsyncIterator,
    Callable,
    ClassVar,
    Dict,
    List,
    Sequence,
    Type,
)

from modelrelay.config import settings
from modelrelay.core.schema import (
    ChatMessage,
    GenerationParameters,
    ToolChoice,
    ToolSpec,
)
from modelrelay.core.signals import (
    StreamItem,
    ToolInvocation,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "default"


def is_default_model(requested_model: str | None) -> bool:
    """True for ``None``, blank and (case-insensitive) ``"default"``."""
    trimmed = (requested_model or "").strip()
    return not trimmed or trimmed.lower() == DEFAULT_MODEL


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_BACKEND_REGISTRY: dict[str, Type["GenerationBackend"]] = {}


def register_backend(name: str) -> Callable:
    """Decorator to register a backend class under *name*."""

    def wrapper(cls: Type["GenerationBackend"]) -> Type["GenerationBackend"]:
        _BACKEND_REGISTRY[name] = cls
        return cls

    return wrapper


def load_backends(names: Sequence[str] | None = None) -> List["GenerationBackend"]:
    """
    Factory that returns instantiated backends in priority order.

    Fallback order for *names*:
    1. *names* arg
    2. ``settings.BACKENDS`` env/.env option

    Unknown names are logged and skipped so a typo in the environment does not take the whole
    service down.
    """
    # Concrete backends register themselves on import
    from modelrelay.backends import (  # pylint: disable=import-outside-toplevel,unused-import
        anthropic_backend,
        local,
        openai_backend,
    )

    backends: List[GenerationBackend] = []
    for name in names or settings.BACKENDS:
        cls = _BACKEND_REGISTRY.get(name.lower())
        if cls is None:
            logger.warning("Backend '%s' is not registered; skipping", name)
            continue
        backends.append(cls())
    return backends


# ---------------------------------------------------------------------------
# Base classes
# ---------------------------------------------------------------------------
class GenerationBackend(ABC):
    """Abstract provider that turns a message list into text."""

    id: ClassVar[str] = "base"

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the underlying engine can run here (keys present, models installed...)."""

    @abstractmethod
    def handles(self, requested_model: str | None) -> bool:
        """Whether this backend should serve *requested_model* (``None`` means the default)."""

    @abstractmethod
    def stream_deltas(
        self,
        messages: Sequence[ChatMessage],
        parameters: GenerationParameters,
        requested_model: str | None,
    ) -> AsyncIterator[str]:
        """Yield text deltas for the given history."""

    async def generate_one_shot(
        self,
        messages: Sequence[ChatMessage],
        parameters: GenerationParameters,
        requested_model: str | None,
    ) -> str:
        """Return the whole response at once."""
        parts: List[str] = []
        async for delta in self.stream_deltas(messages, parameters, requested_model):
            parts.append(delta)
        return "".join(parts)

    def context_length(self, requested_model: str | None) -> int | None:
        """Context window of *requested_model*, if the backend knows it."""
        return None

    def list_models(self) -> List[str]:
        """Model identifiers this backend can currently serve."""
        return []


class ToolCapableBackend(GenerationBackend):
    """Backend that can natively handle OpenAI-style tools."""

    @abstractmethod
    async def respond_with_tools(
        self,
        messages: Sequence[ChatMessage],
        parameters: GenerationParameters,
        tools: Sequence[ToolSpec],
        tool_choice: ToolChoice | None,
        requested_model: str | None,
    ) -> str | ToolInvocation:
        """Return the final text, or the tool call the model decided on."""

    @abstractmethod
    def stream_with_tools(
        self,
        messages: Sequence[ChatMessage],
        parameters: GenerationParameters,
        tools: Sequence[ToolSpec],
        tool_choice: ToolChoice | None,
        requested_model: str | None,
    ) -> AsyncIterator[StreamItem]:
        """Yield text deltas; a :class:`ToolInvocation`, if any, is the last item."""


def supports_tools(backend: GenerationBackend) -> bool:
    """Capability test used by the engine before taking the tool path."""
    return isinstance(backend, ToolCapableBackend)


def describe_backends(backends: Sequence[GenerationBackend]) -> Dict[str, bool]:
    """Map backend id -> availability, for logging and health output."""
    return {backend.id: backend.is_available() for backend in backends}
