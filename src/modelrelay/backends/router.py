"""Pure selection of the backend that serves a requested model."""

import logging
from typing import (
    NamedTuple,
    Optional,
    Sequence,
)

from modelrelay.backends.base import (
    DEFAULT_MODEL,
    GenerationBackend,
    is_default_model,
)

logger = logging.getLogger(__name__)


class Route(NamedTuple):
    """A backend together with the model name it should be asked for."""

    backend: GenerationBackend
    effective_model: str


def resolve(
    requested_model: str | None, backends: Sequence[GenerationBackend]
) -> Optional[Route]:
    """
    Decide which backend handles *requested_model*.

    Parameters
    ----------
    requested_model:
        Model string requested by the client.  Empty or ``"default"`` (any case) selects the
        default route.
    backends:
        Candidates in priority order.

    Returns
    -------
    Route | None
        ``None`` when no available backend handles the model.
    """
    trimmed = (requested_model or "").strip()
    default = is_default_model(trimmed)

    for backend in backends:
        if not backend.is_available():
            logger.debug("Skipping unavailable backend '%s'", backend.id)
            continue
        if default:
            if backend.handles(None):
                return Route(backend, DEFAULT_MODEL)
        elif backend.handles(trimmed):
            return Route(backend, trimmed)

    logger.debug("No route for model '%s' among %d backend(s)", trimmed, len(backends))
    return None
