"""Error taxonomy shared by the router, backends and engine."""


class ModelRelayError(RuntimeError):
    """Base class for engine failures that reach the caller."""


class NoRouteError(ModelRelayError):
    """No available backend handles the requested model."""

    def __init__(self, requested_model: str | None):
        self.requested_model = requested_model
        super().__init__(f"No backend available for model '{requested_model or 'default'}'")


class UnknownModelError(ModelRelayError):
    """A backend was asked to generate for a model it does not recognize."""

    def __init__(self, model: str | None, backend_id: str = ""):
        self.model = model
        self.backend_id = backend_id
        where = f" by backend '{backend_id}'" if backend_id else ""
        super().__init__(f"Requested model not found{where}: {model or '<empty>'}")


class BackendError(ModelRelayError):
    """The provider call itself failed (network, HTTP status, malformed payload)."""


class BoundedAttemptsExceeded(ModelRelayError):
    """The tool loop hit its iteration cap without the model producing a final answer."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Tool loop stopped after {attempts} generation attempts")


class CapabilitySelectionError(ValueError):
    """Arguments passed to ``select_capabilities`` could not be parsed."""
