"""Error taxonomy shared by services, jobs and the HTTP layer."""


class CommsError(Exception):
    """Base exception for the communications engine."""

    code = "comms_error"


class ValidationError(CommsError):
    """Malformed input: bad address, missing required template variable, type mismatch."""

    code = "validation_error"


class NotConfiguredError(CommsError):
    """A channel provider is unavailable (missing credentials)."""

    code = "not_configured"


class ProviderError(CommsError):
    """A provider call failed, timed out or returned an error payload."""

    code = "provider_error"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(CommsError):
    """A referenced template, message, notification or tracked entity does not exist."""

    code = "not_found"


class StateConflictError(CommsError):
    """The operation targets an entity already in a terminal state."""

    code = "state_conflict"
