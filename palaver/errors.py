"""Exception hierarchy for the chat engine.

Tool validation failures are not exceptions: they travel back to the model
as ActionResult(success=False).  Everything here is raised across component
boundaries and converted to an ``error`` ChatEvent (or an HTTP status) at
the outer seam.
"""

from __future__ import annotations


class PalaverError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(PalaverError):
    """Missing API key, unknown model/personality, malformed config, bad tool registration."""


class TransportError(PalaverError):
    """Provider call failed: non-2xx, network error, timeout or malformed stream."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(PalaverError):
    """Requested chat or turn does not exist."""


class InvalidOperationError(PalaverError):
    """Operation not allowed in the current state (e.g. editing a model turn, second stream)."""


class ToolLoopExceeded(PalaverError):
    """The model kept requesting tools past the configured follow-up depth."""

    def __init__(self, max_depth: int) -> None:
        super().__init__(f"Tool loop exceeded max depth of {max_depth} follow-up calls")
        self.max_depth = max_depth
