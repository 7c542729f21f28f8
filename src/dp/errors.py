"""Error taxonomy for the rendering engine.

Backends raise these; the registry turns every one of them into a
``RenderResult`` of kind ``error`` so nothing crosses the controller
boundary as an exception.
"""

from __future__ import annotations

__all__ = [
    "BackendUnavailable",
    "ClassificationAmbiguous",
    "ClientError",
    "ConnectionFailure",
    "DiagramError",
    "RenderFailure",
    "RenderTimeout",
    "SanitizationFailure",
    "ServerError",
]

RETRY_HINT = "Please try again later."


class DiagramError(Exception):
    """Base class for all engine errors."""

    #: Whether a later attempt may succeed without changing the source
    transient: bool = False


class ClassificationAmbiguous(DiagramError):
    """No extension mapping or content rule matched the source."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Unable to determine diagram type for {path}")
        self.path = path


class BackendUnavailable(DiagramError):
    """The selected backend cannot render the requested diagram type."""

    def __init__(self, backend: str, diagram_type: str, diagnostic: str | None = None) -> None:
        message = f"Backend '{backend}' cannot render '{diagram_type}'"
        if diagnostic:
            message += f": {diagnostic}"
        super().__init__(message)
        self.backend = backend
        self.diagram_type = diagram_type
        self.diagnostic = diagnostic


class RenderFailure(DiagramError):
    """A backend attempted the render and failed."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ClientError(RenderFailure):
    """The backend rejected the input (syntax error, unsupported type)."""


class _Transient(RenderFailure):
    """A failure that may clear up on its own; messages carry a retry hint."""

    transient = True

    def __str__(self) -> str:
        return f"{super().__str__().rstrip('.')}. {RETRY_HINT}"


class ServerError(_Transient):
    """The backend failed internally (HTTP 5xx)."""


class RenderTimeout(_Transient):
    """The backend did not answer in time."""


class ConnectionFailure(_Transient):
    """The backend could not be reached."""


class SanitizationFailure(DiagramError):
    """Rendered SVG could not be parsed; the output degrades to empty."""
