"""Core value types shared by the classifier, backends, cache and controller.

All types are immutable once constructed so results can be shared between
the live preview, the cache and the batch exporter without copying.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import PurePath

__all__ = [
    "BackendCapability",
    "BackendKind",
    "ClassificationResult",
    "DiagramSource",
    "DiagramType",
    "ExtensionMapping",
    "PreviewEvent",
    "PreviewState",
    "RenderRequest",
    "RenderResult",
    "ResultKind",
    "Theme",
]


class BackendKind(StrEnum):
    """Render execution strategy."""

    LOCAL = "local"
    REMOTE = "remote"
    CONTAINER = "container"


class DiagramType(StrEnum):
    """Diagram grammar a backend must target.

    Values double as the Kroki path segment for the remote backend.
    """

    MERMAID = "mermaid"
    PLANTUML = "plantuml"
    GRAPHVIZ = "graphviz"
    STRUCTURIZR = "structurizr"
    BPMN = "bpmn"
    DITAA = "ditaa"
    ERD = "erd"
    EXCALIDRAW = "excalidraw"
    NOMNOML = "nomnoml"
    PIKCHR = "pikchr"
    SVGBOB = "svgbob"
    UMLET = "umlet"
    VEGA = "vega"
    VEGALITE = "vegalite"
    WAVEDROM = "wavedrom"


class Theme(StrEnum):
    LIGHT = "light"
    DARK = "dark"


class ResultKind(StrEnum):
    SVG = "svg"
    PNG = "png"
    ERROR = "error"


class PreviewState(StrEnum):
    LOADING = "loading"
    RESULT = "result"
    ERROR = "error"


@dataclass(frozen=True)
class DiagramSource:
    """A diagram document as handed over by the editing surface."""

    path: str
    text: str

    @property
    def file_extension(self) -> str:
        return PurePath(self.path).suffix.lower()


@dataclass(frozen=True)
class ExtensionMapping:
    """Backends allowed for a file extension, default first."""

    backend_kinds: tuple[BackendKind, ...]
    diagram_type: DiagramType | None = None


@dataclass(frozen=True)
class ClassificationResult:
    backend_kind: BackendKind
    diagram_type: DiagramType | None = None


@dataclass(frozen=True)
class BackendCapability:
    """Outcome of a backend probe."""

    backend_kind: BackendKind
    available: bool
    supported_types: frozenset[DiagramType] = field(default_factory=frozenset)
    diagnostic: str | None = None

    def supports(self, diagram_type: DiagramType) -> bool:
        return self.available and diagram_type in self.supported_types


@dataclass(frozen=True)
class RenderRequest:
    content: str
    diagram_type: DiagramType
    theme: Theme
    cache_key: str


@dataclass(frozen=True)
class RenderResult:
    """Tagged render outcome.

    ``payload`` holds SVG markup, a ``data:image/png;base64,...`` URL, or an
    empty string for errors. ``message`` carries the diagnostic for errors.
    """

    kind: ResultKind
    payload: str = ""
    message: str | None = None

    @classmethod
    def svg(cls, markup: str) -> RenderResult:
        return cls(ResultKind.SVG, markup)

    @classmethod
    def png(cls, data_url: str) -> RenderResult:
        return cls(ResultKind.PNG, data_url)

    @classmethod
    def error(cls, message: str) -> RenderResult:
        return cls(ResultKind.ERROR, "", message)

    @property
    def is_error(self) -> bool:
        return self.kind is ResultKind.ERROR


@dataclass(frozen=True)
class PreviewEvent:
    """Message emitted to the presentation surface."""

    state: PreviewState
    format: ResultKind | None = None
    content: str | None = None
    message: str | None = None
    loading: bool = False

    def to_dict(self) -> dict[str, object]:
        """Convert to the wire shape expected by presentation surfaces."""
        data: dict[str, object] = {"state": self.state.value}
        if self.state is PreviewState.LOADING:
            data["loading"] = self.loading
        if self.format is not None:
            data["format"] = self.format.value
        if self.content is not None:
            data["content"] = self.content
        if self.message is not None:
            data["message"] = self.message
        return data
