"""Uniform contract shared by all render backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from dp.logging import default_logger
from dp.models import BackendCapability, BackendKind, DiagramType, RenderResult, Theme

if TYPE_CHECKING:
    from loguru import Logger

    from dp.config import Configuration

__all__ = ["Backend"]


class Backend(ABC):
    """A render execution strategy.

    ``probe`` reports what the backend can render right now. ``render`` either
    returns a result or raises a ``DiagramError``; the registry turns errors
    into ``RenderResult.error`` values.
    """

    kind: BackendKind

    def __init__(self, config: Configuration, *, logger: Logger | None = None) -> None:
        self.config = config
        self._logger = logger or default_logger

    @abstractmethod
    async def probe(self) -> BackendCapability: ...

    @abstractmethod
    async def render(
        self,
        content: str,
        diagram_type: DiagramType,
        theme: Theme = Theme.LIGHT,
        *,
        source_path: str | None = None,
    ) -> RenderResult: ...

    def detect_type(self, text: str) -> DiagramType | None:
        """Guess the diagram type for an untyped source, if the backend can."""
        return None

    def is_theme_aware(self, diagram_type: DiagramType) -> bool:
        """Whether output for ``diagram_type`` depends on the theme."""
        return False

    async def dispose(self) -> None:
        """Release resources held by the backend."""
        return None
