"""Backend registry: capability checks, dispatch, and error conversion.

The registry renders with exactly the backend named by the classification.
If that backend cannot handle the diagram type the request fails with
``BackendUnavailable``; there is no fallback to another backend kind.
Every ``DiagramError`` becomes a ``RenderResult`` of kind ``error`` here, and
every SVG result is sanitized before it leaves.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, assert_never

from dp.backends.base import Backend
from dp.backends.container import ContainerBackend
from dp.backends.local import LocalBackend
from dp.backends.remote import RemoteBackend
from dp.errors import BackendUnavailable, DiagramError
from dp.logging import LogEntry, default_logger
from dp.models import (
    BackendCapability,
    BackendKind,
    ClassificationResult,
    DiagramType,
    RenderResult,
    ResultKind,
    Theme,
)
from dp.sanitizer import SvgSanitizer

if TYPE_CHECKING:
    import httpx
    from loguru import Logger

    from dp.config import Configuration
    from dp.ratelimit import RateLimiter

__all__ = ["BackendRegistry", "create_backend"]


def create_backend(
    kind: BackendKind,
    config: Configuration,
    *,
    limiter: RateLimiter | None = None,
    sanitizer: SvgSanitizer | None = None,
    workspace_root: Path | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    logger: Logger | None = None,
) -> Backend:
    """Instantiate the backend for ``kind``."""
    match kind:
        case BackendKind.LOCAL:
            return LocalBackend(config, workspace_root=workspace_root, logger=logger)
        case BackendKind.REMOTE:
            return RemoteBackend(
                config, limiter=limiter, sanitizer=sanitizer, transport=transport, logger=logger
            )
        case BackendKind.CONTAINER:
            return ContainerBackend(config, workspace_root=workspace_root, logger=logger)
        case _:
            assert_never(kind)


class BackendRegistry:
    """Holds one instance of each backend for a session."""

    def __init__(
        self,
        backends: Mapping[BackendKind, Backend],
        *,
        sanitizer: SvgSanitizer | None = None,
        logger: Logger | None = None,
    ) -> None:
        self._backends = dict(backends)
        self._logger = logger or default_logger
        self._sanitizer = sanitizer or SvgSanitizer(logger=self._logger)
        self._capabilities: dict[BackendKind, BackendCapability] = {}

    @classmethod
    def from_config(
        cls,
        config: Configuration,
        *,
        limiter: RateLimiter | None = None,
        sanitizer: SvgSanitizer | None = None,
        workspace_root: Path | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Logger | None = None,
    ) -> BackendRegistry:
        sanitizer = sanitizer or SvgSanitizer(logger=logger)
        backends = {
            kind: create_backend(
                kind,
                config,
                limiter=limiter,
                sanitizer=sanitizer,
                workspace_root=workspace_root,
                transport=transport,
                logger=logger,
            )
            for kind in BackendKind
        }
        return cls(backends, sanitizer=sanitizer, logger=logger)

    def get(self, kind: BackendKind) -> Backend:
        try:
            return self._backends[kind]
        except KeyError:
            raise BackendUnavailable(str(kind), "any", "backend not registered") from None

    async def probe(self, kind: BackendKind, *, refresh: bool = False) -> BackendCapability:
        """Probe a backend, reusing the session's earlier answer unless ``refresh``."""
        if refresh or kind not in self._capabilities:
            if kind not in self._backends:
                return BackendCapability(kind, available=False, diagnostic="backend not registered")
            capability = await self.get(kind).probe()
            self._capabilities[kind] = capability
            self._logger.debug(
                str(
                    LogEntry(
                        "registry.probe",
                        backend=str(kind),
                        available=capability.available,
                        types=sorted(str(t) for t in capability.supported_types),
                        diagnostic=capability.diagnostic,
                    )
                )
            )
        return self._capabilities[kind]

    async def probe_all(self, *, refresh: bool = False) -> dict[BackendKind, BackendCapability]:
        return {kind: await self.probe(kind, refresh=refresh) for kind in self._backends}

    def resolve_type(self, classification: ClassificationResult, text: str) -> DiagramType | None:
        """Fill in an absent diagram type using the selected backend's detection."""
        if classification.diagram_type is not None:
            return classification.diagram_type
        backend = self._backends.get(classification.backend_kind)
        return backend.detect_type(text) if backend else None

    def is_theme_aware(self, kind: BackendKind, diagram_type: DiagramType) -> bool:
        backend = self._backends.get(kind)
        return backend.is_theme_aware(diagram_type) if backend else False

    async def render(
        self,
        kind: BackendKind,
        content: str,
        diagram_type: DiagramType,
        theme: Theme = Theme.LIGHT,
        *,
        source_path: str | None = None,
    ) -> RenderResult:
        """Render with the backend for ``kind``. Never raises ``DiagramError``."""
        try:
            capability = await self.probe(kind)
            if not capability.supports(diagram_type):
                raise BackendUnavailable(str(kind), str(diagram_type), capability.diagnostic)
            result = await self.get(kind).render(
                content, diagram_type, theme, source_path=source_path
            )
        except DiagramError as e:
            self._logger.warning(
                str(
                    LogEntry(
                        "registry.renderFailed",
                        backend=str(kind),
                        diagramType=str(diagram_type),
                        errorType=type(e).__name__,
                        error=str(e),
                    )
                )
            )
            return RenderResult.error(str(e))

        if result.kind is ResultKind.SVG:
            clean = self._sanitizer.sanitize(result.payload)
            if not clean:
                return RenderResult.error("Rendered SVG could not be parsed and was discarded")
            return RenderResult.svg(clean)
        return result

    async def dispose(self) -> None:
        for backend in self._backends.values():
            await backend.dispose()
        self._capabilities.clear()
