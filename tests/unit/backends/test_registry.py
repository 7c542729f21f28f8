"""Unit tests for backend dispatch, capability checks and error conversion."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from dp.backends.base import Backend
from dp.backends.container import ContainerBackend
from dp.backends.local import LocalBackend
from dp.backends.registry import BackendRegistry, create_backend
from dp.backends.remote import RemoteBackend
from dp.config import Configuration
from dp.errors import ClientError, ServerError
from dp.models import (
    BackendCapability,
    BackendKind,
    ClassificationResult,
    DiagramType,
    RenderResult,
    ResultKind,
    Theme,
)
from dp.ratelimit import RateLimiter


class StubBackend(Backend):
    """Backend with scripted probe and render outcomes."""

    kind = BackendKind.LOCAL

    def __init__(
        self,
        *,
        supported: frozenset[DiagramType] = frozenset({DiagramType.PLANTUML}),
        outcome: RenderResult | Exception | None = None,
    ) -> None:
        super().__init__(Configuration())
        self.supported = supported
        self.outcome = outcome or RenderResult.svg("<svg><g/></svg>")
        self.probes = 0
        self.renders: list[tuple[str, DiagramType, Theme, str | None]] = []
        self.disposed = False

    async def probe(self) -> BackendCapability:
        self.probes += 1
        return BackendCapability(
            self.kind,
            available=bool(self.supported),
            supported_types=self.supported,
            diagnostic=None if self.supported else "tool missing",
        )

    async def render(self, content, diagram_type, theme=Theme.LIGHT, *, source_path=None):
        self.renders.append((content, diagram_type, theme, source_path))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome

    def detect_type(self, text: str) -> DiagramType | None:
        return DiagramType.PLANTUML

    async def dispose(self) -> None:
        self.disposed = True


@pytest.mark.unit
@pytest.mark.backends
def test_create_backend_per_kind() -> None:
    config = Configuration()
    assert isinstance(create_backend(BackendKind.LOCAL, config), LocalBackend)
    assert isinstance(create_backend(BackendKind.REMOTE, config), RemoteBackend)
    assert isinstance(create_backend(BackendKind.CONTAINER, config), ContainerBackend)


@pytest.mark.unit
@pytest.mark.backends
def test_unavailable_backend_fails_without_fallback() -> None:
    """A missing local tool never silently falls back to the remote service."""
    remote_calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        remote_calls.append(request)
        return httpx.Response(200, text="<svg/>")

    local = StubBackend(supported=frozenset())
    remote = RemoteBackend(
        Configuration(), limiter=RateLimiter(0), transport=httpx.MockTransport(handler)
    )
    registry = BackendRegistry({BackendKind.LOCAL: local, BackendKind.REMOTE: remote})

    result = asyncio.run(registry.render(BackendKind.LOCAL, "@startuml\n@enduml", DiagramType.PLANTUML))

    assert result.kind is ResultKind.ERROR
    assert result.message == "Backend 'local' cannot render 'plantuml': tool missing"
    assert local.renders == []
    assert remote_calls == []


@pytest.mark.unit
@pytest.mark.backends
def test_unsupported_type_on_available_backend() -> None:
    registry = BackendRegistry({BackendKind.LOCAL: StubBackend()})

    result = asyncio.run(registry.render(BackendKind.LOCAL, "pie", DiagramType.MERMAID))

    assert result.is_error
    assert "cannot render 'mermaid'" in result.message


@pytest.mark.unit
@pytest.mark.backends
@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ClientError("HTTP 400: Syntax error", status=400), "HTTP 400: Syntax error"),
        (ServerError("HTTP 502: bad gateway", status=502), "HTTP 502: bad gateway. Please try again later."),
    ],
)
def test_backend_errors_become_error_results(error: Exception, expected: str) -> None:
    registry = BackendRegistry({BackendKind.LOCAL: StubBackend(outcome=error)})

    result = asyncio.run(registry.render(BackendKind.LOCAL, "x", DiagramType.PLANTUML))

    assert result == RenderResult.error(expected)


@pytest.mark.unit
@pytest.mark.backends
def test_svg_results_are_sanitized() -> None:
    dirty = RenderResult.svg('<svg><script>alert(1)</script><a href="javascript:x()">l</a></svg>')
    registry = BackendRegistry({BackendKind.LOCAL: StubBackend(outcome=dirty)})

    result = asyncio.run(registry.render(BackendKind.LOCAL, "x", DiagramType.PLANTUML))

    assert result.kind is ResultKind.SVG
    assert "script" not in result.payload
    assert "javascript" not in result.payload


@pytest.mark.unit
@pytest.mark.backends
def test_unparseable_svg_becomes_error() -> None:
    registry = BackendRegistry(
        {BackendKind.LOCAL: StubBackend(outcome=RenderResult.svg("<svg><g></svg>"))}
    )

    result = asyncio.run(registry.render(BackendKind.LOCAL, "x", DiagramType.PLANTUML))

    assert result.is_error
    assert "could not be parsed" in result.message


@pytest.mark.unit
@pytest.mark.backends
def test_png_results_pass_through() -> None:
    png = RenderResult.png("data:image/png;base64,AAAA")
    registry = BackendRegistry({BackendKind.LOCAL: StubBackend(outcome=png)})

    assert asyncio.run(registry.render(BackendKind.LOCAL, "x", DiagramType.PLANTUML)) == png


@pytest.mark.unit
@pytest.mark.backends
def test_probe_is_cached_per_session() -> None:
    stub = StubBackend()
    registry = BackendRegistry({BackendKind.LOCAL: stub})

    async def scenario() -> None:
        await registry.render(BackendKind.LOCAL, "a", DiagramType.PLANTUML)
        await registry.render(BackendKind.LOCAL, "b", DiagramType.PLANTUML)
        assert stub.probes == 1
        await registry.probe(BackendKind.LOCAL, refresh=True)
        assert stub.probes == 2

    asyncio.run(scenario())


@pytest.mark.unit
@pytest.mark.backends
def test_unregistered_kind_is_unavailable() -> None:
    registry = BackendRegistry({BackendKind.LOCAL: StubBackend()})

    capability = asyncio.run(registry.probe(BackendKind.CONTAINER))
    result = asyncio.run(registry.render(BackendKind.CONTAINER, "x", DiagramType.STRUCTURIZR))

    assert not capability.available
    assert result.is_error


@pytest.mark.unit
@pytest.mark.backends
def test_render_forwards_theme_and_source_path() -> None:
    stub = StubBackend()
    registry = BackendRegistry({BackendKind.LOCAL: stub})

    asyncio.run(
        registry.render(
            BackendKind.LOCAL, "x", DiagramType.PLANTUML, Theme.DARK, source_path="docs/a.puml"
        )
    )

    assert stub.renders == [("x", DiagramType.PLANTUML, Theme.DARK, "docs/a.puml")]


@pytest.mark.unit
@pytest.mark.backends
def test_resolve_type_uses_backend_detection_only_when_absent() -> None:
    registry = BackendRegistry({BackendKind.LOCAL: StubBackend()})

    assert (
        registry.resolve_type(ClassificationResult(BackendKind.LOCAL, DiagramType.MERMAID), "x")
        is DiagramType.MERMAID
    )
    assert (
        registry.resolve_type(ClassificationResult(BackendKind.LOCAL), "x") is DiagramType.PLANTUML
    )
    assert registry.resolve_type(ClassificationResult(BackendKind.REMOTE), "x") is None


@pytest.mark.unit
@pytest.mark.backends
def test_dispose_reaches_every_backend() -> None:
    stub = StubBackend()
    registry = BackendRegistry({BackendKind.LOCAL: stub})

    asyncio.run(registry.dispose())

    assert stub.disposed
