"""Live preview controller.

States: idle -> scheduled -> rendering -> displayed | errored

Displayed and errored are resting states: the last outcome stays on screen
and the controller is idle in every other respect. The next edit or theme
change moves it to scheduled, and ``dispose()`` returns it to idle.

Edits and theme changes (re)start a debounce timer; a new event while the
timer is pending replaces it. When the timer fires the controller issues a
new sequence number and starts the render as its own task, so later edits
never cancel in-flight subprocess or HTTP work. A result is only emitted if
its sequence number is still the latest one; anything older is discarded.

The controller never raises out of its event handlers: failures settle into
an ``error`` event.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import TYPE_CHECKING

from dp.cache import cache_key, themed_key
from dp.classifier import classify
from dp.errors import ClassificationAmbiguous
from dp.logging import LogEntry, LogSpan
from dp.models import (
    ClassificationResult,
    DiagramSource,
    PreviewEvent,
    PreviewState,
    RenderRequest,
    RenderResult,
    ResultKind,
    Theme,
)

if TYPE_CHECKING:
    from dp.session import Session

__all__ = ["Chooser", "ControllerState", "Emit", "PreviewController"]

Emit = Callable[[PreviewEvent], Awaitable[None] | None]
Chooser = Callable[[DiagramSource], Awaitable[ClassificationResult | None]]


class ControllerState(StrEnum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    RENDERING = "rendering"
    DISPLAYED = "displayed"
    ERRORED = "errored"


class PreviewController:
    """Debounced, staleness-safe renderer for one preview surface.

    Args:
        session: Shared components (config, cache, registry)
        emit: Receives every PreviewEvent; may be sync or async
        chooser: Asked for a classification when nothing matches; the answer
            applies to that render only
        theme: Initial theme
    """

    def __init__(
        self,
        session: Session,
        emit: Emit,
        *,
        chooser: Chooser | None = None,
        theme: Theme = Theme.LIGHT,
    ) -> None:
        self.session = session
        self.theme = theme
        self.state = ControllerState.IDLE
        self._emit_callback = emit
        self._chooser = chooser
        self._logger = session.logger
        self._source: DiagramSource | None = None
        self._sequence = 0
        self._timer: asyncio.Task[None] | None = None
        self._in_flight: set[asyncio.Task[None]] = set()
        self._disposed = False

    @property
    def sequence(self) -> int:
        """Latest issued request number."""
        return self._sequence

    def on_source_changed(self, path: str, text: str) -> None:
        """Record the new source and (re)start the debounce timer."""
        if self._disposed:
            return
        self._source = DiagramSource(path, text)
        self._schedule()

    def on_theme_changed(self, theme: Theme) -> None:
        """Switch theme and re-render the current source, if any."""
        if self._disposed or theme == self.theme:
            return
        self.theme = theme
        if self._source is not None:
            self._schedule()

    def _schedule(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self.state = ControllerState.SCHEDULED
        self._timer = asyncio.get_running_loop().create_task(self._debounce())

    async def _debounce(self) -> None:
        await asyncio.sleep(self.session.config.debounce_ms / 1000)
        self._timer = None
        self.render_now()

    def render_now(self) -> asyncio.Task[None] | None:
        """Start a render of the current source immediately, skipping the debounce."""
        if self._disposed or self._source is None:
            return None
        self._sequence += 1
        task = asyncio.get_running_loop().create_task(
            self._execute(self._sequence, self._source, self.theme)
        )
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def flush(self) -> None:
        """Wait until the pending timer and all in-flight renders have settled."""
        while True:
            pending = [t for t in (self._timer, *self._in_flight) if t is not None and not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _execute(self, sequence: int, source: DiagramSource, theme: Theme) -> None:
        self.state = ControllerState.RENDERING
        await self._emit(PreviewEvent(PreviewState.LOADING, loading=True))

        try:
            result = await self.resolve(source, theme)
        except Exception as e:
            self._logger.exception(f"Unexpected failure rendering {source.path}")
            result = RenderResult.error(f"Unexpected error: {e}")

        if sequence != self._sequence or self._disposed:
            self._logger.debug(
                str(
                    LogEntry(
                        "preview.stale",
                        path=source.path,
                        sequence=sequence,
                        latest=self._sequence,
                    )
                )
            )
            return

        await self._emit(PreviewEvent(PreviewState.LOADING, loading=False))
        if result.is_error:
            self.state = ControllerState.ERRORED
            await self._emit(PreviewEvent(PreviewState.ERROR, message=result.message))
        else:
            self.state = ControllerState.DISPLAYED
            await self._emit(
                PreviewEvent(PreviewState.RESULT, format=result.kind, content=result.payload)
            )

    async def resolve(self, source: DiagramSource, theme: Theme) -> RenderResult:
        """Classify, consult the cache, and render on a miss."""
        session = self.session
        with LogSpan(span="preview.render", logger=self._logger, path=source.path) as span:
            classification = classify(source.path, source.text, session.config)
            if classification is None and self._chooser is not None:
                classification = await self._chooser(source)
                span.add(manualSelection=classification is not None)
            if classification is None:
                return RenderResult.error(str(ClassificationAmbiguous(source.path)))

            diagram_type = session.registry.resolve_type(classification, source.text)
            if diagram_type is None:
                return RenderResult.error(str(ClassificationAmbiguous(source.path)))
            span.add(backend=str(classification.backend_kind), diagramType=str(diagram_type))

            key = cache_key(source.path, source.text)
            if session.registry.is_theme_aware(classification.backend_kind, diagram_type):
                key = themed_key(key, theme)

            request = RenderRequest(source.text, diagram_type, theme, key)
            cached = session.cache.get(request.cache_key)
            if cached is not None:
                span.add(cache="hit")
                return cached
            span.add(cache="miss")

            result = await session.registry.render(
                classification.backend_kind,
                request.content,
                request.diagram_type,
                request.theme,
                source_path=source.path,
            )
            session.cache.set(request.cache_key, result)
            span.add(resultKind=str(result.kind))
            if result.kind is ResultKind.ERROR:
                span.add(message=result.message)
            return result

    async def _emit(self, event: PreviewEvent) -> None:
        try:
            outcome = self._emit_callback(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            self._logger.exception("Preview event handler failed")

    async def dispose(self) -> None:
        """Tear down: stop the timer, cancel in-flight renders, dispose the session.

        Cancelled local tools and pipeline scripts are killed, not left running.
        """
        self._disposed = True
        if self._timer is not None:
            self._timer.cancel()
        for task in list(self._in_flight):
            task.cancel()
        await asyncio.gather(
            *(t for t in (self._timer, *self._in_flight) if t is not None),
            return_exceptions=True,
        )
        self._timer = None
        self._in_flight.clear()
        await self.session.dispose()
        self.state = ControllerState.IDLE
