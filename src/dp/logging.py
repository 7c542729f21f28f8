"""Structured logging for the rendering engine.

Spans are emitted through a loguru logger as one JSON line each. Every
component accepts an optional ``logger`` so that sessions can bind their own
context (or tests can capture output) without touching global state.
"""

from __future__ import annotations

import json
import sys
import time
from typing import TYPE_CHECKING, Any

from loguru import logger as default_logger

if TYPE_CHECKING:
    from types import TracebackType

    from loguru import Logger

__all__ = ["LogEntry", "LogSpan", "configure_logging", "default_logger"]

# Longest attribute value kept verbatim in a log line
MAX_VALUE_LENGTH = 200


def _compact(value: Any) -> Any:
    """Truncate long string values so URLs and payloads don't flood the log."""
    if isinstance(value, str) and len(value) > MAX_VALUE_LENGTH:
        return value[:MAX_VALUE_LENGTH] + "..."
    return value


class LogEntry:
    """A single structured log record rendered as compact JSON."""

    def __init__(self, span: str, **attrs: Any) -> None:
        self.span = span
        self.attrs = attrs

    def __str__(self) -> str:
        entry = {"span": self.span, **{k: _compact(v) for k, v in self.attrs.items()}}
        return json.dumps(entry, default=str, ensure_ascii=False)


class LogSpan:
    """A structured logging span with timing and attributes.

    Example:
        >>> with LogSpan(span="remote.render", diagramType="plantuml") as span:
        ...     svg = await fetch()
        ...     span.add(status=200, responseLen=len(svg))
    """

    def __init__(
        self,
        span: str,
        *,
        logger: Logger | None = None,
        level: str = "DEBUG",
        **attrs: Any,
    ) -> None:
        """Initialize a log span.

        Args:
            span: Span name (e.g., "cache.get")
            logger: loguru logger to emit through (default: global loguru logger)
            level: Level used when the span completes without error
            **attrs: Initial attributes to log
        """
        self.name = span
        self.attrs: dict[str, Any] = dict(attrs)
        self.level = level
        self.error: str | None = None
        self._logger = logger or default_logger
        self._start = time.perf_counter()

    def add(self, key: str | None = None, value: Any = None, **attrs: Any) -> LogSpan:
        """Add attributes to the span.

        Supports both positional and keyword argument styles.

        Returns:
            Self for method chaining
        """
        if key is not None:
            self.attrs[key] = value
        self.attrs.update(attrs)
        return self

    def __enter__(self) -> LogSpan:
        self._start = time.perf_counter()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc is not None:
            self.error = f"{type(exc).__name__}: {exc}"
        self._emit()

    def _emit(self) -> None:
        elapsed_ms = round((time.perf_counter() - self._start) * 1000, 2)
        attrs = {**self.attrs, "elapsed_ms": elapsed_ms}
        level = self.level
        if self.error:
            attrs["error"] = self.error
            level = "WARNING"
        self._logger.log(level, str(LogEntry(self.name, **attrs)))


def _stderr_sink(message: Any) -> None:
    """Write to whatever sys.stderr is at emit time (CLI runners swap it)."""
    sys.stderr.write(str(message))


def configure_logging(level: str = "INFO", *, sink: Any = None) -> None:
    """Route loguru output to a single sink at the given level.

    Args:
        level: Minimum level to emit (DEBUG, INFO, WARNING, ERROR)
        sink: Destination (default: stderr, stdout is left to the CLI output)
    """
    default_logger.remove()
    default_logger.add(
        sink or _stderr_sink,
        level=level,
        format="<dim>{time:HH:mm:ss}</dim> <level>{level: <7}</level> {message}",
    )
