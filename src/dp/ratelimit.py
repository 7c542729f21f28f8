"""Outbound rate limiting for the remote backend.

Operations wrapped by one limiter start at least ``interval_ms`` apart.
Callers queue on the lock instead of being rejected; only the spacing wait
is serialized, the operations themselves may overlap once started.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

__all__ = ["RateLimiter"]

T = TypeVar("T")


class RateLimiter:
    """Spaces the start of throttled operations by a fixed interval."""

    def __init__(self, interval_ms: int) -> None:
        if interval_ms < 0:
            raise ValueError(f"interval_ms must be >= 0, got {interval_ms}")
        self.interval = interval_ms / 1000
        self._lock = asyncio.Lock()
        self._last_start: float | None = None

    async def throttle(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Wait for this caller's slot, then run ``operation``."""
        async with self._lock:
            if self._last_start is not None:
                wait = self._last_start + self.interval - time.monotonic()
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_start = time.monotonic()
        return await operation()
