"""Content-addressed LRU cache of render results.

Keys are ``path:sha256(content)``, so a renamed file misses (and re-renders)
while an edit that restores earlier content hits again. Error results are
never stored; a transient failure is retried on the next edit.
"""

from __future__ import annotations

import hashlib
import itertools
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING

from dp.logging import LogEntry, default_logger
from dp.models import RenderResult, Theme

if TYPE_CHECKING:
    from loguru import Logger

__all__ = ["CacheEntry", "RenderCache", "cache_key", "themed_key"]


def cache_key(path: str, content: str) -> str:
    """Build the cache key for a source file's current content."""
    digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
    return f"{path}:{digest}"


def themed_key(key: str, theme: Theme) -> str:
    """Suffix a key with the theme for renders whose output depends on it."""
    return f"{key}#{theme.value}"


@dataclass
class CacheEntry:
    key: str
    result: RenderResult
    last_accessed: int


class RenderCache:
    """Strict LRU store with a fixed capacity.

    Both ``get`` hits and ``set`` refresh recency. Inserting past capacity
    evicts exactly the least recently used entry.
    """

    def __init__(self, capacity: int = 50, *, logger: Logger | None = None) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._clock = itertools.count()
        self._logger = logger or default_logger
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str) -> RenderResult | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        entry.last_accessed = next(self._clock)
        self._entries.move_to_end(key)
        self.hits += 1
        return entry.result

    def set(self, key: str, result: RenderResult) -> None:
        """Store a result. Error results are ignored."""
        if result.is_error:
            self._logger.debug(str(LogEntry("cache.skipError", key=key)))
            return
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = CacheEntry(key, result, next(self._clock))
        if len(self._entries) > self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            self._logger.debug(str(LogEntry("cache.evict", key=evicted)))

    def discard(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def stats(self) -> dict[str, int]:
        return {
            "size": len(self._entries),
            "capacity": self.capacity,
            "hits": self.hits,
            "misses": self.misses,
        }
