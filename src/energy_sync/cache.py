"""ResultCache 実装"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

from .clock import Clock
from .models import CacheEntry


class _Miss:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISS"


MISS: Any = _Miss()


@dataclass
class CacheStats:
    entries: int
    hits: int
    misses: int


class ResultCache:
    """Keyed TTL cache of remote call results.

    Values are deep-copied on write and on read so callers never share
    mutable state with the cache.
    """

    def __init__(self, clock: Clock, default_ttl_ms: int = 30_000, max_ttl_ms: int = 300_000) -> None:
        self._clock = clock
        self.default_ttl_ms = default_ttl_ms
        self.max_ttl_ms = max_ttl_ms
        self._store: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0

    def ttl_for(self, ttl_ms: int | None) -> int:
        ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms
        return max(1, min(ttl, self.max_ttl_ms))

    def get(self, key: str) -> Any:
        """Return a copy of the fresh value for ``key`` or :data:`MISS`."""
        entry = self._store.get(key)
        if entry is None or entry.is_stale(self._clock.now()):
            if entry is not None:
                del self._store[key]
            self._misses += 1
            return MISS
        self._hits += 1
        return copy.deepcopy(entry.value)

    def set(self, key: str, value: Any, ttl_ms: int | None = None) -> CacheEntry:
        now = self._clock.now()
        entry = CacheEntry(
            key=key,
            value=copy.deepcopy(value),
            stored_at=now,
            expires_at=now + self.ttl_for(ttl_ms) / 1000.0,
        )
        self._store[key] = entry
        return entry

    def invalidate(self, key: str) -> bool:
        return self._store.pop(key, None) is not None

    def clear(self) -> None:
        self._store.clear()

    def __contains__(self, key: str) -> bool:
        entry = self._store.get(key)
        return entry is not None and not entry.is_stale(self._clock.now())

    def __len__(self) -> int:
        return len(self._store)

    def stats(self) -> CacheStats:
        return CacheStats(entries=len(self._store), hits=self._hits, misses=self._misses)
