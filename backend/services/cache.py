"""
In-memory TTL cache for upstream snapshots.

Entries are plain ``(value, stored_at)`` pairs.  Nothing is invalidated
except by age: a lookup older than the TTL is a miss and the entry is
dropped, and every write sweeps out all other expired entries.
Concurrent writers race as last-writer-wins; every entry is an idempotent
snapshot of the same upstream data.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional


@dataclass
class CacheEntry:
    value: Any
    stored_at: float


class TTLCache:
    """Time-stamped snapshot cache with a single TTL."""

    def __init__(self, ttl_sec: float, clock: Callable[[], float] = time.time):
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry] = {}

    def get(self, key: Hashable) -> Optional[CacheEntry]:
        """Return the live entry for ``key`` or None."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= self.ttl_sec:
            self._entries.pop(key, None)
            return None
        return entry

    def set(self, key: Hashable, value: Any) -> CacheEntry:
        now = self._clock()
        self._sweep(now)
        entry = CacheEntry(value=value, stored_at=now)
        self._entries[key] = entry
        return entry

    def _sweep(self, now: float) -> None:
        for k, e in list(self._entries.items()):
            if now - e.stored_at >= self.ttl_sec:
                self._entries.pop(k, None)

    def __len__(self) -> int:
        return len(self._entries)
