"""
CacheStore - In-memory store of the last good payload per upstream key.

Features:
- One entry per distinct upstream + parameter combination
- Entries are replaced whole on every successful fetch, never merged
- Optional size bound with oldest-first eviction that skips pinned keys
- Safe for concurrent async readers and writers
"""

import asyncio
import copy
import hashlib
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from loguru import logger


@dataclass(frozen=True)
class CacheEntry:
    """Payload from the last successful live fetch for a key."""

    key: str
    payload: Any
    stored_at: datetime

    def age_seconds(self, now: datetime) -> float:
        """Seconds elapsed since the payload was stored."""
        return (now - self.stored_at).total_seconds()


class CacheStore:
    """
    Async-compatible store of last-known-good upstream payloads.

    The store knows nothing about freshness; callers decide what an entry's
    age means.

    Usage:
        cache = CacheStore()

        entry = await cache.get("calendar:locale=sl")
        if entry is None:
            payload = await fetch_calendar()
            await cache.put("calendar:locale=sl", payload, clock.now())
    """

    def __init__(self, max_size: int | None = None, debug: bool = False):
        self._memory: dict[str, CacheEntry] = {}
        self._max_size = max_size
        self._debug = debug
        self._lock = asyncio.Lock()
        self._pinned: Counter[str] = Counter()
        self._stats = CacheStats()

    @staticmethod
    def generate_key(upstream: str, params: dict[str, Any] | None = None) -> str:
        """Generate a cache key from an upstream name and request params."""
        if params:
            parts = [
                f"{k}={v}" for k, v in sorted(params.items()) if v is not None
            ]
            full_key = ":".join([upstream, *parts])
        else:
            full_key = upstream

        # Hash long keys
        if len(full_key) > 200:
            hash_val = hashlib.md5(full_key.encode()).hexdigest()[:16]
            return f"{upstream}:{hash_val}"

        return full_key

    async def get(self, key: str) -> CacheEntry | None:
        """Return the current entry for key, or None."""
        async with self._lock:
            entry = self._memory.get(key)

            if entry is None:
                self._stats.misses += 1
                self._log(f"MISS: {key[:50]}")
            else:
                self._stats.hits += 1
                self._log(f"HIT: {key[:50]}")

            return entry

    async def put(self, key: str, payload: Any, now: datetime) -> CacheEntry:
        """Replace the entry for key with a freshly fetched payload."""
        entry = CacheEntry(key=key, payload=copy.deepcopy(payload), stored_at=now)

        async with self._lock:
            if (
                self._max_size is not None
                and len(self._memory) >= self._max_size
                and key not in self._memory
            ):
                self._evict_oldest()

            self._memory[key] = entry
            self._stats.writes += 1
            self._log(f"SET: {key[:50]}")

        return entry

    async def delete(self, key: str) -> bool:
        """Drop one entry; True when it existed."""
        async with self._lock:
            removed = self._memory.pop(key, None) is not None
        if removed:
            self._log(f"DELETE: {key[:50]}")
        return removed

    async def invalidate(self, prefix: str) -> int:
        """
        Drop every entry whose key starts with ``prefix``.

        ``invalidate("calendar:")`` forgets all calendar variants at once.

        Returns:
            How many entries were dropped
        """
        async with self._lock:
            stale = [k for k in self._memory if k.startswith(prefix)]
            for key in stale:
                self._memory.pop(key)
        if stale:
            self._log(f"INVALIDATE: {len(stale)} under '{prefix}'")
        return len(stale)

    async def clear(self) -> None:
        async with self._lock:
            dropped = len(self._memory)
            self._memory = {}
        self._log(f"CLEAR: {dropped} dropped")

    def pin(self, key: str) -> None:
        """Protect key from eviction while a fetch for it is in flight."""
        self._pinned[key] += 1

    def unpin(self, key: str) -> None:
        """Release one pin taken with pin()."""
        self._pinned[key] -= 1
        if self._pinned[key] <= 0:
            del self._pinned[key]

    def _evict_oldest(self) -> None:
        """Evict the oldest unpinned entry. Caller holds the lock."""
        candidates = [k for k in self._memory if k not in self._pinned]
        if not candidates:
            return

        oldest_key = min(candidates, key=lambda k: self._memory[k].stored_at)
        del self._memory[oldest_key]
        self._stats.evictions += 1
        self._log(f"EVICT: {oldest_key[:50]}")

    def __len__(self) -> int:
        return len(self._memory)

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        self._stats.size = len(self._memory)
        self._stats.max_size = self._max_size
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheStore] {message}")


@dataclass
class CacheStats:
    """Counters reported by the health endpoint."""

    hits: int = 0
    misses: int = 0
    writes: int = 0
    evictions: int = 0
    size: int = 0
    max_size: int | None = None

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0

    def to_dict(self) -> dict[str, Any]:
        stats = asdict(self)
        stats["hit_rate"] = round(self.hit_rate, 4)
        return stats
