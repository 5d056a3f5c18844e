"""Two-tier draft cache.

The memory tier is a ``cachetools.TLRUCache`` whose per-entry lifetime is
the shorter of the cache TTL and the entry's own ``expires_at``. Stale
entries are dropped lazily on access and swept in bulk whenever the
cache grows past a size bound. The persistent tier is any
``DraftCacheTier``; its failures are logged and never fail a lookup or
a write.
"""

import logging
import time
from collections.abc import Callable
from typing import Any

from cachetools import TLRUCache

from replywise.core.exceptions import StoreError
from replywise.db.draft_store import DraftCacheTier
from replywise.models.draft import DraftCacheEntry

logger = logging.getLogger(__name__)

DEFAULT_TTL = 24 * 60 * 60
DEFAULT_MAXSIZE = 10_000
DEFAULT_SWEEP_THRESHOLD = 100

CacheKey = tuple[str, str]


class MemoryDraftCache:
    """In-memory draft tier with hit/miss statistics."""

    def __init__(
        self,
        ttl: float = DEFAULT_TTL,
        maxsize: int = DEFAULT_MAXSIZE,
        sweep_threshold: int = DEFAULT_SWEEP_THRESHOLD,
        timer: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the memory tier.

        Args:
            ttl: Maximum seconds an entry stays cached.
            maxsize: Maximum number of entries (least recently used evicted).
            sweep_threshold: Size above which expired entries are swept on write.
            timer: Wall-clock source in epoch seconds, injectable for tests.
        """
        self._ttl = ttl
        self._sweep_threshold = sweep_threshold
        self._cache: TLRUCache[CacheKey, DraftCacheEntry] = TLRUCache(
            maxsize=maxsize, ttu=self._time_to_use, timer=timer
        )
        self._hits = 0
        self._misses = 0

    def _time_to_use(self, key: CacheKey, entry: DraftCacheEntry, now: float) -> float:
        return min(now + self._ttl, entry.expires_at.timestamp())

    @property
    def hits(self) -> int:
        """Return the number of cache hits."""
        return self._hits

    @property
    def misses(self) -> int:
        """Return the number of cache misses."""
        return self._misses

    @property
    def size(self) -> int:
        """Return the current number of cached entries, expired ones included."""
        return len(self._cache)

    async def get(self, email_id: str, user_id: str) -> DraftCacheEntry | None:
        entry = self._cache.get((email_id, user_id))
        if entry is None:
            self._misses += 1
            return None
        self._hits += 1
        return entry

    async def put(self, entry: DraftCacheEntry) -> None:
        self._cache[entry.cache_key] = entry
        if len(self._cache) > self._sweep_threshold:
            self.sweep()

    def sweep(self) -> int:
        """Remove expired entries now; returns how many were removed."""
        removed = len(self._cache.expire())
        if removed:
            logger.debug("Swept %d expired draft(s) from memory cache", removed)
        return removed

    def invalidate(self, email_id: str, user_id: str) -> bool:
        """Drop one entry; returns True if it was cached."""
        return self._cache.pop((email_id, user_id), None) is not None

    def clear(self) -> None:
        """Clear all entries from the cache."""
        self._cache.clear()

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics.

        Returns:
            Dict with hits, misses, size, hit_rate.
        """
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "size": len(self._cache),
            "hit_rate": self._hits / total if total > 0 else 0.0,
        }


class TwoTierDraftCache:
    """Memory tier first, persistent tier second; writes go to both.

    The memory tier is authoritative for availability and the persistent
    tier for durability: a persistent hit is copied into memory, and a
    persistent failure degrades to memory-only behavior.
    """

    def __init__(self, memory: MemoryDraftCache, persistent: DraftCacheTier | None = None) -> None:
        self.memory = memory
        self._persistent = persistent

    async def get(self, email_id: str, user_id: str) -> DraftCacheEntry | None:
        entry = await self.memory.get(email_id, user_id)
        if entry is not None:
            return entry
        if self._persistent is None:
            return None

        try:
            entry = await self._persistent.get(email_id, user_id)
        except StoreError as e:
            logger.warning(
                "Persistent draft cache read failed: %s",
                e.message,
                extra={"email_id": email_id, "user_id": user_id},
            )
            return None

        if entry is None or entry.is_expired():
            return None
        await self.memory.put(entry)
        return entry

    async def put(self, entry: DraftCacheEntry) -> None:
        await self.memory.put(entry)
        if self._persistent is None:
            return
        try:
            await self._persistent.put(entry)
        except StoreError as e:
            logger.warning(
                "Persistent draft cache write failed: %s",
                e.message,
                extra={"email_id": entry.email_id, "user_id": entry.user_id},
            )
