"""Tests for the two-tier draft cache."""

from datetime import UTC, datetime, timedelta

import pytest

from replywise.services.draft_cache import MemoryDraftCache, TwoTierDraftCache
from tests.conftest import FakeCacheTier, make_entry


class FakeTimer:
    """Controllable wall clock in epoch seconds."""

    def __init__(self) -> None:
        self.now = datetime.now(UTC).timestamp()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestMemoryDraftCache:
    """Tests for the in-memory tier."""

    @pytest.mark.asyncio
    async def test_hit_and_miss_stats(self):
        """Hits and misses are counted and reported."""
        cache = MemoryDraftCache()
        await cache.put(make_entry())

        assert await cache.get("msg-1", "user-1") is not None
        assert await cache.get("msg-2", "user-1") is None

        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["size"] == 1
        assert stats["hit_rate"] == 0.5

    @pytest.mark.asyncio
    async def test_keys_are_per_user(self):
        """The same email id for another user is a different entry."""
        cache = MemoryDraftCache()
        await cache.put(make_entry(user_id="user-1"))
        assert await cache.get("msg-1", "user-2") is None

    @pytest.mark.asyncio
    async def test_cache_ttl_expiry(self):
        """Entries disappear after the cache TTL."""
        timer = FakeTimer()
        cache = MemoryDraftCache(ttl=60, timer=timer)
        await cache.put(make_entry())

        timer.advance(61)

        assert await cache.get("msg-1", "user-1") is None

    @pytest.mark.asyncio
    async def test_entry_expiry_shorter_than_ttl(self):
        """An entry's own expiry wins when it comes first."""
        timer = FakeTimer()
        cache = MemoryDraftCache(ttl=3600, timer=timer)
        expires = datetime.fromtimestamp(timer.now, UTC) + timedelta(seconds=10)
        await cache.put(make_entry(expires_at=expires))

        timer.advance(5)
        assert await cache.get("msg-1", "user-1") is not None
        timer.advance(10)
        assert await cache.get("msg-1", "user-1") is None

    @pytest.mark.asyncio
    async def test_sweep_removes_expired(self):
        """A sweep drops expired entries in bulk."""
        timer = FakeTimer()
        cache = MemoryDraftCache(ttl=60, timer=timer)
        for i in range(3):
            await cache.put(make_entry(email_id=f"msg-{i}"))

        timer.advance(61)

        assert cache.sweep() == 3
        assert cache.size == 0

    @pytest.mark.asyncio
    async def test_write_past_threshold_sweeps(self):
        """Growing past the sweep threshold purges expired entries."""
        timer = FakeTimer()
        cache = MemoryDraftCache(ttl=60, sweep_threshold=2, timer=timer)
        await cache.put(make_entry(email_id="old-1"))
        await cache.put(make_entry(email_id="old-2"))
        timer.advance(61)

        await cache.put(make_entry(email_id="new"))

        assert cache.size == 1

    @pytest.mark.asyncio
    async def test_invalidate(self):
        """Invalidation removes exactly one entry."""
        cache = MemoryDraftCache()
        await cache.put(make_entry())

        assert cache.invalidate("msg-1", "user-1") is True
        assert cache.invalidate("msg-1", "user-1") is False


class TestTwoTierDraftCache:
    """Tests for tier fall-through."""

    @pytest.mark.asyncio
    async def test_persistent_hit_backfills_memory(self):
        """A persistent hit is copied into the memory tier."""
        persistent = FakeCacheTier()
        entry = make_entry()
        persistent.entries[entry.cache_key] = entry
        cache = TwoTierDraftCache(MemoryDraftCache(), persistent)

        assert await cache.get("msg-1", "user-1") == entry
        assert cache.memory.size == 1

    @pytest.mark.asyncio
    async def test_expired_persistent_entry_ignored(self):
        """Expired persistent entries are treated as misses."""
        persistent = FakeCacheTier()
        entry = make_entry(expires_at=datetime.now(UTC) - timedelta(minutes=1))
        persistent.entries[entry.cache_key] = entry
        cache = TwoTierDraftCache(MemoryDraftCache(), persistent)

        assert await cache.get("msg-1", "user-1") is None

    @pytest.mark.asyncio
    async def test_put_writes_both_tiers(self):
        """Writes land in memory and in the persistent tier."""
        persistent = FakeCacheTier()
        cache = TwoTierDraftCache(MemoryDraftCache(), persistent)

        await cache.put(make_entry())

        assert cache.memory.size == 1
        assert ("msg-1", "user-1") in persistent.entries

    @pytest.mark.asyncio
    async def test_persistent_failures_degrade_to_memory(self):
        """Persistent errors never fail a read or a write."""
        cache = TwoTierDraftCache(MemoryDraftCache(), FakeCacheTier(fail=True))

        assert await cache.get("msg-1", "user-1") is None
        await cache.put(make_entry())
        assert await cache.get("msg-1", "user-1") is not None
