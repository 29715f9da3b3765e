"""Tests for the shared key-value store."""

from unittest.mock import patch

import pytest

from deenhub.core.cache import (
    CacheManager,
    InMemoryCache,
    cache_manager,
    cached,
    invalidate_on_sync_completion,
)
from deenhub.core.config import Settings


@pytest.fixture
def cache_on():
    """Tests run with CACHE_ENABLED=false; switch reads on for these."""
    with patch("deenhub.core.cache.get_settings", return_value=Settings(cache_enabled=True)):
        yield


class TestInMemoryCache:
    @pytest.mark.asyncio
    async def test_set_get_and_stats(self):
        store = InMemoryCache()
        await store.set("k", {"v": 1})
        assert await store.get("k") == {"v": 1}
        assert await store.get("missing") is None
        stats = store.stats.snapshot()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate_percent"] == 50.0

    @pytest.mark.asyncio
    async def test_expired_entry_is_a_miss(self):
        store = InMemoryCache()
        with patch("deenhub.core.cache.time.time", return_value=100.0):
            await store.set("k", "v", ttl_seconds=10)
        with patch("deenhub.core.cache.time.time", return_value=110.0):
            assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_counter_keeps_first_expiry(self):
        store = InMemoryCache()
        with patch("deenhub.core.cache.time.time", return_value=100.0):
            assert await store.incr("c", 60) == 1
        with patch("deenhub.core.cache.time.time", return_value=130.0):
            assert await store.incr("c", 60) == 2
            assert await store.peek_counter("c") == (2, 30)
        with patch("deenhub.core.cache.time.time", return_value=160.0):
            assert await store.peek_counter("c") == (0, 0)
            assert await store.incr("c", 60) == 1

    @pytest.mark.asyncio
    async def test_delete_matching(self):
        store = InMemoryCache()
        await store.set("deenhub:gold_prices:a", 1)
        await store.set("deenhub:gold_prices:b", 2)
        await store.set("deenhub:sync_summary:c", 3)
        assert await store.delete_matching("deenhub:gold_prices") == 2
        assert await store.get("deenhub:sync_summary:c") == 3


class TestCacheManager:
    def test_generate_key(self):
        assert CacheManager.generate_key("gold_prices") == "deenhub:gold_prices"
        key = CacheManager.generate_key("gold_prices", "latest", metal="gold")
        assert key.startswith("deenhub:gold_prices:")
        assert key == CacheManager.generate_key("gold_prices", "latest", metal="gold")
        assert key != CacheManager.generate_key("gold_prices", "latest", metal="silver")

    @pytest.mark.asyncio
    async def test_initialize_without_redis_uses_memory(self):
        manager = CacheManager()
        await manager.initialize()
        assert manager.backend == "memory"
        assert manager.get_metrics()["backend"] == "memory"

    @pytest.mark.asyncio
    async def test_counters_ignore_cache_toggle(self):
        manager = CacheManager()
        await manager.set("k", "v")
        assert await manager.get("k") is None
        assert await manager.incr("c", 60) == 1


@pytest.mark.usefixtures("cache_on")
class TestCachedDecorator:
    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(self):
        calls = []

        @cached("gold_prices")
        async def latest(metal=None):
            calls.append(metal)
            return {"metal": metal}

        assert await latest(metal="gold") == {"metal": "gold"}
        assert await latest(metal="gold") == {"metal": "gold"}
        assert await latest(metal="silver") == {"metal": "silver"}
        assert calls == ["gold", "silver"]

    @pytest.mark.asyncio
    async def test_sync_completion_invalidates(self):
        calls = []

        @cached("gold_prices")
        async def latest():
            calls.append(1)
            return {"ok": True}

        await latest()
        await invalidate_on_sync_completion("gold-prices")
        await latest()
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_unrelated_sync_keeps_entries(self):
        await cache_manager.set(CacheManager.generate_key("gold_prices", "x"), 1)
        await invalidate_on_sync_completion("hadith")
        assert await cache_manager.get(CacheManager.generate_key("gold_prices", "x")) == 1
