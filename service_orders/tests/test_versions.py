"""
Unit tests for the per-namespace InvalidationRegistry.
"""

import pytest

from service_orders.app.caching.cache_manager import CacheManager
from service_orders.app.caching.store import MemoryCacheStore
from service_orders.app.caching.versions import ITEMS, ORDERS, InvalidationRegistry


class TestInvalidationRegistry:
    """Test cases for InvalidationRegistry."""

    @pytest.fixture
    def store(self):
        return MemoryCacheStore()

    @pytest.fixture
    def registry(self, store):
        return InvalidationRegistry(store)

    @pytest.mark.asyncio
    async def test_unknown_namespace_is_zero(self, registry):
        assert await registry.get_version(ITEMS) == 0

    @pytest.mark.asyncio
    async def test_bump_is_monotonic(self, registry):
        assert await registry.bump(ITEMS) == 1
        assert await registry.bump(ITEMS) == 2
        assert await registry.get_version(ITEMS) == 2
        assert await registry.get_version(ORDERS) == 0

    @pytest.mark.asyncio
    async def test_get_versions_reads_all_namespaces(self, registry):
        await registry.bump(ORDERS)

        versions = await registry.get_versions([ORDERS, ITEMS, ORDERS])

        assert versions == {ITEMS: 0, ORDERS: 1}

    @pytest.mark.asyncio
    async def test_get_versions_empty(self, registry):
        assert await registry.get_versions([]) == {}

    @pytest.mark.asyncio
    async def test_versions_live_in_the_shared_store(self, store, registry):
        """A second registry over the same store sees the same versions."""
        await registry.bump(ITEMS)

        other = InvalidationRegistry(store)

        assert await other.get_version(ITEMS) == 1
        assert await store.get("cache:v:items") == "1"

    @pytest.mark.asyncio
    async def test_flush_resets_versions(self, store, registry):
        await registry.bump(ITEMS)
        await store.flush()
        assert await registry.get_version(ITEMS) == 0

    @pytest.mark.asyncio
    async def test_bump_records_metric(self, store):
        counters = []

        class Metrics:
            def increment_counter(self, metric_name, **labels):
                counters.append((metric_name, labels))

        registry = InvalidationRegistry(store, metrics=Metrics())
        await registry.bump(ORDERS)

        assert counters == [("cache_version_bumps_total", {"namespace": ORDERS})]

    def test_cache_key_embeds_versions(self, store, registry):
        manager = CacheManager(store, registry)

        before = manager.build_key("/api/items", {"page": "1"}, {ITEMS: 0})
        after = manager.build_key("/api/items", {"page": "1"}, {ITEMS: 1})

        assert before != after
        assert before.startswith("cache:resp:")
