"""
Unit tests for the stale-while-revalidate CacheManager.
"""

import asyncio

import pytest

from shared.errors import CacheUnavailableError, ValidationError
from service_orders.app.caching.cache_manager import (
    CacheEntry,
    CacheManager,
    cache_control_header,
    is_cacheable,
    normalize_query,
)
from service_orders.app.caching.store import MemoryCacheStore
from service_orders.app.caching.versions import ITEMS, ORDERS, InvalidationRegistry


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []

    def increment_counter(self, metric_name: str, **labels):
        self.counters.append((metric_name, labels))

    def results(self, metric_name: str, label: str):
        return [labels[label] for name, labels in self.counters if name == metric_name]


class CountingHandler:
    """Read handler returning a new version of its payload on every call."""

    def __init__(self):
        self.calls = 0

    async def __call__(self, params):
        self.calls += 1
        return {"value": f"V{self.calls}"}


class BrokenStore:
    """Cache store whose backend is unreachable."""

    async def get(self, key):
        raise CacheUnavailableError("connection refused")

    async def mget(self, keys):
        raise CacheUnavailableError("connection refused")

    async def set(self, key, value, ttl_seconds):
        raise CacheUnavailableError("connection refused")

    async def set_if_absent(self, key, value, ttl_seconds):
        raise CacheUnavailableError("connection refused")

    async def delete(self, key):
        raise CacheUnavailableError("connection refused")

    async def incr(self, key):
        raise CacheUnavailableError("connection refused")

    async def flush(self):
        raise CacheUnavailableError("connection refused")


class TestCacheManager:
    """Test cases for CacheManager."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        return MemoryCacheStore(clock=clock)

    @pytest.fixture
    def metrics(self):
        return DummyMetrics()

    @pytest.fixture
    def registry(self, store):
        return InvalidationRegistry(store)

    @pytest.fixture
    def cache_manager(self, store, registry, clock, metrics):
        return CacheManager(store, registry, clock=clock, metrics=metrics)

    @pytest.mark.asyncio
    async def test_swr_timeline(self, cache_manager, clock):
        """Miss, fresh hit, stale hit with one refresh, then dead entry recompute."""
        handler = CountingHandler()
        cached = cache_manager.wrap(handler, 0.1, stale_while_revalidate=0.2, route="/test", namespaces=[ITEMS])

        assert await cached({}) == {"value": "V1"}
        assert handler.calls == 1

        clock.now = 0.05
        assert await cached({}) == {"value": "V1"}
        assert handler.calls == 1

        clock.now = 0.15
        assert await cached({}) == {"value": "V1"}
        await cache_manager.wait_for_refreshes()
        assert handler.calls == 2

        clock.now = 0.2
        assert await cached({}) == {"value": "V2"}
        assert handler.calls == 2

        # The refreshed entry went stale at 0.25 and died at 0.45
        clock.now = 0.5
        assert await cached({}) == {"value": "V3"}
        assert handler.calls == 3

    @pytest.mark.asyncio
    async def test_read_at_stale_until_serves_stale(self, cache_manager, clock):
        """The last instant of the stale window still serves the cached value."""
        handler = CountingHandler()
        cached = cache_manager.wrap(handler, 1, stale_while_revalidate=1, route="/test", namespaces=[ITEMS])

        assert await cached({}) == {"value": "V1"}

        clock.now = 2.0
        assert await cached({}) == {"value": "V1"}
        await cache_manager.wait_for_refreshes()
        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_blank_params_share_a_key(self, cache_manager):
        handler = CountingHandler()
        cached = cache_manager.wrap(handler, 60, route="/test", namespaces=[ITEMS])

        await cached({})
        await cached({"search": ""})
        await cached({"search": "   "})

        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_keep_blank_params_stay_in_the_key(self, cache_manager):
        handler = CountingHandler()
        cached = cache_manager.wrap(handler, 60, route="/test", namespaces=[ITEMS], keep_blank=("cursor",))

        await cached({})
        await cached({"cursor": ""})
        await cached({"cursor": "  "})

        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_stale_hits_trigger_single_refresh(self, cache_manager, clock):
        """Concurrent stale reads of one key start exactly one refresh."""
        handler = CountingHandler()
        cached = cache_manager.wrap(handler, 0.1, stale_while_revalidate=0.2, route="/test")

        await cached({"page": "1"})
        clock.now = 0.15

        results = await asyncio.gather(*(cached({"page": "1"}) for _ in range(5)))
        await cache_manager.wait_for_refreshes()

        assert all(result == {"value": "V1"} for result in results)
        assert handler.calls == 2
        assert cache_manager.refreshes_in_flight() == 0

    @pytest.mark.asyncio
    async def test_concurrent_misses_are_coalesced(self, cache_manager):
        """Simultaneous misses for one key invoke the handler once."""
        gate = asyncio.Event()
        calls = 0

        async def handler(params):
            nonlocal calls
            calls += 1
            await gate.wait()
            return {"value": "computed"}

        cached = cache_manager.wrap(handler, 60, route="/slow")
        tasks = [asyncio.ensure_future(cached({})) for _ in range(5)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks)

        assert calls == 1
        assert results == [{"value": "computed"}] * 5

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_stale_entry(self, cache_manager, clock):
        """A refresh error is logged and the stale value keeps being served."""
        calls = 0

        async def handler(params):
            nonlocal calls
            calls += 1
            if calls > 1:
                raise ConnectionError("database went away")
            return {"value": "V1"}

        cached = cache_manager.wrap(handler, 0.1, stale_while_revalidate=0.2, route="/test")
        await cached({})

        clock.now = 0.15
        assert await cached({}) == {"value": "V1"}
        await cache_manager.wait_for_refreshes()

        clock.now = 0.2
        assert await cached({}) == {"value": "V1"}
        await cache_manager.wait_for_refreshes()
        assert calls == 3

    @pytest.mark.asyncio
    async def test_version_bump_invalidates(self, cache_manager, registry):
        """After a bump the next read recomputes even within the fresh window."""
        handler = CountingHandler()
        cached = cache_manager.wrap(handler, 3600, route="/api/items", namespaces=[ITEMS])

        assert await cached({}) == {"value": "V1"}
        await registry.bump(ITEMS)
        assert await cached({}) == {"value": "V2"}
        assert await cached({}) == {"value": "V2"}
        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_bump_of_other_namespace_keeps_entry(self, cache_manager, registry):
        handler = CountingHandler()
        cached = cache_manager.wrap(handler, 3600, route="/api/items", namespaces=[ITEMS])

        await cached({})
        await registry.bump(ORDERS)
        assert await cached({}) == {"value": "V1"}
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_query_params_are_part_of_the_key(self, cache_manager):
        handler = CountingHandler()
        cached = cache_manager.wrap(handler, 3600, route="/api/items")

        await cached({"page": "1", "limit": "10"})
        await cached({"limit": "10", "page": "1"})
        assert handler.calls == 1

        await cached({"page": "2", "limit": "10"})
        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_error_payloads_are_not_cached(self, cache_manager):
        calls = 0

        async def handler(params):
            nonlocal calls
            calls += 1
            return {"error": "Invalid input"}

        cached = cache_manager.wrap(handler, 3600, route="/test")
        await cached({})
        await cached({})
        assert calls == 2

    @pytest.mark.asyncio
    async def test_handler_errors_propagate_uncached(self, cache_manager):
        async def handler(params):
            raise ValidationError("Invalid cursor")

        cached = cache_manager.wrap(handler, 3600, route="/test")
        with pytest.raises(ValidationError):
            await cached({"cursor": "bogus"})

    @pytest.mark.asyncio
    async def test_fail_open_when_store_unavailable(self, clock):
        """Cache outages serve every request from the handler."""
        store = BrokenStore()
        cache_manager = CacheManager(store, InvalidationRegistry(store), clock=clock)
        handler = CountingHandler()
        cached = cache_manager.wrap(handler, 3600, route="/test", namespaces=[ITEMS])

        assert await cached({}) == {"value": "V1"}
        assert await cached({}) == {"value": "V2"}
        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_lookup_metrics(self, cache_manager, clock, metrics):
        handler = CountingHandler()
        cached = cache_manager.wrap(handler, 0.1, stale_while_revalidate=0.2, route="/test")

        await cached({})
        clock.now = 0.05
        await cached({})
        clock.now = 0.15
        await cached({})
        await cache_manager.wait_for_refreshes()

        assert metrics.results("cache_lookups_total", "result") == ["miss", "fresh", "stale"]
        assert metrics.results("cache_refresh_total", "outcome") == ["success"]

    @pytest.mark.asyncio
    async def test_clear_all_resets_versions(self, cache_manager, registry):
        await registry.bump(ITEMS)
        assert await cache_manager.clear_all() is True
        assert await registry.get_version(ITEMS) == 0


class TestCacheHelpers:
    """Test cases for cache helper functions."""

    def test_entry_states(self):
        entry = CacheEntry.build("k", {"a": 1}, stored_at=10.0, fresh_ttl=5, swr_window=5)

        assert entry.state(12.0) == "fresh"
        assert entry.state(15.0) == "fresh"
        assert entry.state(16.0) == "stale"
        assert entry.state(21.0) == "dead"

    def test_entry_serialization(self):
        entry = CacheEntry.build("k", {"a": [1, 2]}, stored_at=1.0, fresh_ttl=2, swr_window=3)
        restored = CacheEntry.deserialize("k", entry.serialize())

        assert restored.value == {"a": [1, 2]}
        assert restored.fresh_until == 3.0
        assert restored.stale_until == 6.0

    def test_normalize_query_sorts_and_strips(self):
        assert normalize_query({"search": " silk ", "limit": "10"}) == [("limit", "10"), ("search", "silk")]

    def test_normalize_query_drops_blank_values(self):
        assert normalize_query({"search": "  ", "page": "2", "limit": ""}) == [("page", "2")]
        assert normalize_query({"cursor": "", "search": ""}, keep_blank=("cursor",)) == [("cursor", "")]

    def test_is_cacheable(self):
        assert is_cacheable({"items": []})
        assert not is_cacheable(None)
        assert not is_cacheable({"error": "boom"})
        assert not is_cacheable({"message": "Invalid request"})

    def test_cache_control_header(self):
        assert cache_control_header(86400, 43200) == "public, s-maxage=86400, stale-while-revalidate=43200"
        assert cache_control_header(60) == "public, s-maxage=60"


class TestMemoryCacheStore:
    """Test cases for MemoryCacheStore expiry."""

    @pytest.mark.asyncio
    async def test_entry_readable_until_expiry_instant(self):
        clock = FakeClock()
        store = MemoryCacheStore(clock=clock)
        await store.set("k", "v", 2)

        clock.now = 2.0
        assert await store.get("k") == "v"

        clock.now = 2.001
        assert await store.get("k") is None
