"""
Integration tests for the cached read path: handlers, cache, invalidation
and pagination wired together by the orders service.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from shared.config import get_config
from shared.errors import CacheUnavailableError
from service_orders.app.caching.store import MemoryCacheStore
from service_orders.app.caching.versions import ITEMS, ORDERS
from service_orders.app.main import OrdersService
from service_orders.app.persistence.memory import MemoryStore
from service_orders.app.persistence.models import (
    Item,
    ItemCreateRequest,
    OrderCreateRequest,
    OrderItemRequest,
    OrderSource,
)

BASE_TIME = datetime(2024, 3, 1, tzinfo=timezone.utc)


class TestReadPathFlow:
    """Integration tests for the read path."""

    @pytest.fixture
    def store(self):
        store = MemoryStore()
        for i in range(1, 31):
            store.add_item(Item(id=i, name=f"Saree {i}", price=100.0, created_at=BASE_TIME + timedelta(minutes=i)))
        return store

    @pytest.fixture
    def service(self, store):
        config = get_config("orders", 8000, use_mock_db=True, cache_backend="memory", env="test")
        return OrdersService(config=config, store=store, cache_store=MemoryCacheStore())

    @pytest.mark.asyncio
    async def test_repeat_reads_hit_the_cache(self, service, store):
        with patch.object(store, "fetch_offset", wraps=store.fetch_offset) as spy:
            first = await service.list_items({"page": "2", "limit": "10"})
            second = await service.list_items({"limit": "10", "page": "2"})

        assert first == second
        assert spy.await_count == 1

    @pytest.mark.asyncio
    async def test_write_then_read_sees_the_write(self, service, store):
        before = await service.list_items({})
        assert before["pagination"]["total"] == 30

        await store.create_item(ItemCreateRequest(name="Lehenga", price=250.0))
        stale = await service.list_items({})
        assert stale["pagination"]["total"] == 30

        await service._invalidate(ITEMS)
        after = await service.list_items({})
        assert after["pagination"]["total"] == 31

    @pytest.mark.asyncio
    async def test_cursor_walk_through_cache(self, service):
        seen = []
        params = {"cursor": "", "limit": "20"}
        while True:
            page = await service.list_items(params)
            seen.extend(item["id"] for item in page["items"])
            if not page["pagination"]["hasMore"]:
                break
            params = {"cursor": page["pagination"]["nextCursor"], "limit": "20"}

        assert seen == list(range(30, 0, -1))

    @pytest.mark.asyncio
    async def test_offset_and_cursor_are_cached_separately(self, service):
        offset_page = await service.list_items({"limit": "10"})
        cursor_page = await service.list_items({"cursor": "", "limit": "10"})

        assert "totalPages" in offset_page["pagination"]
        assert "nextCursor" in cursor_page["pagination"]
        assert offset_page["items"] == cursor_page["items"]

    @pytest.mark.asyncio
    async def test_analytics_follow_order_writes(self, service, store):
        empty = await service.sales_analytics({"statusFilter": "all"})
        assert empty["analytics"]["year"]["orderCount"] == 0

        await store.create_order(OrderCreateRequest(
            order_from=OrderSource.FACEBOOK,
            customer_name="Kavya",
            customer_id="CUST-7",
            items=[OrderItemRequest(item_id=1, quantity=3)],
        ))
        await service._invalidate(ORDERS)

        analytics = await service.sales_analytics({"statusFilter": "all"})
        year = analytics["analytics"]["year"]
        assert year["orderCount"] == 1
        assert year["totalSales"] == 300.0
        assert year["topItems"] == [{"name": "Saree 1", "quantity": 3, "revenue": 300.0}]

    @pytest.mark.asyncio
    async def test_cache_outage_does_not_fail_reads(self, service):
        outage = CacheUnavailableError("connection refused")

        with patch.object(service.cache_store, "mget", side_effect=outage), \
                patch.object(service.cache_store, "incr", side_effect=outage):
            page = await service.list_items({"page": "1"})
            await service._invalidate(ITEMS)

        assert len(page["items"]) == 10
