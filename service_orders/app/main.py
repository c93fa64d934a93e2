"""
Orders service: catalog items, orders, customer feedback and sales analytics.
"""

from typing import Any, Dict, Mapping, Optional

from fastapi import Request, Response

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import CacheUnavailableError, NotFoundError

from .analytics.aggregator import compute_sales_analytics, validate_status_filter
from .caching.cache_manager import CacheManager, cache_control_header
from .caching.store import create_cache_store
from .caching.versions import FEEDBACKS, ITEMS, ORDERS, InvalidationRegistry
from .pagination.cursor import CursorPaginator
from .pagination.offset import OffsetPaginator
from .pagination.params import CURSOR_PARAM, CursorQuery, parse_list_query
from .pagination.source import RowFilter
from .persistence import create_store
from .persistence.models import (
    FEEDBACK_SEARCH_FIELDS,
    ITEM_SEARCH_FIELDS,
    ORDER_SEARCH_FIELDS,
    SCOPE_DELETED_ITEMS,
    SCOPE_FEEDBACKS,
    SCOPE_ITEMS,
    SCOPE_ORDERS,
    FeedbackCreateRequest,
    ItemCreateRequest,
    OrderCreateRequest,
    OrderUpdateRequest,
)

SERVICE_NAME = "orders"
SERVICE_PORT = 8000


class OrdersService(BaseService):
    """Orders service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, store=None, cache_store=None):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config or get_config(SERVICE_NAME, SERVICE_PORT))

        self.store = store or create_store(self.config)
        self.cache_store = cache_store or create_cache_store(self.config.cache_backend, self.config.redis_url)
        self.registry = InvalidationRegistry(self.cache_store, metrics=self.metrics)
        self.cache_manager = CacheManager(
            self.cache_store,
            self.registry,
            metrics=self.metrics,
            refresh_lock_ttl=self.config.refresh_lock_ttl,
        )
        self.offset_paginator = OffsetPaginator(self.store)
        self.cursor_paginator = CursorPaginator(self.store)

        self._setup_read_handlers()

        @self.app.on_event("startup")
        async def _startup():
            await self.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.stop()

        self._setup_item_routes()
        self._setup_order_routes()
        self._setup_feedback_routes()
        self._setup_analytics_routes()
        self._setup_cache_routes()

    def _setup_read_handlers(self):
        """Wrap the cacheable read handlers once, at startup."""
        config = self.config

        self.list_items = self.cache_manager.wrap(
            self._list_items,
            config.items_fresh_ttl,
            stale_while_revalidate=config.items_stale_while_revalidate,
            route="/api/items",
            namespaces=[ITEMS],
            keep_blank=(CURSOR_PARAM,),
        )
        self.list_deleted_items = self.cache_manager.wrap(
            self._list_deleted_items,
            config.items_fresh_ttl,
            stale_while_revalidate=config.items_stale_while_revalidate,
            route="/api/items/deleted",
            namespaces=[ITEMS],
            keep_blank=(CURSOR_PARAM,),
        )
        self.list_orders = self.cache_manager.wrap(
            self._list_orders,
            config.orders_fresh_ttl,
            stale_while_revalidate=config.orders_stale_while_revalidate,
            route="/api/orders",
            namespaces=[ORDERS],
            keep_blank=(CURSOR_PARAM,),
        )
        self.list_priority_orders = self.cache_manager.wrap(
            self._list_priority_orders,
            config.orders_fresh_ttl,
            stale_while_revalidate=config.orders_stale_while_revalidate,
            route="/api/orders/priority",
            namespaces=[ORDERS],
        )
        self.sales_analytics = self.cache_manager.wrap(
            self._sales_analytics,
            config.analytics_fresh_ttl,
            stale_while_revalidate=config.analytics_stale_while_revalidate,
            route="/api/analytics/sales",
            namespaces=[ORDERS],
        )
        self.list_feedbacks = self.cache_manager.wrap(
            self._list_feedbacks,
            config.feedbacks_fresh_ttl,
            stale_while_revalidate=config.feedbacks_stale_while_revalidate,
            route="/api/feedbacks",
            namespaces=[FEEDBACKS],
            keep_blank=(CURSOR_PARAM,),
        )
        self.feedback_stats = self.cache_manager.wrap(
            self._feedback_stats,
            config.feedbacks_fresh_ttl,
            stale_while_revalidate=config.feedbacks_stale_while_revalidate,
            route="/api/feedbacks/stats",
            namespaces=[FEEDBACKS],
        )

    async def _paginate(self, params: Mapping[str, Any], row_filter_args: Dict[str, Any]) -> Dict[str, Any]:
        query = parse_list_query(params)
        row_filter = RowFilter(search=query.search, **row_filter_args)
        if isinstance(query, CursorQuery):
            return await self.cursor_paginator.paginate(row_filter, query.limit, query.cursor)
        return await self.offset_paginator.paginate(row_filter, query.page, query.limit)

    async def _list_items(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._paginate(params, {"scope": SCOPE_ITEMS, "search_fields": ITEM_SEARCH_FIELDS})

    async def _list_deleted_items(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._paginate(params, {
            "scope": SCOPE_DELETED_ITEMS,
            "search_fields": ITEM_SEARCH_FIELDS,
            "sort_field": "deleted_at",
        })

    async def _list_orders(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._paginate(params, {"scope": SCOPE_ORDERS, "search_fields": ORDER_SEARCH_FIELDS})

    async def _list_priority_orders(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        orders = await self.store.fetch_priority_orders()
        return {"orders": [order.to_dict() for order in orders]}

    async def _sales_analytics(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        status_filter = validate_status_filter(params.get("statusFilter"))
        orders = await self.store.fetch_all_orders()
        return compute_sales_analytics(orders, status_filter)

    async def _list_feedbacks(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._paginate(params, {"scope": SCOPE_FEEDBACKS, "search_fields": FEEDBACK_SEARCH_FIELDS})

    async def _feedback_stats(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.store.feedback_stats()

    async def _invalidate(self, namespace: str):
        """Bump a namespace version; cache outages never fail the write."""
        try:
            await self.registry.bump(namespace)
        except CacheUnavailableError as e:
            self.logger.error("Failed to invalidate cache", namespace=namespace, error=str(e))

    def _setup_item_routes(self):
        """Set up catalog item routes."""

        @self.app.get("/api/items")
        async def get_items(request: Request, response: Response):
            """List active items (offset or cursor mode)."""
            result = await self.list_items(dict(request.query_params))
            response.headers["Cache-Control"] = cache_control_header(
                self.config.items_fresh_ttl, self.config.items_stale_while_revalidate
            )
            return result

        @self.app.get("/api/items/deleted")
        async def get_deleted_items(request: Request):
            """List soft-deleted items, most recently deleted first."""
            return await self.list_deleted_items(dict(request.query_params))

        @self.app.post("/api/items", status_code=201)
        async def create_item(request: ItemCreateRequest):
            """Create a catalog item."""
            item = await self.store.create_item(request)
            await self._invalidate(ITEMS)
            return item.to_dict()

        @self.app.delete("/api/items/{item_id}")
        async def delete_item(item_id: int):
            """Soft-delete an item."""
            item = await self.store.soft_delete_item(item_id)
            if item is None:
                raise NotFoundError("Item not found", {"id": item_id})
            await self._invalidate(ITEMS)
            return {"message": "Item deleted", "item": item.to_dict()}

        @self.app.post("/api/items/{item_id}/restore")
        async def restore_item(item_id: int):
            """Restore a soft-deleted item."""
            item = await self.store.restore_item(item_id)
            if item is None:
                raise NotFoundError("Deleted item not found", {"id": item_id})
            await self._invalidate(ITEMS)
            return {"message": "Item restored", "item": item.to_dict()}

    def _setup_order_routes(self):
        """Set up order routes."""

        @self.app.get("/api/orders")
        async def get_orders(request: Request):
            """List orders (offset or cursor mode)."""
            return await self.list_orders(dict(request.query_params))

        @self.app.get("/api/orders/priority")
        async def get_priority_orders(request: Request):
            """Open orders needing attention, most urgent first."""
            return await self.list_priority_orders(dict(request.query_params))

        @self.app.post("/api/orders", status_code=201)
        async def create_order(request: OrderCreateRequest):
            """Create an order from catalog items."""
            order = await self.store.create_order(request)
            await self._invalidate(ORDERS)
            return order.to_dict()

        @self.app.put("/api/orders/{order_id}")
        async def update_order(order_id: int, request: OrderUpdateRequest):
            """Update an order."""
            order = await self.store.update_order(order_id, request)
            if order is None:
                raise NotFoundError("Order not found", {"id": order_id})
            await self._invalidate(ORDERS)
            return order.to_dict()

    def _setup_feedback_routes(self):
        """Set up customer feedback routes."""

        @self.app.get("/api/feedbacks")
        async def get_feedbacks(request: Request):
            """List feedback, newest first."""
            return await self.list_feedbacks(dict(request.query_params))

        @self.app.get("/api/feedbacks/stats")
        async def get_feedback_stats(request: Request):
            """Average ratings over all feedback."""
            return await self.feedback_stats(dict(request.query_params))

        @self.app.get("/api/feedbacks/order/{order_id}")
        async def get_order_feedback(order_id: int):
            """Feedback left for one order."""
            feedback = await self.store.find_feedback_by_order(order_id)
            if feedback is None:
                raise NotFoundError("No feedback found for this order", {"orderId": order_id})
            return feedback.to_dict()

        @self.app.post("/api/feedbacks", status_code=201)
        async def create_feedback(request: FeedbackCreateRequest):
            """Submit feedback for a completed order."""
            feedback = await self.store.create_feedback(request)
            await self._invalidate(FEEDBACKS)
            return feedback.to_dict()

    def _setup_analytics_routes(self):
        """Set up analytics routes."""

        @self.app.get("/api/analytics/sales")
        async def get_sales_analytics(request: Request, response: Response):
            """Sales analytics for every time range."""
            params = dict(request.query_params)
            # Reject bad filters before touching the cache
            validate_status_filter(params.get("statusFilter"))
            result = await self.sales_analytics(params)
            response.headers["Cache-Control"] = cache_control_header(
                self.config.analytics_fresh_ttl, self.config.analytics_stale_while_revalidate
            )
            return result

    def _setup_cache_routes(self):
        """Set up cache maintenance routes."""

        @self.app.delete("/api/cache")
        async def clear_cache():
            """Flush every cached response and reset namespace versions."""
            cleared = await self.cache_manager.clear_all()
            return {"cleared": cleared}

    async def _check_dependencies(self):
        """Check orders service dependencies."""
        dependencies = {}

        try:
            dependencies["cache"] = "ok" if await self.cache_store.ping() else "error"
        except CacheUnavailableError:
            dependencies["cache"] = "error"

        try:
            dependencies["database"] = "ok" if await self.store.ping() else "error"
        except Exception:
            dependencies["database"] = "error"

        return dependencies

    async def start(self):
        """Start orders service components."""
        await self.store.start()
        self.logger.info(
            "Orders service started",
            mock_db=self.config.use_mock_db,
            cache_backend=self.config.cache_backend,
        )

    async def stop(self):
        """Stop orders service components."""
        await self.cache_manager.wait_for_refreshes()
        await self.store.stop()
        await self.cache_store.close()
        self.logger.info("Orders service stopped")


def create_app():
    """Create orders service application."""
    service = OrdersService()
    return service.app


if __name__ == "__main__":
    service = OrdersService()
    service.run()
