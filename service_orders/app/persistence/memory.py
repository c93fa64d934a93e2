"""
In-memory mock database for local development and tests.

Implements the same operations as `PostgresStore`. Data can be seeded from
a JSON file shaped like
``{"items": [...], "orders": [...], "feedbacks": [...]}`` whose records
use the database column names.
"""

import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger

from ..pagination.source import CursorKey, OffsetSlice, RowFilter
from .models import (
    SCOPE_DELETED_ITEMS,
    SCOPE_FEEDBACKS,
    SCOPE_ITEMS,
    SCOPE_ORDERS,
    Feedback,
    FeedbackCreateRequest,
    Item,
    ItemCreateRequest,
    Order,
    OrderCreateRequest,
    OrderItem,
    OrderItemRequest,
    OrderStatus,
    OrderUpdateRequest,
    generate_order_id,
    is_priority_order,
    sort_priority_orders,
    summarize_ratings,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """Mock database keeping items, orders and feedback in process memory."""

    def __init__(self, data_path: str = "", clock: Callable[[], datetime] = _utcnow):
        self.data_path = data_path
        self.clock = clock
        self.logger = get_logger("orders.persistence.memory")
        self.items: Dict[int, Item] = {}
        self.orders: Dict[int, Order] = {}
        self.feedbacks: Dict[int, Feedback] = {}
        self._next_item_id = 1
        self._next_order_id = 1
        self._next_feedback_id = 1

    async def start(self):
        """Load seed data, if configured."""
        if self.data_path:
            self.load(self.data_path)
        self.logger.info(
            "Mock database started",
            items=len(self.items),
            orders=len(self.orders),
            feedbacks=len(self.feedbacks),
        )

    async def stop(self):
        self.logger.info("Mock database stopped")

    async def ping(self) -> bool:
        return True

    def load(self, path: str):
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)

        for record in data.get("items", []):
            self.add_item(Item.from_record(record))
        for record in data.get("orders", []):
            items = [OrderItem.from_record(item) for item in record.get("items", [])]
            self.add_order(Order.from_record(record, items))
        for record in data.get("feedbacks", []):
            self.add_feedback(Feedback.from_record(record))

    def add_item(self, item: Item) -> Item:
        self.items[item.id] = item
        self._next_item_id = max(self._next_item_id, item.id + 1)
        return item

    def add_order(self, order: Order) -> Order:
        self.orders[order.id] = order
        self._next_order_id = max(self._next_order_id, order.id + 1)
        return order

    def add_feedback(self, feedback: Feedback) -> Feedback:
        self.feedbacks[feedback.id] = feedback
        self._next_feedback_id = max(self._next_feedback_id, feedback.id + 1)
        return feedback

    def _rows(self, row_filter: RowFilter) -> List[Any]:
        if row_filter.scope == SCOPE_ITEMS:
            rows = [item for item in self.items.values() if item.deleted_at is None]
        elif row_filter.scope == SCOPE_DELETED_ITEMS:
            rows = [item for item in self.items.values() if item.deleted_at is not None]
        elif row_filter.scope == SCOPE_ORDERS:
            rows = list(self.orders.values())
        elif row_filter.scope == SCOPE_FEEDBACKS:
            rows = list(self.feedbacks.values())
        else:
            raise ValueError(f"Unknown row scope: {row_filter.scope}")

        if row_filter.search:
            term = row_filter.search.lower()
            rows = [
                row for row in rows
                if any(term in str(getattr(row, name) or "").lower() for name in row_filter.search_fields)
            ]

        rows.sort(key=lambda row: (getattr(row, row_filter.sort_field), row.id), reverse=True)
        return rows

    async def fetch_offset(self, row_filter: RowFilter, offset: int, limit: int) -> OffsetSlice:
        rows = self._rows(row_filter)
        return OffsetSlice(total=len(rows), rows=rows[offset:offset + limit])

    async def fetch_after(self, row_filter: RowFilter, after: Optional[CursorKey], limit: int) -> List[Any]:
        rows = self._rows(row_filter)
        if after is not None:
            rows = [
                row for row in rows
                if (getattr(row, row_filter.sort_field), row.id) < (after.sort_ts, after.id)
            ]
        return rows[:limit]

    async def fetch_all_orders(self) -> List[Order]:
        return list(self.orders.values())

    async def fetch_priority_orders(self, now: Optional[datetime] = None) -> List[Order]:
        now = now or self.clock()
        return sort_priority_orders(
            (order for order in self.orders.values() if is_priority_order(order, now)),
            now,
        )

    async def create_item(self, request: ItemCreateRequest) -> Item:
        item = Item(
            id=self._next_item_id,
            name=request.name,
            price=request.price,
            color=request.color,
            fabric=request.fabric,
            special_features=request.special_features,
            image_url=request.image_url,
            created_at=self.clock(),
        )
        self.add_item(item)
        self.logger.info("Item created in mock database", item_id=item.id)
        return item

    async def soft_delete_item(self, item_id: int) -> Optional[Item]:
        item = self.items.get(item_id)
        if item is None or item.deleted_at is not None:
            return None
        item.deleted_at = self.clock()
        self.logger.info("Item soft-deleted in mock database", item_id=item_id)
        return item

    async def restore_item(self, item_id: int) -> Optional[Item]:
        item = self.items.get(item_id)
        if item is None or item.deleted_at is None:
            return None
        item.deleted_at = None
        self.logger.info("Item restored in mock database", item_id=item_id)
        return item

    def _order_items(self, requested: List[OrderItemRequest]) -> List[OrderItem]:
        order_items = []
        for line in requested:
            item = self.items.get(line.item_id)
            if item is None or item.deleted_at is not None:
                raise ValidationError(f"Item with id {line.item_id} not found", {"itemId": line.item_id})
            order_items.append(OrderItem(item_id=item.id, name=item.name, price=item.price, quantity=line.quantity))
        return order_items

    async def create_order(self, request: OrderCreateRequest) -> Order:
        order_items = self._order_items(request.items)
        now = self.clock()
        order = Order(
            id=self._next_order_id,
            order_id=generate_order_id(),
            customer_name=request.customer_name,
            customer_id=request.customer_id,
            order_from=request.order_from.value,
            total_price=round(sum(item.price * item.quantity for item in order_items), 2),
            address=request.address,
            status=OrderStatus.PENDING.value,
            priority=request.priority,
            order_date=request.order_date or now,
            expected_delivery_date=request.expected_delivery_date,
            created_at=now,
            items=order_items,
        )
        self.add_order(order)
        self.logger.info("Order created in mock database", order_id=order.order_id, id=order.id)
        return order

    async def update_order(self, order_id: int, request: OrderUpdateRequest) -> Optional[Order]:
        order = self.orders.get(order_id)
        if order is None:
            return None

        order_items = self._order_items(request.items) if request.items is not None else None
        for name, value in request.changes().items():
            setattr(order, name, value)
        if order_items is not None:
            order.items = order_items
            order.total_price = round(sum(item.price * item.quantity for item in order_items), 2)

        self.logger.info("Order updated in mock database", order_id=order.order_id, id=order.id)
        return order

    async def find_feedback_by_order(self, order_id: int) -> Optional[Feedback]:
        return next((feedback for feedback in self.feedbacks.values() if feedback.order_id == order_id), None)

    async def feedback_stats(self) -> Dict[str, Any]:
        return summarize_ratings(list(self.feedbacks.values()))

    async def create_feedback(self, request: FeedbackCreateRequest) -> Feedback:
        order = self.orders.get(request.order_id)
        if order is None:
            raise NotFoundError("Order not found", {"orderId": request.order_id})
        if order.status != OrderStatus.COMPLETED.value:
            raise ValidationError(
                "Feedback can only be submitted for completed orders",
                {"orderId": request.order_id, "status": order.status},
            )
        if await self.find_feedback_by_order(request.order_id) is not None:
            raise ValidationError("Feedback already exists for this order", {"orderId": request.order_id})

        feedback = Feedback(
            id=self._next_feedback_id,
            order_id=request.order_id,
            rating=request.rating,
            comment=request.comment,
            product_quality=request.product_quality,
            delivery_experience=request.delivery_experience,
            customer_service=request.customer_service,
            is_public=request.is_public,
            created_at=self.clock(),
        )
        self.add_feedback(feedback)
        self.logger.info("Feedback created in mock database", feedback_id=feedback.id, order_id=feedback.order_id)
        return feedback
