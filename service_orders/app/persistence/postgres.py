"""
PostgreSQL persistence layer for the orders service.

Every statement runs through the shared retry wrapper. Transient failures
that survive all retries are surfaced as `TransientStoreError`.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import asyncpg

from shared.errors import NotFoundError, ServiceError, TransientStoreError, ValidationError
from shared.logging import get_logger
from shared.retry import RetryConfig, execute_with_retry, is_transient_error, validate_query_result

from ..pagination.source import CursorKey, OffsetSlice, RowFilter
from .models import (
    CLOSED_STATUSES,
    DUE_SOON_WINDOW,
    PRIORITY_THRESHOLD,
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
    sort_priority_orders,
)

T = TypeVar("T")

POSTGRES_TRANSIENT_EXCEPTIONS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
)

# scope -> (table, base predicate, row model)
SCOPES = {
    SCOPE_ITEMS: ("items", "deleted_at IS NULL", Item),
    SCOPE_DELETED_ITEMS: ("items", "deleted_at IS NOT NULL", Item),
    SCOPE_ORDERS: ("orders", "TRUE", Order),
    SCOPE_FEEDBACKS: ("feedbacks", "TRUE", Feedback),
}

SORT_COLUMNS = {"created_at", "deleted_at"}
SEARCH_COLUMNS = {
    "items": {"name", "color", "fabric", "special_features"},
    "orders": {"customer_name", "order_id", "customer_id", "address"},
    "feedbacks": {"comment"},
}

ORDER_UPDATE_COLUMNS = ("customer_name", "customer_id", "address", "status", "expected_delivery_date", "priority")

MAX_ORDER_ID_ATTEMPTS = 5


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class PostgresStore:
    """asyncpg-backed store for items, orders and feedback."""

    def __init__(self, dsn: str, retry_config: Optional[RetryConfig] = None):
        self.dsn = dsn
        self.logger = get_logger("orders.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

        retry_config = retry_config or RetryConfig()
        retry_config.transient_exceptions = tuple(
            set(retry_config.transient_exceptions) | set(POSTGRES_TRANSIENT_EXCEPTIONS)
        )
        self.retry_config = retry_config

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30
            )

            await self._create_tables()

            self.logger.info("PostgreSQL persistence started")

        except (OSError, asyncpg.PostgresError) as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise ServiceError("Failed to start PostgreSQL persistence", {"error": str(e)}) from e

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    async def ping(self) -> bool:
        return await self._run("ping", self._ping) == 1

    async def _ping(self) -> int:
        async with self.pool.acquire() as conn:
            return await conn.fetchval("SELECT 1")

    async def _create_tables(self):
        """Create database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS items (
                    id SERIAL PRIMARY KEY,
                    name TEXT NOT NULL,
                    price NUMERIC(10, 2) NOT NULL,
                    color TEXT,
                    fabric TEXT,
                    special_features TEXT,
                    image_url TEXT,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    deleted_at TIMESTAMP WITH TIME ZONE
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS orders (
                    id SERIAL PRIMARY KEY,
                    order_id TEXT NOT NULL UNIQUE,
                    order_from TEXT NOT NULL,
                    customer_name TEXT NOT NULL,
                    customer_id TEXT NOT NULL,
                    address TEXT,
                    total_price NUMERIC(10, 2) NOT NULL,
                    status TEXT DEFAULT 'pending',
                    priority INTEGER DEFAULT 0,
                    order_date TIMESTAMP WITH TIME ZONE,
                    expected_delivery_date TIMESTAMP WITH TIME ZONE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS order_items (
                    id SERIAL PRIMARY KEY,
                    order_id INTEGER NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
                    item_id INTEGER NOT NULL REFERENCES items(id),
                    name TEXT NOT NULL,
                    price NUMERIC(10, 2) NOT NULL,
                    quantity INTEGER NOT NULL
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS feedbacks (
                    id SERIAL PRIMARY KEY,
                    order_id INTEGER NOT NULL UNIQUE REFERENCES orders(id) ON DELETE CASCADE,
                    rating INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
                    comment TEXT,
                    product_quality INTEGER CHECK (product_quality BETWEEN 1 AND 5),
                    delivery_experience INTEGER CHECK (delivery_experience BETWEEN 1 AND 5),
                    customer_service INTEGER CHECK (customer_service BETWEEN 1 AND 5),
                    is_public BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)

            # Composite keys back the keyset walks
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_items_active_cursor
                ON items(created_at DESC, id DESC) WHERE deleted_at IS NULL;
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_items_deleted_cursor
                ON items(deleted_at DESC, id DESC) WHERE deleted_at IS NOT NULL;
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_orders_cursor ON orders(created_at DESC, id DESC);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_feedbacks_cursor ON feedbacks(created_at DESC, id DESC);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items(order_id);
            """)

    async def _run(self, operation_name: str, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await execute_with_retry(operation, operation_name=operation_name, config=self.retry_config)
        except Exception as e:
            if isinstance(e, TransientStoreError) or not is_transient_error(e, self.retry_config):
                raise
            raise TransientStoreError(
                "Database temporarily unavailable",
                {"operation": operation_name},
            ) from e

    def _where(self, row_filter: RowFilter, params: List[Any]) -> Tuple[str, str, Any]:
        """Build the shared WHERE clause for a row filter; appends to `params`."""
        if row_filter.scope not in SCOPES:
            raise ValueError(f"Unknown row scope: {row_filter.scope}")
        if row_filter.sort_field not in SORT_COLUMNS:
            raise ValueError(f"Unsupported sort column: {row_filter.sort_field}")

        table, predicate, model = SCOPES[row_filter.scope]
        clauses = [predicate]

        if row_filter.search:
            columns = [name for name in row_filter.search_fields if name in SEARCH_COLUMNS[table]]
            if columns:
                params.append(_like_pattern(row_filter.search))
                placeholder = f"${len(params)}"
                clauses.append(
                    "(" + " OR ".join(f"{name} ILIKE {placeholder} ESCAPE '\\'" for name in columns) + ")"
                )

        return table, " AND ".join(clauses), model

    async def fetch_offset(self, row_filter: RowFilter, offset: int, limit: int) -> OffsetSlice:
        async def operation() -> OffsetSlice:
            params: List[Any] = []
            table, where, model = self._where(row_filter, params)
            order_by = f"{row_filter.sort_field} DESC, id DESC"
            slice_params = params + [limit, offset]

            async with self.pool.acquire() as conn:
                # Count and slice share one snapshot
                async with conn.transaction(isolation="repeatable_read", readonly=True):
                    total = await conn.fetchval(f"SELECT COUNT(*) FROM {table} WHERE {where}", *params)
                    records = await conn.fetch(
                        f"SELECT * FROM {table} WHERE {where} ORDER BY {order_by} "
                        f"LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}",
                        *slice_params,
                    )
                    rows = await self._to_rows(conn, model, records)

            return OffsetSlice(total=total, rows=rows)

        return await self._run(f"fetch_offset:{row_filter.scope}", operation)

    async def fetch_after(self, row_filter: RowFilter, after: Optional[CursorKey], limit: int) -> List[Any]:
        async def operation() -> List[Any]:
            params: List[Any] = []
            table, where, model = self._where(row_filter, params)
            sort = row_filter.sort_field

            if after is not None:
                params.extend([after.sort_ts, after.id])
                where += f" AND ({sort}, id) < (${len(params) - 1}, ${len(params)})"
            params.append(limit)

            async with self.pool.acquire() as conn:
                records = await conn.fetch(
                    f"SELECT * FROM {table} WHERE {where} ORDER BY {sort} DESC, id DESC LIMIT ${len(params)}",
                    *params,
                )
                return await self._to_rows(conn, model, records)

        return await self._run(f"fetch_after:{row_filter.scope}", operation)

    async def _to_rows(self, conn: asyncpg.Connection, model: Any, records: Sequence[asyncpg.Record]) -> List[Any]:
        if model is Order:
            return await self._orders_with_items(conn, records)
        return [model.from_record(record) for record in records]

    async def _orders_with_items(self, conn: asyncpg.Connection, records: Sequence[asyncpg.Record]) -> List[Order]:
        if not records:
            return []
        ids = [record["id"] for record in records]
        item_records = await conn.fetch(
            "SELECT * FROM order_items WHERE order_id = ANY($1::int[]) ORDER BY id",
            ids,
        )
        grouped: Dict[int, List[OrderItem]] = {}
        for record in item_records:
            grouped.setdefault(record["order_id"], []).append(OrderItem.from_record(record))
        return [Order.from_record(record, grouped.get(record["id"], [])) for record in records]

    async def fetch_all_orders(self) -> List[Order]:
        async def operation() -> List[Order]:
            async with self.pool.acquire() as conn:
                records = await conn.fetch("SELECT * FROM orders ORDER BY created_at DESC, id DESC")
                return await self._orders_with_items(conn, records)

        return await self._run("fetch_all_orders", operation)

    async def fetch_priority_orders(self, now: Optional[datetime] = None) -> List[Order]:
        now = now or datetime.now(timezone.utc)

        async def operation() -> List[Order]:
            async with self.pool.acquire() as conn:
                records = await conn.fetch(
                    """
                    SELECT * FROM orders
                    WHERE (status IS NULL OR status <> ALL($1::text[]))
                      AND (priority >= $2 OR expected_delivery_date <= $3)
                    """,
                    list(CLOSED_STATUSES), PRIORITY_THRESHOLD, now + DUE_SOON_WINDOW,
                )
                return await self._orders_with_items(conn, records)

        return sort_priority_orders(await self._run("fetch_priority_orders", operation), now)

    async def create_item(self, request: ItemCreateRequest) -> Item:
        async def operation() -> Item:
            async with self.pool.acquire() as conn:
                record = await conn.fetchrow(
                    """
                    INSERT INTO items (name, price, color, fabric, special_features, image_url)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    RETURNING *
                    """,
                    request.name, request.price, request.color, request.fabric,
                    request.special_features, request.image_url,
                )
                return Item.from_record(validate_query_result(record, operation_name="create_item"))

        item = await self._run("create_item", operation)
        self.logger.info("Item created", item_id=item.id, name=item.name)
        return item

    async def soft_delete_item(self, item_id: int) -> Optional[Item]:
        async def operation() -> Optional[asyncpg.Record]:
            async with self.pool.acquire() as conn:
                return await conn.fetchrow(
                    "UPDATE items SET deleted_at = NOW() WHERE id = $1 AND deleted_at IS NULL RETURNING *",
                    item_id,
                )

        record = await self._run("soft_delete_item", operation)
        if record is None:
            return None
        self.logger.info("Item soft-deleted", item_id=item_id)
        return Item.from_record(record)

    async def restore_item(self, item_id: int) -> Optional[Item]:
        async def operation() -> Optional[asyncpg.Record]:
            async with self.pool.acquire() as conn:
                return await conn.fetchrow(
                    "UPDATE items SET deleted_at = NULL WHERE id = $1 AND deleted_at IS NOT NULL RETURNING *",
                    item_id,
                )

        record = await self._run("restore_item", operation)
        if record is None:
            return None
        self.logger.info("Item restored", item_id=item_id)
        return Item.from_record(record)

    async def _resolve_items(self, conn: asyncpg.Connection, requested: List[OrderItemRequest]) -> List[OrderItem]:
        records = await conn.fetch(
            "SELECT id, name, price FROM items WHERE id = ANY($1::int[]) AND deleted_at IS NULL",
            [line.item_id for line in requested],
        )
        catalog = {record["id"]: record for record in records}

        order_items = []
        for line in requested:
            record = catalog.get(line.item_id)
            if record is None:
                raise ValidationError(f"Item with id {line.item_id} not found", {"itemId": line.item_id})
            order_items.append(OrderItem(
                item_id=record["id"],
                name=record["name"],
                price=float(record["price"]),
                quantity=line.quantity,
            ))
        return order_items

    async def _insert_order_items(self, conn: asyncpg.Connection, order_pk: int, order_items: List[OrderItem]):
        await conn.executemany(
            "INSERT INTO order_items (order_id, item_id, name, price, quantity) VALUES ($1, $2, $3, $4, $5)",
            [(order_pk, item.item_id, item.name, item.price, item.quantity) for item in order_items],
        )

    async def create_order(self, request: OrderCreateRequest) -> Order:
        async def operation() -> Order:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    order_items = await self._resolve_items(conn, request.items)
                    total = round(sum(item.price * item.quantity for item in order_items), 2)

                    record = None
                    for _ in range(MAX_ORDER_ID_ATTEMPTS):
                        record = await conn.fetchrow(
                            """
                            INSERT INTO orders (
                                order_id, order_from, customer_name, customer_id, address,
                                total_price, status, priority, order_date, expected_delivery_date
                            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, COALESCE($9, NOW()), $10)
                            ON CONFLICT (order_id) DO NOTHING
                            RETURNING *
                            """,
                            generate_order_id(), request.order_from.value, request.customer_name,
                            request.customer_id, request.address, total, OrderStatus.PENDING.value,
                            request.priority, request.order_date, request.expected_delivery_date,
                        )
                        if record is not None:
                            break
                    if record is None:
                        raise ServiceError("Could not allocate an order reference")

                    await self._insert_order_items(conn, record["id"], order_items)
                    return Order.from_record(record, order_items)

        order = await self._run("create_order", operation)
        self.logger.info("Order created", order_id=order.order_id, total_price=order.total_price)
        return order

    async def update_order(self, order_id: int, request: OrderUpdateRequest) -> Optional[Order]:
        changes = request.changes()

        async def operation() -> Optional[Order]:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    record = await conn.fetchrow("SELECT * FROM orders WHERE id = $1 FOR UPDATE", order_id)
                    if record is None:
                        return None

                    assignments = []
                    params: List[Any] = []
                    for column in ORDER_UPDATE_COLUMNS:
                        if column in changes:
                            params.append(changes[column])
                            assignments.append(f"{column} = ${len(params)}")

                    if request.items is not None:
                        order_items = await self._resolve_items(conn, request.items)
                        params.append(round(sum(item.price * item.quantity for item in order_items), 2))
                        assignments.append(f"total_price = ${len(params)}")
                        await conn.execute("DELETE FROM order_items WHERE order_id = $1", order_id)
                        await self._insert_order_items(conn, order_id, order_items)

                    if assignments:
                        params.append(order_id)
                        record = await conn.fetchrow(
                            f"UPDATE orders SET {', '.join(assignments)} WHERE id = ${len(params)} RETURNING *",
                            *params,
                        )

                    orders = await self._orders_with_items(conn, [record])
                    return orders[0]

        order = await self._run("update_order", operation)
        if order is not None:
            self.logger.info("Order updated", order_id=order.order_id, id=order_id)
        return order

    async def find_feedback_by_order(self, order_id: int) -> Optional[Feedback]:
        async def operation() -> Optional[asyncpg.Record]:
            async with self.pool.acquire() as conn:
                return await conn.fetchrow("SELECT * FROM feedbacks WHERE order_id = $1", order_id)

        record = await self._run("find_feedback_by_order", operation)
        return Feedback.from_record(record) if record is not None else None

    async def feedback_stats(self) -> Dict[str, Any]:
        async def operation() -> asyncpg.Record:
            async with self.pool.acquire() as conn:
                return await conn.fetchrow("""
                    SELECT AVG(rating) AS avg_rating,
                           AVG(product_quality) AS avg_product_quality,
                           AVG(delivery_experience) AS avg_delivery_experience,
                           AVG(customer_service) AS avg_customer_service,
                           COUNT(*) AS total
                    FROM feedbacks
                """)

        record = await self._run("feedback_stats", operation)

        def average(value: Any) -> Optional[float]:
            return round(float(value), 2) if value is not None else None

        return {
            "avgRating": average(record["avg_rating"]),
            "avgProductQuality": average(record["avg_product_quality"]),
            "avgDeliveryExperience": average(record["avg_delivery_experience"]),
            "avgCustomerService": average(record["avg_customer_service"]),
            "totalFeedbacks": int(record["total"]),
        }

    async def create_feedback(self, request: FeedbackCreateRequest) -> Feedback:
        async def operation() -> Feedback:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    order = await conn.fetchrow("SELECT status FROM orders WHERE id = $1 FOR SHARE", request.order_id)
                    if order is None:
                        raise NotFoundError("Order not found", {"orderId": request.order_id})
                    if order["status"] != OrderStatus.COMPLETED.value:
                        raise ValidationError(
                            "Feedback can only be submitted for completed orders",
                            {"orderId": request.order_id, "status": order["status"]},
                        )

                    record = await conn.fetchrow(
                        """
                        INSERT INTO feedbacks (
                            order_id, rating, comment, product_quality,
                            delivery_experience, customer_service, is_public
                        ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                        ON CONFLICT (order_id) DO NOTHING
                        RETURNING *
                        """,
                        request.order_id, request.rating, request.comment, request.product_quality,
                        request.delivery_experience, request.customer_service, request.is_public,
                    )
                    if record is None:
                        raise ValidationError("Feedback already exists for this order", {"orderId": request.order_id})
                    return Feedback.from_record(record)

        feedback = await self._run("create_feedback", operation)
        self.logger.info("Feedback created", feedback_id=feedback.id, order_id=feedback.order_id)
        return feedback
