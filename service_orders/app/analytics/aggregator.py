"""
Sales analytics over fixed time windows.

All windows are computed from one in-memory order set. Orders are plain
mappings or objects exposing the order fields (`total_price`, `status`,
`order_date`, `created_at`, `order_from`, `customer_id`, `customer_name`,
`items`); order items expose `name`, `price` and `quantity`.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from shared.errors import ValidationError
from shared.logging import get_logger

logger = get_logger("orders.analytics")

STATUS_COMPLETED = "completed"
STATUS_ALL = "all"
STATUS_FILTERS = (STATUS_COMPLETED, STATUS_ALL)

TOP_N = 5


@dataclass(frozen=True)
class AnalyticsRange:
    key: str
    label: str
    days: int

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "label": self.label, "days": self.days}


TIME_RANGES: Tuple[AnalyticsRange, ...] = (
    AnalyticsRange("week", "Last Week", 7),
    AnalyticsRange("month", "Last Month", 30),
    AnalyticsRange("quarter", "Last Quarter", 90),
    AnalyticsRange("halfYear", "Last 6 Months", 180),
    AnalyticsRange("year", "Last Year", 365),
)


def validate_status_filter(value: Optional[str]) -> str:
    """Default to 'completed'; anything outside the known filters is rejected."""
    if value is None or value == "":
        return STATUS_COMPLETED
    if value not in STATUS_FILTERS:
        raise ValidationError(
            "Invalid statusFilter. Must be 'completed' or 'all'",
            {"statusFilter": value},
        )
    return value


def _get(record: Any, name: str, default: Any = None) -> Any:
    if isinstance(record, Mapping):
        return record.get(name, default)
    return getattr(record, name, default)


def _as_utc(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def reference_date(order: Any) -> Optional[datetime]:
    """The order date when recorded, otherwise the creation time."""
    return _as_utc(_get(order, "order_date") or _get(order, "created_at"))


def matches_status(order: Any, status_filter: str) -> bool:
    """'all' passes everything; 'completed' also passes orders without a status.

    Orders created before the status column existed carry no status and have
    always been counted as completed sales.
    """
    if status_filter == STATUS_ALL:
        return True
    status = _get(order, "status")
    return status is None or status == STATUS_COMPLETED


def _top(entries: Sequence[Dict[str, Any]], field: str) -> List[Dict[str, Any]]:
    # sorted() is stable, so ties keep first-seen order
    return sorted(entries, key=lambda entry: entry[field], reverse=True)[:TOP_N]


def _aggregate_items(orders: Iterable[Any]) -> List[Dict[str, Any]]:
    items: Dict[str, Dict[str, Any]] = {}
    for order in orders:
        for item in _get(order, "items") or ():
            name = _get(item, "name")
            quantity = _get(item, "quantity", 0) or 0
            price = float(_get(item, "price", 0) or 0)
            entry = items.setdefault(name, {"name": name, "quantity": 0, "revenue": 0.0})
            entry["quantity"] += quantity
            entry["revenue"] += price * quantity
    return list(items.values())


def _aggregate_sources(orders: Iterable[Any]) -> Dict[str, Dict[str, Any]]:
    sources: Dict[str, Dict[str, Any]] = {}
    for order in orders:
        source = _get(order, "order_from") or "unknown"
        entry = sources.setdefault(source, {"count": 0, "revenue": 0.0})
        entry["count"] += 1
        entry["revenue"] += float(_get(order, "total_price", 0) or 0)
    return sources


def _aggregate_customers(orders: Iterable[Any]) -> List[Dict[str, Any]]:
    # Keyed by id and name together: two customers may share a display name
    customers: Dict[Tuple[Any, Any], Dict[str, Any]] = {}
    for order in orders:
        customer_id = _get(order, "customer_id")
        customer_name = _get(order, "customer_name")
        entry = customers.setdefault(
            (customer_id, customer_name),
            {
                "customerId": customer_id,
                "customerName": customer_name,
                "orderCount": 0,
                "totalSpent": 0.0,
                "items": {},
            },
        )
        entry["orderCount"] += 1
        entry["totalSpent"] += float(_get(order, "total_price", 0) or 0)
        for item in _get(order, "items") or ():
            name = _get(item, "name")
            entry["items"][name] = entry["items"].get(name, 0) + (_get(item, "quantity", 0) or 0)
    return list(customers.values())


def compute_range(orders: Sequence[Any], days: int, status_filter: str, now: datetime) -> Dict[str, Any]:
    """RangeAnalytics for the orders dated within `days` of `now`."""
    cutoff = now - timedelta(days=days)
    selected = []
    for order in orders:
        when = reference_date(order)
        if when is not None and when >= cutoff and matches_status(order, status_filter):
            selected.append(order)

    total_sales = sum(float(_get(order, "total_price", 0) or 0) for order in selected)
    order_count = len(selected)

    items = _aggregate_items(selected)
    customers = _aggregate_customers(selected)
    top_by_orders = _top(customers, "orderCount")

    return {
        "totalSales": total_sales,
        "orderCount": order_count,
        "averageOrderValue": total_sales / order_count if order_count else 0,
        "topItems": _top(items, "quantity"),
        "topItemsByRevenue": _top(items, "revenue"),
        "sourceBreakdown": _aggregate_sources(selected),
        "topCustomersByOrders": top_by_orders,
        "topCustomersByRevenue": _top(customers, "totalSpent"),
        "highestOrderingCustomer": top_by_orders[0] if top_by_orders else None,
        "uniqueCustomers": len(customers),
    }


def compute_sales_analytics(
    orders: Sequence[Any],
    status_filter: str = STATUS_COMPLETED,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Analytics for every range in `TIME_RANGES` from one order set."""
    status_filter = validate_status_filter(status_filter)
    now = _as_utc(now) or datetime.now(timezone.utc)

    logger.info(
        "Calculating sales analytics",
        total_orders=len(orders),
        status_filter=status_filter,
        time_ranges=len(TIME_RANGES),
    )

    analytics = {
        time_range.key: compute_range(orders, time_range.days, status_filter, now)
        for time_range in TIME_RANGES
    }

    return {
        "analytics": analytics,
        "timeRanges": [time_range.to_dict() for time_range in TIME_RANGES],
        "generatedAt": now.isoformat(),
    }
