"""
Catalog and order data models.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
import random
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, field_validator


class OrderStatus(str, Enum):
    """Order lifecycle states."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderSource(str, Enum):
    """Channels an order can come from."""
    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    WHATSAPP = "whatsapp"
    CALL = "call"
    OFFLINE = "offline"


CLOSED_STATUSES = (OrderStatus.COMPLETED.value, OrderStatus.CANCELLED.value)

PRIORITY_MIN = 0
PRIORITY_MAX = 5

SCOPE_ITEMS = "items"
SCOPE_DELETED_ITEMS = "deleted_items"
SCOPE_ORDERS = "orders"
SCOPE_FEEDBACKS = "feedbacks"

ITEM_SEARCH_FIELDS = ("name", "color", "fabric", "special_features")
ORDER_SEARCH_FIELDS = ("customer_name", "order_id", "customer_id", "address")
FEEDBACK_SEARCH_FIELDS = ("comment",)

RATING_MIN = 1
RATING_MAX = 5
MAX_COMMENT_LENGTH = 1000


def generate_order_id() -> str:
    """Human-facing order reference, e.g. ORD482913."""
    return f"ORD{random.randint(100000, 999999)}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _utc(value: Any) -> Optional[datetime]:
    """Coerce stored timestamps to aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _money(value: Any) -> float:
    return float(value) if value is not None else 0.0


def _created_at(record: Mapping[str, Any]) -> datetime:
    """Creation time of a stored row; rows without one count as created now."""
    return _utc(record.get("created_at")) or datetime.now(timezone.utc)


@dataclass
class Item:
    """Catalog item. `deleted_at` is set while the item is soft-deleted."""
    id: int
    name: str
    price: float
    color: Optional[str] = None
    fabric: Optional[str] = None
    special_features: Optional[str] = None
    image_url: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Item":
        return cls(
            id=record["id"],
            name=record["name"],
            price=_money(record["price"]),
            color=record.get("color"),
            fabric=record.get("fabric"),
            special_features=record.get("special_features"),
            image_url=record.get("image_url"),
            created_at=_created_at(record),
            deleted_at=_utc(record.get("deleted_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "color": self.color,
            "fabric": self.fabric,
            "specialFeatures": self.special_features,
            "imageUrl": self.image_url,
            "createdAt": _iso(self.created_at),
            "deletedAt": _iso(self.deleted_at),
        }


@dataclass
class OrderItem:
    """Line item; name and price are copied from the catalog when ordered."""
    item_id: int
    name: str
    price: float
    quantity: int

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "OrderItem":
        return cls(
            item_id=record["item_id"],
            name=record["name"],
            price=_money(record["price"]),
            quantity=int(record["quantity"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "name": self.name,
            "price": self.price,
            "quantity": self.quantity,
        }


@dataclass
class Order:
    """Customer order with its line items."""
    id: int
    order_id: str
    customer_name: str
    customer_id: str
    order_from: str
    total_price: float
    address: Optional[str] = None
    status: Optional[str] = OrderStatus.PENDING.value
    priority: int = 0
    order_date: Optional[datetime] = None
    expected_delivery_date: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    items: List[OrderItem] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: Mapping[str, Any], items: Optional[List[OrderItem]] = None) -> "Order":
        return cls(
            id=record["id"],
            order_id=record["order_id"],
            customer_name=record["customer_name"],
            customer_id=record["customer_id"],
            order_from=record["order_from"],
            total_price=_money(record["total_price"]),
            address=record.get("address"),
            status=record.get("status"),
            priority=record.get("priority") or 0,
            order_date=_utc(record.get("order_date")),
            expected_delivery_date=_utc(record.get("expected_delivery_date")),
            created_at=_created_at(record),
            items=items or [],
        )

    def is_overdue(self, now: datetime) -> bool:
        return self.expected_delivery_date is not None and self.expected_delivery_date < now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "orderId": self.order_id,
            "customerName": self.customer_name,
            "customerId": self.customer_id,
            "address": self.address,
            "orderFrom": self.order_from,
            "status": self.status,
            "totalPrice": self.total_price,
            "priority": self.priority,
            "orderDate": _iso(self.order_date),
            "expectedDeliveryDate": _iso(self.expected_delivery_date),
            "createdAt": _iso(self.created_at),
            "items": [item.to_dict() for item in self.items],
        }


@dataclass
class Feedback:
    """Customer feedback on a completed order; at most one per order."""
    id: int
    order_id: int
    rating: int
    comment: str = ""
    product_quality: Optional[int] = None
    delivery_experience: Optional[int] = None
    customer_service: Optional[int] = None
    is_public: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Feedback":
        return cls(
            id=record["id"],
            order_id=record["order_id"],
            rating=int(record["rating"]),
            comment=record.get("comment") or "",
            product_quality=record.get("product_quality"),
            delivery_experience=record.get("delivery_experience"),
            customer_service=record.get("customer_service"),
            is_public=bool(record.get("is_public", True)),
            created_at=_created_at(record),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "orderId": self.order_id,
            "rating": self.rating,
            "comment": self.comment,
            "productQuality": self.product_quality,
            "deliveryExperience": self.delivery_experience,
            "customerService": self.customer_service,
            "isPublic": self.is_public,
            "createdAt": _iso(self.created_at),
        }


class ItemCreateRequest(BaseModel):
    """Request model for creating a catalog item."""
    name: str = Field(..., min_length=1, description="Item name")
    price: float = Field(..., ge=0, description="Unit price")
    color: Optional[str] = Field(None, description="Color")
    fabric: Optional[str] = Field(None, description="Fabric")
    special_features: Optional[str] = Field(None, alias="specialFeatures", description="Special features")
    image_url: Optional[str] = Field(None, alias="imageUrl", description="Image URL")

    model_config = {"populate_by_name": True}

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Item name is required")
        return value


class OrderItemRequest(BaseModel):
    """A catalog item and the quantity ordered."""
    item_id: int = Field(..., alias="itemId", description="Catalog item ID")
    quantity: int = Field(..., ge=1, description="Quantity")

    model_config = {"populate_by_name": True}


class OrderCreateRequest(BaseModel):
    """Request model for creating an order."""
    order_from: OrderSource = Field(..., alias="orderFrom", description="Order source")
    customer_name: str = Field(..., alias="customerName", min_length=1, description="Customer name")
    customer_id: str = Field(..., alias="customerId", min_length=1, description="Customer ID")
    address: Optional[str] = Field(None, description="Delivery address")
    items: List[OrderItemRequest] = Field(..., min_length=1, description="Ordered items")
    order_date: Optional[datetime] = Field(None, alias="orderDate", description="Order date")
    expected_delivery_date: Optional[datetime] = Field(None, alias="expectedDeliveryDate", description="Expected delivery")
    priority: int = Field(0, ge=PRIORITY_MIN, le=PRIORITY_MAX, description="Priority")

    model_config = {"populate_by_name": True}

    @field_validator("order_date", "expected_delivery_date")
    @classmethod
    def as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _utc(value)


class OrderUpdateRequest(BaseModel):
    """Request model for updating an order. Omitted fields are unchanged."""
    customer_name: Optional[str] = Field(None, alias="customerName", min_length=1, description="Customer name")
    customer_id: Optional[str] = Field(None, alias="customerId", min_length=1, description="Customer ID")
    address: Optional[str] = Field(None, description="Delivery address")
    status: Optional[OrderStatus] = Field(None, description="Order status")
    items: Optional[List[OrderItemRequest]] = Field(None, min_length=1, description="Replacement items")
    expected_delivery_date: Optional[datetime] = Field(None, alias="expectedDeliveryDate", description="Expected delivery")
    priority: Optional[int] = Field(None, ge=PRIORITY_MIN, le=PRIORITY_MAX, description="Priority")

    model_config = {"populate_by_name": True}

    @field_validator("expected_delivery_date")
    @classmethod
    def as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _utc(value)

    def changes(self) -> Dict[str, Any]:
        """Scalar fields that were supplied, keyed by column name."""
        data = self.model_dump(exclude_unset=True, exclude_none=True, exclude={"items"})
        if "status" in data:
            data["status"] = data["status"].value
        return data


class FeedbackCreateRequest(BaseModel):
    """Request model for submitting feedback on a completed order."""
    order_id: int = Field(..., alias="orderId", description="Order primary key")
    rating: int = Field(..., ge=RATING_MIN, le=RATING_MAX, description="Overall rating")
    comment: str = Field("", max_length=MAX_COMMENT_LENGTH, description="Comment")
    product_quality: Optional[int] = Field(None, alias="productQuality", ge=RATING_MIN, le=RATING_MAX)
    delivery_experience: Optional[int] = Field(None, alias="deliveryExperience", ge=RATING_MIN, le=RATING_MAX)
    customer_service: Optional[int] = Field(None, alias="customerService", ge=RATING_MIN, le=RATING_MAX)
    is_public: bool = Field(True, alias="isPublic", description="Shown on public pages")

    model_config = {"populate_by_name": True}


def _average(values: Iterable[Optional[int]]) -> Optional[float]:
    present = [value for value in values if value is not None]
    if not present:
        return None
    return round(sum(present) / len(present), 2)


def summarize_ratings(feedbacks: List[Feedback]) -> Dict[str, Any]:
    """Average of each rating over all feedback; None where nothing was rated."""
    return {
        "avgRating": _average(feedback.rating for feedback in feedbacks),
        "avgProductQuality": _average(feedback.product_quality for feedback in feedbacks),
        "avgDeliveryExperience": _average(feedback.delivery_experience for feedback in feedbacks),
        "avgCustomerService": _average(feedback.customer_service for feedback in feedbacks),
        "totalFeedbacks": len(feedbacks),
    }


PRIORITY_THRESHOLD = 5
DUE_SOON_WINDOW = timedelta(days=3)


def is_priority_order(order: Order, now: datetime) -> bool:
    """Open orders that are high priority or due within the next three days."""
    if order.status in CLOSED_STATUSES:
        return False
    if order.priority >= PRIORITY_THRESHOLD:
        return True
    return order.expected_delivery_date is not None and order.expected_delivery_date <= now + DUE_SOON_WINDOW


def _priority_sort_key(order: Order, now: datetime) -> Tuple[int, float, int]:
    due = order.expected_delivery_date
    return (
        0 if order.is_overdue(now) else 1,
        due.timestamp() if due is not None else float("inf"),
        -order.priority,
    )


def sort_priority_orders(orders: Iterable[Order], now: datetime) -> List[Order]:
    """Overdue first, then earliest expected delivery, then highest priority."""
    return sorted(orders, key=lambda order: _priority_sort_key(order, now))
