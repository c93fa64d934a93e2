"""
Unit tests for the in-memory mock database.
"""

import json
from datetime import datetime, timezone

import pytest

from shared.errors import NotFoundError, ValidationError
from service_orders.app.pagination.offset import OffsetPaginator
from service_orders.app.pagination.source import RowFilter
from service_orders.app.persistence.memory import MemoryStore
from service_orders.app.persistence.models import (
    SCOPE_FEEDBACKS,
    SCOPE_ITEMS,
    Feedback,
    FeedbackCreateRequest,
    Item,
    Order,
    summarize_ratings,
)

BASE_TIME = datetime(2024, 6, 1, tzinfo=timezone.utc)


def make_order(order_pk: int, status: str = "completed") -> Order:
    return Order(
        id=order_pk, order_id=f"ORD{100000 + order_pk}", customer_name="Asha", customer_id="C1",
        order_from="instagram", total_price=10.0, status=status, created_at=BASE_TIME,
    )


class TestSeedData:
    """Test cases for loading seed records."""

    def test_records_without_created_at_get_a_timestamp(self):
        item = Item.from_record({"id": 1, "name": "Stole", "price": 12})

        assert item.created_at is not None
        assert item.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_seed_with_missing_timestamps_lists(self, tmp_path):
        seed = tmp_path / "seed.json"
        seed.write_text(json.dumps({
            "items": [
                {"id": 1, "name": "Stole", "price": 12},
                {"id": 2, "name": "Scarf", "price": 8, "created_at": "2024-01-01T00:00:00Z"},
            ],
            "orders": [
                {"id": 1, "order_id": "ORD100001", "customer_name": "Asha", "customer_id": "C1",
                 "order_from": "call", "total_price": 12, "items": []},
            ],
            "feedbacks": [{"id": 4, "order_id": 1, "rating": 5}],
        }))
        store = MemoryStore(data_path=str(seed))
        await store.start()

        page = await OffsetPaginator(store).paginate(RowFilter(scope=SCOPE_ITEMS))

        assert [item["id"] for item in page["items"]] == [1, 2]
        assert store.orders[1].created_at is not None
        assert store.feedbacks[4].comment == ""


class TestFeedback:
    """Test cases for feedback in the mock database."""

    @pytest.fixture
    def store(self):
        store = MemoryStore(clock=lambda: BASE_TIME)
        store.add_order(make_order(1))
        store.add_order(make_order(2, status="pending"))
        store.add_order(make_order(3))
        return store

    @pytest.mark.asyncio
    async def test_create_feedback(self, store):
        feedback = await store.create_feedback(FeedbackCreateRequest(orderId=1, rating=4, productQuality=5))

        assert feedback.id == 1
        assert feedback.is_public is True
        assert (await store.find_feedback_by_order(1)) is feedback

    @pytest.mark.asyncio
    async def test_unknown_order(self, store):
        with pytest.raises(NotFoundError):
            await store.create_feedback(FeedbackCreateRequest(orderId=99, rating=4))

    @pytest.mark.asyncio
    async def test_open_order_is_rejected(self, store):
        with pytest.raises(ValidationError) as exc_info:
            await store.create_feedback(FeedbackCreateRequest(orderId=2, rating=4))

        assert exc_info.value.details["status"] == "pending"

    @pytest.mark.asyncio
    async def test_one_feedback_per_order(self, store):
        await store.create_feedback(FeedbackCreateRequest(orderId=1, rating=4))

        with pytest.raises(ValidationError):
            await store.create_feedback(FeedbackCreateRequest(orderId=1, rating=2))

    @pytest.mark.asyncio
    async def test_stats(self, store):
        await store.create_feedback(FeedbackCreateRequest(orderId=1, rating=5, deliveryExperience=3))
        await store.create_feedback(FeedbackCreateRequest(orderId=3, rating=4))

        stats = await store.feedback_stats()

        assert stats == {
            "avgRating": 4.5,
            "avgProductQuality": None,
            "avgDeliveryExperience": 3.0,
            "avgCustomerService": None,
            "totalFeedbacks": 2,
        }

    @pytest.mark.asyncio
    async def test_feedback_listing_searches_comments(self, store):
        await store.create_feedback(FeedbackCreateRequest(orderId=1, rating=5, comment="Lovely embroidery"))
        await store.create_feedback(FeedbackCreateRequest(orderId=3, rating=3, comment="Late delivery"))

        page = await OffsetPaginator(store).paginate(
            RowFilter(scope=SCOPE_FEEDBACKS, search="EMBROIDERY", search_fields=("comment",))
        )

        assert [row["orderId"] for row in page["items"]] == [1]


class TestSummarizeRatings:
    """Test cases for summarize_ratings."""

    def test_empty(self):
        assert summarize_ratings([]) == {
            "avgRating": None,
            "avgProductQuality": None,
            "avgDeliveryExperience": None,
            "avgCustomerService": None,
            "totalFeedbacks": 0,
        }

    def test_rounds_to_two_places(self):
        feedbacks = [Feedback(id=i, order_id=i, rating=rating) for i, rating in enumerate([5, 4, 4], start=1)]

        assert summarize_ratings(feedbacks)["avgRating"] == 4.33
