"""
Unit tests for offset pagination and list query parsing.
"""

from datetime import datetime, timedelta, timezone

import pytest

from service_orders.app.pagination.offset import OffsetPaginator
from service_orders.app.pagination.params import (
    CursorQuery,
    OffsetQuery,
    normalize_limit,
    normalize_search,
    parse_list_query,
    parse_page,
)
from service_orders.app.pagination.source import RowFilter
from service_orders.app.persistence.memory import MemoryStore
from service_orders.app.persistence.models import ITEM_SEARCH_FIELDS, SCOPE_ITEMS, Item

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_store(count: int) -> MemoryStore:
    store = MemoryStore()
    for i in range(1, count + 1):
        store.add_item(Item(
            id=i,
            name=f"Item {i}",
            price=10.0 * i,
            color="red" if i % 2 else "blue",
            fabric="silk" if i % 5 == 0 else "cotton",
            created_at=BASE_TIME + timedelta(minutes=i),
        ))
    return store


class TestOffsetPaginator:
    """Test cases for OffsetPaginator."""

    @pytest.fixture
    def paginator(self):
        return OffsetPaginator(make_store(25))

    @pytest.fixture
    def row_filter(self):
        return RowFilter(scope=SCOPE_ITEMS, search_fields=ITEM_SEARCH_FIELDS)

    @pytest.mark.asyncio
    async def test_pages_of_25_rows(self, paginator, row_filter):
        """25 rows at limit 10 split 10/10/5 across three pages."""
        sizes = []
        for page in (1, 2, 3):
            result = await paginator.paginate(row_filter, page=page, limit=10)
            sizes.append(len(result["items"]))
            assert result["pagination"] == {"page": page, "limit": 10, "total": 25, "totalPages": 3}

        assert sizes == [10, 10, 5]

    @pytest.mark.asyncio
    async def test_newest_first(self, paginator, row_filter):
        result = await paginator.paginate(row_filter, page=1, limit=10)

        assert [item["id"] for item in result["items"]] == list(range(25, 15, -1))

    @pytest.mark.asyncio
    async def test_page_past_the_end_is_empty(self, paginator, row_filter):
        result = await paginator.paginate(row_filter, page=4, limit=10)

        assert result["items"] == []
        assert result["pagination"]["total"] == 25

    @pytest.mark.asyncio
    async def test_disallowed_limit_falls_back(self, paginator, row_filter):
        result = await paginator.paginate(row_filter, page=1, limit=7)

        assert result["pagination"]["limit"] == 10
        assert len(result["items"]) == 10

    @pytest.mark.asyncio
    async def test_search_filters_count_and_rows(self, paginator):
        row_filter = RowFilter(scope=SCOPE_ITEMS, search="SILK", search_fields=ITEM_SEARCH_FIELDS)

        result = await paginator.paginate(row_filter, page=1, limit=10)

        assert result["pagination"]["total"] == 5
        assert result["pagination"]["totalPages"] == 1
        assert {item["fabric"] for item in result["items"]} == {"silk"}

    @pytest.mark.asyncio
    async def test_empty_source(self, row_filter):
        paginator = OffsetPaginator(make_store(0))

        result = await paginator.paginate(row_filter, page=1, limit=20)

        assert result == {"items": [], "pagination": {"page": 1, "limit": 20, "total": 0, "totalPages": 0}}


class TestListQueryParsing:
    """Test cases for query parameter parsing."""

    def test_limit_normalization(self):
        assert normalize_limit("20") == 20
        assert normalize_limit(50) == 50
        assert normalize_limit("15") == 10
        assert normalize_limit("abc") == 10
        assert normalize_limit(None) == 10

    def test_page_parsing(self):
        assert parse_page("3") == 3
        assert parse_page("0") == 1
        assert parse_page("-2") == 1
        assert parse_page("x") == 1
        assert parse_page(None) == 1

    def test_search_normalization(self):
        assert normalize_search("  silk ") == "silk"
        assert normalize_search("   ") is None
        assert normalize_search(None) is None

    def test_offset_mode_without_cursor(self):
        query = parse_list_query({"page": "2", "limit": "20", "search": " red "})

        assert query == OffsetQuery(page=2, limit=20, search="red")

    def test_cursor_param_selects_cursor_mode(self):
        query = parse_list_query({"cursor": "abc", "limit": "50"})

        assert query == CursorQuery(limit=50, cursor="abc", search=None)

    def test_blank_cursor_starts_from_the_beginning(self):
        query = parse_list_query({"cursor": "", "page": "3"})

        assert isinstance(query, CursorQuery)
        assert query.cursor is None
