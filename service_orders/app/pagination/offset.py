"""
Page-number pagination.

Pages are computed with OFFSET/LIMIT. Under concurrent inserts or deletes a
client walking the pages may see a row twice or miss one; listings that need
a stable walk use the cursor paginator instead.
"""

import math
from typing import Any, Dict

from shared.logging import get_logger

from .params import DEFAULT_LIMIT, DEFAULT_PAGE, normalize_limit
from .source import PageSource, RowFilter

logger = get_logger("orders.pagination.offset")


class OffsetPaginator:
    """Offset paginator over a `PageSource`."""

    def __init__(self, source: PageSource):
        self.source = source

    async def paginate(self, row_filter: RowFilter, page: int = DEFAULT_PAGE, limit: int = DEFAULT_LIMIT) -> Dict[str, Any]:
        page = max(DEFAULT_PAGE, int(page))
        limit = normalize_limit(limit)
        offset = (page - 1) * limit

        page_slice = await self.source.fetch_offset(row_filter, offset, limit)
        total_pages = math.ceil(page_slice.total / limit)

        logger.debug(
            "Offset page fetched",
            scope=row_filter.scope,
            page=page,
            limit=limit,
            total=page_slice.total,
            returned=len(page_slice.rows),
            has_search=row_filter.search is not None,
        )

        return {
            "items": [row.to_dict() for row in page_slice.rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": page_slice.total,
                "totalPages": total_pages,
            },
        }
