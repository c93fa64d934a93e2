"""
Keyset (cursor) pagination.

Rows are walked in (sort timestamp desc, id desc) order. Each page resumes
strictly after the composite key of the last row returned, so rows inserted
ahead of the walk never shift it: a returned row is never returned again and
never causes a later page to skip one.

Cursor tokens are URL-safe base64 of ``{"ts": <iso-8601>, "id": <int>}``.
A token that does not decode to that shape is rejected with a
ValidationError on every listing that accepts cursors.
"""

import base64
import binascii
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shared.errors import ValidationError
from shared.logging import get_logger

from .params import DEFAULT_LIMIT, normalize_limit
from .source import CursorKey, PageSource, RowFilter

logger = get_logger("orders.pagination.cursor")


def encode_cursor(key: CursorKey) -> str:
    payload = json.dumps({"ts": key.sort_ts.isoformat(), "id": key.id}, separators=(",", ":"))
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(token: str) -> CursorKey:
    try:
        padded = token + "=" * (-len(token) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
        sort_ts = datetime.fromisoformat(data["ts"])
        row_id = data["id"]
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError) as exc:
        raise ValidationError("Invalid cursor", {"cursor": token}) from exc

    if not isinstance(row_id, int) or isinstance(row_id, bool):
        raise ValidationError("Invalid cursor", {"cursor": token})
    if sort_ts.tzinfo is None:
        sort_ts = sort_ts.replace(tzinfo=timezone.utc)
    return CursorKey(sort_ts=sort_ts, id=row_id)


class CursorPaginator:
    """Cursor paginator over a `PageSource`."""

    def __init__(self, source: PageSource):
        self.source = source

    async def paginate(self, row_filter: RowFilter, limit: int = DEFAULT_LIMIT, cursor: Optional[str] = None) -> Dict[str, Any]:
        limit = normalize_limit(limit)
        after = decode_cursor(cursor) if cursor else None

        # One extra row beyond the page tells whether another page exists
        rows = await self.source.fetch_after(row_filter, after, limit + 1)
        has_more = len(rows) > limit
        page_rows = rows[:limit]

        next_cursor = None
        if has_more and page_rows:
            last = page_rows[-1]
            next_cursor = encode_cursor(CursorKey(getattr(last, row_filter.sort_field), last.id))

        logger.debug(
            "Cursor page fetched",
            scope=row_filter.scope,
            limit=limit,
            has_cursor=after is not None,
            returned=len(page_rows),
            has_more=has_more,
        )

        return {
            "items": [row.to_dict() for row in page_rows],
            "pagination": {
                "limit": limit,
                "nextCursor": next_cursor,
                "hasMore": has_more,
            },
        }
