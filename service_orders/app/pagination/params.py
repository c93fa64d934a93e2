"""
Query parameter parsing shared by every paginated listing.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
ALLOWED_LIMITS = (10, 20, 50)
CURSOR_PARAM = "cursor"


@dataclass(frozen=True)
class OffsetQuery:
    page: int
    limit: int
    search: Optional[str]


@dataclass(frozen=True)
class CursorQuery:
    limit: int
    cursor: Optional[str]
    search: Optional[str]


def normalize_limit(value: Any) -> int:
    """Limits outside the allowed set fall back to the default."""
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return DEFAULT_LIMIT
    return limit if limit in ALLOWED_LIMITS else DEFAULT_LIMIT


def parse_page(value: Any) -> int:
    try:
        page = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PAGE
    return page if page >= 1 else DEFAULT_PAGE


def normalize_search(value: Any) -> Optional[str]:
    """Trimmed search term, or None when blank."""
    if value is None:
        return None
    term = str(value).strip()
    return term or None


def parse_list_query(params: Mapping[str, Any]) -> Union[OffsetQuery, CursorQuery]:
    """The presence of `cursor` selects cursor mode, otherwise offset mode."""
    limit = normalize_limit(params.get("limit"))
    search = normalize_search(params.get("search"))

    if CURSOR_PARAM in params:
        cursor = params.get(CURSOR_PARAM)
        cursor = str(cursor).strip() if cursor is not None else ""
        return CursorQuery(limit=limit, cursor=cursor or None, search=search)

    return OffsetQuery(page=parse_page(params.get("page")), limit=limit, search=search)
