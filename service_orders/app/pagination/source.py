"""
Row filters and the interface paginated stores implement.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, NamedTuple, Optional, Protocol, Tuple


class CursorKey(NamedTuple):
    """Composite sort key (timestamp, row id) giving rows a total order."""

    sort_ts: datetime
    id: int


@dataclass(frozen=True)
class RowFilter:
    """One predicate shared by counting, offset slicing and cursor seeking.

    `scope` names the base row set (e.g. active or soft-deleted items),
    `search_fields` are matched case-insensitively against `search`, and
    rows are ordered by (`sort_field` desc, id desc).
    """

    scope: str
    search: Optional[str] = None
    search_fields: Tuple[str, ...] = ()
    sort_field: str = "created_at"


@dataclass
class OffsetSlice:
    total: int
    rows: List[Any]


class PageSource(Protocol):
    """Persistence operations needed by the paginators.

    Rows must expose `id`, the filter's `sort_field` attribute and
    `to_dict()`.
    """

    async def fetch_offset(self, row_filter: RowFilter, offset: int, limit: int) -> OffsetSlice:
        """Count of all matching rows plus one slice, from one snapshot."""

    async def fetch_after(self, row_filter: RowFilter, after: Optional[CursorKey], limit: int) -> List[Any]:
        """Up to `limit` matching rows strictly after `after` in sort order."""
