"""Forward-only cursor pagination over time-ordered ids.

The cursor is the id of the last item of the previous page. Items are ordered
strictly by id, never by a mutable column, so a page can never re-surface an
item at or before a cursor that was already handed out.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, Literal, TypeVar
from uuid import UUID

from integrations_api.core.ids import parse_id

SortOrder = Literal["asc", "desc"]
T = TypeVar("T")

MAX_PAGE_LIMIT = 1000


class InvalidCursorError(ValueError):
    """Raised when a page request carries an unusable limit, order or cursor."""


@dataclass(frozen=True, slots=True)
class PageRequest:
    limit: int
    order: SortOrder = "asc"
    after: UUID | None = None

    @classmethod
    def parse(cls, *, limit: int, order: str = "asc", after: str | None = None) -> PageRequest:
        if limit < 1 or limit > MAX_PAGE_LIMIT:
            raise InvalidCursorError(f"limit must be between 1 and {MAX_PAGE_LIMIT}")
        normalized_order = (order or "asc").strip().lower()
        if normalized_order not in {"asc", "desc"}:
            raise InvalidCursorError("order must be one of: asc, desc")
        cursor: UUID | None = None
        if after is not None and after.strip():
            try:
                cursor = parse_id(after)
            except ValueError as exc:
                raise InvalidCursorError("after must be a valid id") from exc
        return cls(limit=limit, order=normalized_order, after=cursor)  # type: ignore[arg-type]

    def sql(self, *, column: str = "id", first_param: int = 1) -> tuple[str, list[Any]]:
        """Render `where`/`order by`/`limit` for a query keyed on a uuid column.

        Returns the clause and its positional arguments, numbered from
        ``first_param`` so callers can bind their own filters first.
        """
        params: list[Any] = []
        comparator = ">" if self.order == "asc" else "<"
        where_sql = "true"
        if self.after is not None:
            params.append(self.after)
            where_sql = f"{column} {comparator} ${first_param}::uuid"
        params.append(self.limit)
        limit_token = f"${first_param + len(params) - 1}"
        return f"where {where_sql} order by {column} {self.order} limit {limit_token}", params

    def apply(self, items: Iterable[T], key: Callable[[T], UUID]) -> list[T]:
        if self.after is not None:
            after = self.after
            if self.order == "asc":
                items = [item for item in items if key(item) > after]
            else:
                items = [item for item in items if key(item) < after]
        ordered = sorted(items, key=key, reverse=self.order == "desc")
        return ordered[: self.limit]


@dataclass(slots=True)
class Page(Generic[T]):
    items: list[T]
    next_cursor: str | None


def build_page(items: list[T], *, limit: int, cursor_of: Callable[[T], str]) -> Page[T]:
    # A short page means the end of the sequence was reached.
    if len(items) < limit or not items:
        return Page(items=items, next_cursor=None)
    return Page(items=items, next_cursor=cursor_of(items[-1]))
