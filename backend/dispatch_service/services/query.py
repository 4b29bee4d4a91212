"""Filtered, sorted and cursor-paginated dispatch listing.

Each page is computed from one read-consistent snapshot of the microgrid,
so concurrent writes can never duplicate or skip rows within a page.
Cursors encode the last row's sort key and id; the next page resumes
strictly after that position, which also works when the anchor row has
since been deleted.
"""

from __future__ import annotations

import base64
import binascii
import enum
import json
from dataclasses import dataclass
from datetime import datetime

from dispatch_engine.activation import ActivationState, evaluate_activation
from dispatch_engine.errors import InvalidArgument
from dispatch_engine.filters import DispatchFilter, matches
from dispatch_engine.types import Dispatch, ensure_utc
from dispatch_service.services.dispatch_store import DispatchStore

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 1000


class SortField(str, enum.Enum):
    START_TIME = "START_TIME"
    CREATE_TIME = "CREATE_TIME"
    LAST_UPDATE_TIME = "LAST_UPDATE_TIME"


class SortOrder(str, enum.Enum):
    ASCENDING = "ASCENDING"
    DESCENDING = "DESCENDING"


@dataclass(frozen=True)
class SortOptions:
    field: SortField = SortField.CREATE_TIME
    order: SortOrder = SortOrder.DESCENDING


@dataclass(frozen=True)
class PaginationParams:
    page_size: int | None = None
    page_token: str | None = None


@dataclass(frozen=True)
class PaginationInfo:
    total_items: int
    next_page_token: str | None = None


@dataclass(frozen=True)
class DispatchView:
    """A dispatch plus fields computed at query time."""

    dispatch: Dispatch
    activation_state: ActivationState


@dataclass(frozen=True)
class Cursor:
    field: SortField
    order: SortOrder
    key: datetime
    dispatch_id: int
    page_size: int

    def encode(self) -> str:
        raw = json.dumps(
            {
                "f": self.field.value,
                "o": self.order.value,
                "k": self.key.isoformat(),
                "i": self.dispatch_id,
                "s": self.page_size,
            },
            separators=(",", ":"),
        )
        return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")

    @classmethod
    def decode(cls, token: str) -> Cursor:
        try:
            padded = token + "=" * (-len(token) % 4)
            raw = json.loads(base64.urlsafe_b64decode(padded.encode()))
            return cls(
                field=SortField(raw["f"]),
                order=SortOrder(raw["o"]),
                key=ensure_utc(datetime.fromisoformat(raw["k"]), "page token key"),
                dispatch_id=int(raw["i"]),
                page_size=int(raw["s"]),
            )
        except (binascii.Error, ValueError, KeyError, TypeError) as exc:
            raise InvalidArgument("malformed page token") from exc


def sort_value(dispatch: Dispatch, field: SortField) -> datetime:
    if field is SortField.START_TIME:
        return dispatch.data.start_time
    if field is SortField.LAST_UPDATE_TIME:
        return dispatch.metadata.modification_time
    return dispatch.metadata.create_time


def sort_dispatches(dispatches: list[Dispatch], options: SortOptions) -> list[Dispatch]:
    """Order by the sort key, ties broken by dispatch id ascending."""
    by_id = sorted(dispatches, key=lambda d: d.dispatch_id)
    # list.sort is stable, also with reverse=True, so the id order survives
    by_id.sort(
        key=lambda d: sort_value(d, options.field),
        reverse=options.order is SortOrder.DESCENDING,
    )
    return by_id


def _is_after(dispatch: Dispatch, cursor: Cursor) -> bool:
    value = sort_value(dispatch, cursor.field)
    if value == cursor.key:
        return dispatch.dispatch_id > cursor.dispatch_id
    if cursor.order is SortOrder.DESCENDING:
        return value < cursor.key
    return value > cursor.key


class QueryEngine:
    def __init__(
        self,
        store: DispatchStore,
        *,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self._store = store
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def _page_size(self, requested: int | None, cursor: Cursor | None) -> int:
        if requested is None:
            requested = cursor.page_size if cursor is not None else self.default_page_size
        if requested < 1:
            raise InvalidArgument(f"page_size must be positive, got {requested}")
        return min(requested, self.max_page_size)

    async def list(
        self,
        microgrid_id: int,
        flt: DispatchFilter | None = None,
        sort_options: SortOptions | None = None,
        pagination: PaginationParams | None = None,
    ) -> tuple[list[DispatchView], PaginationInfo]:
        flt = flt or DispatchFilter()
        sort_options = sort_options or SortOptions()
        pagination = pagination or PaginationParams()

        cursor = Cursor.decode(pagination.page_token) if pagination.page_token else None
        if cursor is not None and (cursor.field, cursor.order) != (
            sort_options.field,
            sort_options.order,
        ):
            raise InvalidArgument("page token was issued for a different sort order")
        page_size = self._page_size(pagination.page_size, cursor)

        snapshot = await self._store.list_microgrid(microgrid_id)
        now = self._store.now()

        rows = sort_dispatches([d for d in snapshot if matches(d, flt)], sort_options)
        total = len(rows)

        if cursor is not None:
            rows = [d for d in rows if _is_after(d, cursor)]

        page = rows[:page_size]
        next_token = None
        if len(rows) > page_size:
            last = page[-1]
            next_token = Cursor(
                field=sort_options.field,
                order=sort_options.order,
                key=sort_value(last, sort_options.field),
                dispatch_id=last.dispatch_id,
                page_size=page_size,
            ).encode()

        views = [DispatchView(d, evaluate_activation(d, now)) for d in page]
        return views, PaginationInfo(total_items=total, next_page_token=next_token)
