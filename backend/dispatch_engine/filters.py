"""Filter predicates over dispatch snapshots.

A :class:`DispatchFilter` is a conjunction: a dispatch matches when every
field that is set matches.  The ``selectors`` field alone is disjunctive --
any listed selector sharing a component id or category is enough.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Union

from dispatch_engine.errors import InvalidArgument
from dispatch_engine.types import (
    ComponentCategories,
    ComponentIds,
    ComponentSelector,
    Dispatch,
    EndCriteria,
    Frequency,
    RecurrenceRule,
    Weekday,
    ensure_utc,
)


@dataclass(frozen=True)
class TimeInterval:
    """Half-open interval ``[start, end)``; either side may be open."""

    start: datetime | None = None
    end: datetime | None = None

    def __post_init__(self) -> None:
        if self.start is not None:
            object.__setattr__(self, "start", ensure_utc(self.start, "interval start"))
        if self.end is not None:
            object.__setattr__(self, "end", ensure_utc(self.end, "interval end"))
        if self.start is not None and self.end is not None and self.end < self.start:
            raise InvalidArgument("time interval end must not be before its start")

    def contains(self, value: datetime | None) -> bool:
        # None stands for an unbounded (infinitely late) time.
        if value is None:
            return self.end is None
        if self.start is not None and value < self.start:
            return False
        if self.end is not None and value >= self.end:
            return False
        return True


@dataclass(frozen=True)
class RecurrenceFilter:
    """Structured match on recurrence fields.

    Scalar fields must be equal; each list must be a subset of the
    dispatch's corresponding list.
    """

    freq: Frequency | None = None
    interval: int | None = None
    end_criteria: EndCriteria | None = None
    byminutes: tuple[int, ...] = ()
    byhours: tuple[int, ...] = ()
    byweekdays: tuple[Weekday, ...] = ()
    bymonthdays: tuple[int, ...] = ()
    bymonths: tuple[int, ...] = ()

    def matches(self, rule: RecurrenceRule | None) -> bool:
        if rule is None:
            return False
        if self.freq is not None and rule.freq is not Frequency(self.freq):
            return False
        if self.interval is not None and rule.interval != self.interval:
            return False
        if self.end_criteria is not None and rule.end_criteria != self.end_criteria:
            return False
        pairs = (
            (self.byminutes, rule.byminutes),
            (self.byhours, rule.byhours),
            (self.byweekdays, rule.byweekdays),
            (self.bymonthdays, rule.bymonthdays),
            (self.bymonths, rule.bymonths),
        )
        return all(set(wanted) <= set(have) for wanted, have in pairs)


RecurrenceCriterion = Union[bool, RecurrenceFilter, None]


@dataclass(frozen=True)
class DispatchFilter:
    selectors: tuple[ComponentSelector, ...] = ()
    is_active: bool | None = None
    is_dry_run: bool | None = None
    recurrence: RecurrenceCriterion = None
    start_time_interval: TimeInterval | None = None
    end_time_interval: TimeInterval | None = None
    update_time_interval: TimeInterval | None = None


def selector_overlaps(wanted: ComponentSelector, have: ComponentSelector) -> bool:
    if isinstance(wanted, ComponentIds):
        return isinstance(have, ComponentIds) and bool(set(wanted.ids) & set(have.ids))
    if isinstance(wanted, ComponentCategories):
        return isinstance(have, ComponentCategories) and bool(
            set(wanted.categories) & set(have.categories)
        )
    raise InvalidArgument(f"unsupported selector type: {type(wanted).__name__}")


def matches(dispatch: Dispatch, flt: DispatchFilter) -> bool:
    """Return True when *dispatch* satisfies every set field of *flt*."""
    data = dispatch.data
    meta = dispatch.metadata

    if flt.selectors and not any(selector_overlaps(s, data.selector) for s in flt.selectors):
        return False
    if flt.is_active is not None and data.is_active != flt.is_active:
        return False
    if flt.is_dry_run is not None and data.is_dry_run != flt.is_dry_run:
        return False

    criterion = flt.recurrence
    if isinstance(criterion, bool):
        if (data.recurrence is not None) != criterion:
            return False
    elif isinstance(criterion, RecurrenceFilter):
        if not criterion.matches(data.recurrence):
            return False

    if flt.start_time_interval is not None and not flt.start_time_interval.contains(data.start_time):
        return False
    if flt.end_time_interval is not None and not flt.end_time_interval.contains(meta.end_time):
        return False
    if flt.update_time_interval is not None and not flt.update_time_interval.contains(
        meta.modification_time
    ):
        return False
    return True
