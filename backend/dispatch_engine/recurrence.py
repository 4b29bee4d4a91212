"""Recurrence evaluation: expand a rule into concrete occurrence start times.

The evaluator follows the RFC 5545 ``RRULE`` model restricted to UTC:

1. **Frequency ticks** -- ``dispatch_start + k * interval * unit`` for
   ``k = 0, 1, 2, ...``.  Minute, hour, day and week ticks use fixed
   ``timedelta`` steps.  Month and year ticks are computed from the anchor
   with :class:`dateutil.relativedelta.relativedelta`, so a rule anchored on
   the 31st lands on Feb 28/29 and returns to the 31st in March.
2. **Expansion** -- each tick is expanded into the candidates inside its
   enclosing frequency unit.  Restriction lists *finer* than the frequency
   expand (``DAILY`` + ``byhours=[8, 20]`` gives two starts per day);
   lists *coarser* than the frequency limit (``HOURLY`` + ``byweekdays``
   drops ticks on other days).  Fields no list mentions keep the tick's
   value.
3. **Truncation** -- candidates before ``dispatch_start`` are dropped,
   ``count`` is counted across the whole rule, candidates ``>= until`` end
   the sequence, and the caller's ``[window_start, window_end)`` window
   bounds what is yielded.

The generator is a pure function of its inputs: calling it twice with the
same arguments yields the same sequence.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator

from dateutil.relativedelta import relativedelta

from dispatch_engine.types import (
    Count,
    DispatchData,
    Frequency,
    RecurrenceRule,
    Until,
    ensure_utc,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_FIXED_STEPS: dict[Frequency, timedelta] = {
    Frequency.MINUTELY: timedelta(minutes=1),
    Frequency.HOURLY: timedelta(hours=1),
    Frequency.DAILY: timedelta(days=1),
    Frequency.WEEKLY: timedelta(weeks=1),
}

_MONTH_STEPS: dict[Frequency, int] = {
    Frequency.MONTHLY: 1,
    Frequency.YEARLY: 12,
}

# Feb 29 restrictions can go eight years without a match (2096 -> 2104).
# A rule that produces nothing for longer than this never will.
BARREN_LIMIT = timedelta(days=8 * 366 + 1)

_ONE_MICROSECOND = timedelta(microseconds=1)


# ---------------------------------------------------------------------------
# Tick arithmetic
# ---------------------------------------------------------------------------


def _tick(rule: RecurrenceRule, anchor: datetime, k: int) -> datetime:
    """Return the *k*-th frequency tick counted from *anchor*."""
    n = k * rule.interval
    step = _FIXED_STEPS.get(rule.freq)
    if step is not None:
        return anchor + n * step
    return anchor + relativedelta(months=n * _MONTH_STEPS[rule.freq])


def _first_tick_index(rule: RecurrenceRule, anchor: datetime, window_start: datetime) -> int:
    """Index of a tick at or before the first one that can reach *window_start*.

    Every candidate of tick ``k`` lies within one frequency unit of the tick,
    and ticks are at least one unit apart, so starting one tick early is
    always safe.
    """
    if window_start <= anchor:
        return 0
    step = _FIXED_STEPS.get(rule.freq)
    if step is not None:
        k = (window_start - anchor) // (step * rule.interval)
    else:
        months = (window_start.year - anchor.year) * 12 + window_start.month - anchor.month
        k = months // (_MONTH_STEPS[rule.freq] * rule.interval)
    return max(0, k - 1)


def _ceil_index(rule: RecurrenceRule, anchor: datetime, target: datetime) -> int:
    """Index of the first fixed-step tick at or after *target*."""
    q, r = divmod(target - anchor, _FIXED_STEPS[rule.freq] * rule.interval)
    return q + 1 if r else q


def _skip_target(rule: RecurrenceRule, tick: datetime) -> datetime | None:
    """Return the next instant a sub-weekly tick could match, or ``None``.

    Minute, hour and day ticks contribute only their own day (and, for
    minute ticks, their own hour), so a tick whose month, day or hour is
    excluded contributes nothing until that unit rolls over.
    """
    if rule.freq not in (Frequency.MINUTELY, Frequency.HOURLY, Frequency.DAILY):
        return None
    midnight = tick.replace(hour=0, minute=0, second=0, microsecond=0)
    if rule.bymonths and tick.month not in rule.bymonths:
        return midnight.replace(day=1) + relativedelta(months=1)
    if not _day_matches(rule, tick.date()):
        return midnight + timedelta(days=1)
    if rule.freq is Frequency.MINUTELY and rule.byhours and tick.hour not in rule.byhours:
        return tick.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    return None


def _period_start(freq: Frequency, tick: datetime) -> datetime:
    """Start of the frequency unit that encloses *tick*."""
    if freq is Frequency.MINUTELY:
        return tick.replace(second=0, microsecond=0)
    if freq is Frequency.HOURLY:
        return tick.replace(minute=0, second=0, microsecond=0)
    midnight = tick.replace(hour=0, minute=0, second=0, microsecond=0)
    if freq is Frequency.DAILY:
        return midnight
    if freq is Frequency.WEEKLY:
        return midnight - timedelta(days=midnight.weekday())
    if freq is Frequency.MONTHLY:
        return midnight.replace(day=1)
    return midnight.replace(month=1, day=1)


# ---------------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------------


def _month_days(year: int, month: int) -> list[date]:
    last = calendar.monthrange(year, month)[1]
    return [date(year, month, d) for d in range(1, last + 1)]


def _day_matches(rule: RecurrenceRule, day: date) -> bool:
    if rule.bymonths and day.month not in rule.bymonths:
        return False
    if rule.byweekdays and day.weekday() not in {w.index for w in rule.byweekdays}:
        return False
    if rule.bymonthdays:
        last = calendar.monthrange(day.year, day.month)[1]
        # -1 is the last day of the month, -2 the one before, ...
        if day.day not in rule.bymonthdays and day.day - last - 1 not in rule.bymonthdays:
            return False
    return True


def _candidate_days(rule: RecurrenceRule, tick: datetime, anchor_day: int) -> list[date]:
    day_rules = bool(rule.bymonthdays or rule.byweekdays)
    freq = rule.freq

    if freq is Frequency.YEARLY:
        if rule.bymonths:
            months: tuple[int, ...] = rule.bymonths
        elif day_rules:
            months = tuple(range(1, 13))
        else:
            months = (tick.month,)
        if day_rules:
            days = [d for m in months for d in _month_days(tick.year, m)]
        else:
            # The tick keeps its clamped day; other months use the anchor's day
            # and are skipped when they lack it.
            days = [
                date(tick.year, m, tick.day if m == tick.month else anchor_day)
                for m in months
                if m == tick.month or anchor_day <= calendar.monthrange(tick.year, m)[1]
            ]
    elif freq is Frequency.MONTHLY and day_rules:
        days = _month_days(tick.year, tick.month)
    elif freq is Frequency.WEEKLY and rule.byweekdays:
        monday = tick.date() - timedelta(days=tick.weekday())
        days = [monday + timedelta(days=i) for i in range(7)]
    else:
        days = [tick.date()]

    return [d for d in days if _day_matches(rule, d)]


def _expand(rule: RecurrenceRule, tick: datetime, anchor_day: int) -> list[datetime]:
    """Return the ascending candidates a single tick contributes."""
    if not rule.has_restrictions:
        return [tick]

    if rule.freq in (Frequency.HOURLY, Frequency.MINUTELY):
        hours: tuple[int, ...] = (
            (tick.hour,) if not rule.byhours or tick.hour in rule.byhours else ()
        )
    else:
        hours = rule.byhours or (tick.hour,)

    if rule.freq is Frequency.MINUTELY:
        minutes: tuple[int, ...] = (
            (tick.minute,) if not rule.byminutes or tick.minute in rule.byminutes else ()
        )
    else:
        minutes = rule.byminutes or (tick.minute,)

    if not hours or not minutes:
        return []

    return [
        datetime.combine(
            day, time(h, m, tick.second, tick.microsecond), tzinfo=timezone.utc
        )
        for day in _candidate_days(rule, tick, anchor_day)
        for h in hours
        for m in minutes
    ]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def occurrences(
    rule: RecurrenceRule | None,
    dispatch_start: datetime,
    window_start: datetime | None = None,
    window_end: datetime | None = None,
) -> Iterator[datetime]:
    """Lazily yield occurrence start times inside ``[window_start, window_end)``.

    Parameters
    ----------
    rule : RecurrenceRule or None
        The recurrence rule.  ``None`` describes a one-shot dispatch whose
        only occurrence is *dispatch_start*.
    dispatch_start : datetime
        Anchor of the rule (the dispatch start time), UTC-aware.
    window_start, window_end : datetime or None
        Optional half-open window.  ``None`` leaves that side unbounded.

    Yields
    ------
    datetime
        Strictly ascending UTC start times.  The sequence is infinite only
        when the rule has no end criteria and *window_end* is ``None``.
    """
    dispatch_start = ensure_utc(dispatch_start, "dispatch_start")
    if window_start is not None:
        window_start = ensure_utc(window_start, "window_start")
    if window_end is not None:
        window_end = ensure_utc(window_end, "window_end")

    if rule is None:
        if (window_start is None or dispatch_start >= window_start) and (
            window_end is None or dispatch_start < window_end
        ):
            yield dispatch_start
        return

    end = rule.end_criteria
    count = end.value if isinstance(end, Count) else None
    until = end.value if isinstance(end, Until) else None

    stops = [t for t in (until, window_end) if t is not None]
    stop = min(stops) if stops else None

    # Counting starts at the first occurrence, so count rules are never skipped ahead.
    if count is None and window_start is not None:
        k = _first_tick_index(rule, dispatch_start, window_start)
    else:
        k = 0

    emitted = 0
    last: datetime | None = None
    last_productive: datetime | None = None

    while True:
        try:
            tick = _tick(rule, dispatch_start, k)
        except (OverflowError, ValueError):
            return  # past datetime.max
        k += 1

        floor = _period_start(rule.freq, tick) if rule.has_restrictions else tick
        if stop is not None and floor >= stop:
            return
        if last_productive is None:
            last_productive = tick
        elif tick - last_productive > BARREN_LIMIT:
            return

        skip_to = _skip_target(rule, tick)
        if skip_to is not None:
            k = max(k, _ceil_index(rule, dispatch_start, skip_to))
            continue

        for candidate in _expand(rule, tick, dispatch_start.day):
            if candidate < dispatch_start or (last is not None and candidate <= last):
                continue
            if until is not None and candidate >= until:
                return
            if window_end is not None and candidate >= window_end:
                return
            last = candidate
            last_productive = tick
            emitted += 1
            if window_start is None or candidate >= window_start:
                yield candidate
            if count is not None and emitted >= count:
                return


def _lookback(rule: RecurrenceRule) -> timedelta:
    step = _FIXED_STEPS.get(rule.freq)
    if step is not None:
        return 2 * step * rule.interval
    return timedelta(days=2 * 31 * _MONTH_STEPS[rule.freq] * rule.interval)


def last_occurrence_before(
    rule: RecurrenceRule, dispatch_start: datetime, bound: datetime
) -> datetime | None:
    """Return the last occurrence strictly before *bound*, or ``None``.

    Searches backwards from *bound* in growing windows, so rules with a
    fine frequency and a distant bound are not expanded from the anchor.
    """
    lookback = _lookback(rule)
    while True:
        window_start = max(dispatch_start, bound - lookback)
        last = None
        for last in occurrences(rule, dispatch_start, window_start, bound):
            pass
        if last is not None or window_start == dispatch_start:
            return last
        lookback *= 4


def compute_end_time(data: DispatchData) -> datetime | None:
    """Return the time at which a dispatch stops for good, or ``None`` if never.

    * One-shot: ``start_time + duration``; ``None`` without a duration
      ("until further notice").
    * ``Count``: start of the count-th occurrence plus duration.
    * ``Until``: last occurrence strictly before ``until`` plus duration.
    * No end criteria: ``None``.

    For recurring dispatches an unset duration adds nothing to the last
    start.  A bounded rule that never fires ends at ``start_time``.
    """
    rule = data.recurrence
    span = timedelta(seconds=data.duration or 0)

    if rule is None:
        return None if data.duration is None else data.start_time + span

    end = rule.end_criteria
    if end is None:
        return None

    if isinstance(end, Count):
        last = None
        for last in occurrences(rule, data.start_time):
            pass
    else:
        last = last_occurrence_before(rule, data.start_time, end.value)

    if last is None:
        return data.start_time
    return last + span


def first_occurrence(data: DispatchData) -> datetime | None:
    return next(occurrences(data.recurrence, data.start_time), None)


def next_occurrence(data: DispatchData, after: datetime) -> datetime | None:
    """First occurrence strictly after *after*."""
    return next(
        occurrences(data.recurrence, data.start_time, window_start=after + _ONE_MICROSECOND),
        None,
    )
