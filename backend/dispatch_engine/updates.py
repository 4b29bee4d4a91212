"""Field-mask driven partial updates of :class:`DispatchData`.

Only the paths named in the mask are read from the patch; everything else
keeps its previous value.  ``recurrence.<field>`` paths merge into the
existing rule the same way.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable

from dispatch_engine.errors import FailedPrecondition, InvalidArgument
from dispatch_engine.types import (
    Count,
    DispatchData,
    DispatchUpdate,
    RecurrenceRule,
    RecurrenceUpdate,
    Until,
)

TOP_LEVEL_PATHS = frozenset(
    {
        "type",
        "start_time",
        "duration",
        "selector",
        "is_active",
        "is_dry_run",
        "payload",
        "recurrence",
    }
)

RECURRENCE_PATHS = frozenset(
    {
        "freq",
        "interval",
        "end_criteria",
        "end_criteria.count",
        "end_criteria.until",
        "byminutes",
        "byhours",
        "byweekdays",
        "bymonthdays",
        "bymonths",
    }
)

_LIST_FIELDS = ("byminutes", "byhours", "byweekdays", "bymonthdays", "bymonths")


def normalize_mask(update_mask: Iterable[str]) -> tuple[set[str], set[str]]:
    """Split *update_mask* into top-level and ``recurrence.*`` sub-paths."""
    top: set[str] = set()
    sub: set[str] = set()
    for raw in update_mask:
        path = raw.strip()
        if path in TOP_LEVEL_PATHS:
            top.add(path)
        elif path.startswith("recurrence.") and path[len("recurrence."):] in RECURRENCE_PATHS:
            sub.add(path[len("recurrence."):])
        else:
            raise InvalidArgument(f"unknown update mask path: {raw!r}")
    if not top and not sub:
        raise InvalidArgument("update mask must name at least one field")
    if {"end_criteria.count", "end_criteria.until"} <= sub:
        raise FailedPrecondition("a recurrence cannot end by both count and until")
    if "recurrence" in top and sub:
        raise InvalidArgument("'recurrence' and 'recurrence.*' paths cannot be mixed")
    return top, sub


def _rule_from_update(patch: RecurrenceUpdate) -> RecurrenceRule:
    if patch.freq is None:
        raise InvalidArgument("recurrence.freq is required when replacing the recurrence rule")
    return RecurrenceRule(
        freq=patch.freq,
        interval=1 if patch.interval is None else patch.interval,
        end_criteria=patch.end_criteria,
        byminutes=tuple(patch.byminutes),
        byhours=tuple(patch.byhours),
        byweekdays=tuple(patch.byweekdays),
        bymonthdays=tuple(patch.bymonthdays),
        bymonths=tuple(patch.bymonths),
    )


def _merge_rule(rule: RecurrenceRule, sub: set[str], patch: RecurrenceUpdate) -> RecurrenceRule:
    changes: dict = {}
    if "freq" in sub:
        if patch.freq is None:
            raise InvalidArgument("recurrence.freq cannot be cleared; clear 'recurrence' instead")
        changes["freq"] = patch.freq
    if "interval" in sub:
        changes["interval"] = 1 if patch.interval is None else patch.interval
    if "end_criteria" in sub:
        changes["end_criteria"] = patch.end_criteria
    if "end_criteria.count" in sub:
        if not isinstance(patch.end_criteria, Count):
            raise InvalidArgument("recurrence.end_criteria.count requires a count value")
        changes["end_criteria"] = patch.end_criteria
    if "end_criteria.until" in sub:
        if not isinstance(patch.end_criteria, Until):
            raise InvalidArgument("recurrence.end_criteria.until requires an until timestamp")
        changes["end_criteria"] = patch.end_criteria
    for name in _LIST_FIELDS:
        if name in sub:
            changes[name] = tuple(getattr(patch, name))
    return replace(rule, **changes)


def apply_update(
    data: DispatchData, update_mask: Iterable[str], patch: DispatchUpdate
) -> DispatchData:
    """Return *data* with the masked fields of *patch* applied.

    Raises
    ------
    InvalidArgument
        Unknown or empty mask, or a patched value that fails validation.
    FailedPrecondition
        The mask asks for something the stored dispatch cannot take, such as
        recurrence sub-fields on a dispatch without a rule.
    """
    top, sub = normalize_mask(update_mask)
    changes: dict = {}

    for name in ("type", "start_time", "duration", "is_active", "is_dry_run"):
        if name in top:
            value = getattr(patch, name)
            if value is None and name != "duration":
                raise InvalidArgument(f"{name} cannot be cleared")
            changes[name] = value
    if "selector" in top:
        if patch.selector is None:
            raise InvalidArgument("selector cannot be cleared")
        changes["selector"] = patch.selector
    if "payload" in top:
        changes["payload"] = {} if patch.payload is None else patch.payload

    if "recurrence" in top:
        changes["recurrence"] = None if patch.recurrence is None else _rule_from_update(patch.recurrence)
    elif sub:
        if data.recurrence is None:
            raise FailedPrecondition(
                "dispatch has no recurrence rule; set 'recurrence' as a whole first"
            )
        changes["recurrence"] = _merge_rule(data.recurrence, sub, patch.recurrence or RecurrenceUpdate())

    return replace(data, **changes)
