"""Activation state machine for a single dispatch.

States
------
* ``DISABLED`` -- the dispatch's ``is_active`` flag is false.  Overrides
  everything else.
* ``ACTIVE`` -- *now* falls inside ``[occurrence, occurrence + duration)``
  for some occurrence.  Without a duration, a dispatch is active from its
  first occurrence until its overall end time (forever when unbounded).
* ``PENDING`` -- enabled, not active, and a later occurrence exists.
* ``INACTIVE_EXPIRED`` -- enabled, not active, nothing left to run.

Dry-run dispatches go through the same transitions; consumers decide
whether to apply effects.
"""

from __future__ import annotations

import enum
from datetime import datetime, timedelta

from dispatch_engine.recurrence import first_occurrence, next_occurrence, occurrences
from dispatch_engine.types import Dispatch, ensure_utc

_ONE_MICROSECOND = timedelta(microseconds=1)


class ActivationState(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    INACTIVE_EXPIRED = "INACTIVE_EXPIRED"
    DISABLED = "DISABLED"


def is_covering(dispatch: Dispatch, now: datetime) -> bool:
    """True when an occurrence with a duration covers *now*."""
    data = dispatch.data
    if not data.duration:
        return False
    span = timedelta(seconds=data.duration)
    window = occurrences(
        data.recurrence,
        data.start_time,
        window_start=now - span + _ONE_MICROSECOND,
        window_end=now + _ONE_MICROSECOND,
    )
    return next(window, None) is not None


def evaluate_activation(dispatch: Dispatch, now: datetime) -> ActivationState:
    """Return the activation state of *dispatch* at *now*."""
    now = ensure_utc(now, "now")
    data = dispatch.data
    if not data.is_active:
        return ActivationState.DISABLED

    end_time = dispatch.metadata.end_time

    if data.duration is None:
        first = first_occurrence(data)
        if first is None:
            return ActivationState.INACTIVE_EXPIRED
        if now < first:
            return ActivationState.PENDING
        if end_time is None or now < end_time:
            return ActivationState.ACTIVE
        return ActivationState.INACTIVE_EXPIRED

    if end_time is not None and now >= end_time:
        return ActivationState.INACTIVE_EXPIRED
    if is_covering(dispatch, now):
        return ActivationState.ACTIVE
    if next_occurrence(data, now) is not None:
        return ActivationState.PENDING
    return ActivationState.INACTIVE_EXPIRED
