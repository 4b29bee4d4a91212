"""Tests for dispatch_engine.activation -- the activation state machine."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from dispatch_engine.activation import ActivationState, evaluate_activation, is_covering
from dispatch_engine.errors import InvalidArgument
from dispatch_engine.recurrence import compute_end_time
from dispatch_engine.types import (
    ComponentIds,
    Count,
    Dispatch,
    DispatchData,
    DispatchMetadata,
    Frequency,
    RecurrenceRule,
)

UTC = timezone.utc
T0 = datetime(2024, 1, 1, tzinfo=UTC)


def _dispatch(data: DispatchData) -> Dispatch:
    created = T0 - timedelta(days=1)
    return Dispatch(
        microgrid_id=1,
        metadata=DispatchMetadata(
            dispatch_id=1,
            create_time=created,
            modification_time=created,
            end_time=compute_end_time(data),
        ),
        data=data,
    )


def _at(dispatch: Dispatch, **offset: float) -> ActivationState:
    return evaluate_activation(dispatch, T0 + timedelta(**offset))


# ======================================================================
# Recurring dispatches with a duration
# ======================================================================


class TestRecurringWithDuration:
    """Daily 15-minute runs at midnight, three times."""

    @pytest.fixture
    def dispatch(self, daily_data) -> Dispatch:
        return _dispatch(daily_data)

    def test_pending_before_first_start(self, dispatch):
        assert _at(dispatch, minutes=-1) is ActivationState.PENDING

    def test_active_from_occurrence_start(self, dispatch):
        assert _at(dispatch) is ActivationState.ACTIVE
        assert _at(dispatch, minutes=14, seconds=59) is ActivationState.ACTIVE

    def test_pending_between_occurrences(self, dispatch):
        assert _at(dispatch, minutes=15) is ActivationState.PENDING
        assert _at(dispatch, hours=12) is ActivationState.PENDING

    def test_active_during_last_occurrence(self, dispatch):
        assert _at(dispatch, days=2, minutes=10) is ActivationState.ACTIVE

    def test_expired_at_end_time(self, dispatch):
        assert dispatch.metadata.end_time == T0 + timedelta(days=2, minutes=15)
        assert _at(dispatch, days=2, minutes=15) is ActivationState.INACTIVE_EXPIRED
        assert _at(dispatch, days=30) is ActivationState.INACTIVE_EXPIRED

    def test_disabled_overrides_everything(self, dispatch):
        disabled = replace(dispatch, data=replace(dispatch.data, is_active=False))
        for offset in (-1, 5, 60 * 24 * 30):
            assert _at(disabled, minutes=offset) is ActivationState.DISABLED

    def test_dry_run_follows_same_transitions(self, dispatch):
        dry = replace(dispatch, data=replace(dispatch.data, is_dry_run=True))
        for offset in (-1, 5, 20, 60 * 24 * 3):
            assert _at(dry, minutes=offset) is _at(dispatch, minutes=offset)

    def test_covering_boundaries(self, dispatch):
        assert is_covering(dispatch, T0)
        assert not is_covering(dispatch, T0 + timedelta(minutes=15))
        assert not is_covering(dispatch, T0 - timedelta(microseconds=1))


# ======================================================================
# One-shot dispatches
# ======================================================================


class TestOneShot:
    def test_with_duration(self, one_shot_data):
        dispatch = _dispatch(one_shot_data)
        assert _at(dispatch, seconds=-1) is ActivationState.PENDING
        assert _at(dispatch, minutes=30) is ActivationState.ACTIVE
        assert _at(dispatch, hours=1) is ActivationState.INACTIVE_EXPIRED

    def test_without_duration_runs_until_further_notice(self, one_shot_data):
        dispatch = _dispatch(replace(one_shot_data, duration=None))
        assert dispatch.metadata.end_time is None
        assert _at(dispatch, seconds=-1) is ActivationState.PENDING
        assert _at(dispatch) is ActivationState.ACTIVE
        assert _at(dispatch, days=3650) is ActivationState.ACTIVE

    def test_zero_duration_is_never_active(self, one_shot_data):
        dispatch = _dispatch(replace(one_shot_data, duration=0))
        assert _at(dispatch, seconds=-1) is ActivationState.PENDING
        assert _at(dispatch) is ActivationState.INACTIVE_EXPIRED


# ======================================================================
# Recurring dispatches without a duration
# ======================================================================


class TestRecurringWithoutDuration:
    def test_active_until_last_start(self):
        data = DispatchData(
            type="TEST",
            start_time=T0,
            selector=ComponentIds((1,)),
            recurrence=RecurrenceRule(freq=Frequency.DAILY, end_criteria=Count(3)),
        )
        dispatch = _dispatch(data)
        assert _at(dispatch, seconds=-1) is ActivationState.PENDING
        assert _at(dispatch, days=1) is ActivationState.ACTIVE
        assert _at(dispatch, days=2) is ActivationState.INACTIVE_EXPIRED

    def test_unbounded_rule_never_expires(self):
        data = DispatchData(
            type="TEST",
            start_time=T0,
            duration=60,
            selector=ComponentIds((1,)),
            recurrence=RecurrenceRule(freq=Frequency.WEEKLY),
        )
        dispatch = _dispatch(data)
        assert _at(dispatch, days=7) is ActivationState.ACTIVE
        assert _at(dispatch, days=7 * 520, hours=1) is ActivationState.PENDING


def test_naive_now_rejected(one_shot_data):
    with pytest.raises(InvalidArgument):
        evaluate_activation(_dispatch(one_shot_data), datetime(2024, 1, 1))
