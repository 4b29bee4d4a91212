"""Tests for dispatch_engine.filters and dispatch_engine.updates."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from dispatch_engine.errors import FailedPrecondition, InvalidArgument
from dispatch_engine.filters import (
    DispatchFilter,
    RecurrenceFilter,
    TimeInterval,
    matches,
    selector_overlaps,
)
from dispatch_engine.types import (
    MAX_PAYLOAD_BYTES,
    ComponentCategories,
    ComponentCategory,
    ComponentIds,
    Count,
    Dispatch,
    DispatchData,
    DispatchMetadata,
    DispatchUpdate,
    Frequency,
    RecurrenceRule,
    RecurrenceUpdate,
    Until,
    Weekday,
)
from dispatch_engine.updates import apply_update, normalize_mask

UTC = timezone.utc
T0 = datetime(2024, 1, 1, tzinfo=UTC)


def _dispatch(data: DispatchData, end_time: datetime | None = None) -> Dispatch:
    return Dispatch(
        microgrid_id=1,
        metadata=DispatchMetadata(
            dispatch_id=1,
            create_time=T0 - timedelta(days=1),
            modification_time=T0 - timedelta(hours=1),
            end_time=end_time,
        ),
        data=data,
    )


# ======================================================================
# Value validation
# ======================================================================


class TestDispatchDataValidation:
    def test_empty_selectors_rejected(self):
        with pytest.raises(InvalidArgument):
            ComponentIds(())
        with pytest.raises(InvalidArgument):
            ComponentCategories(())

    def test_unknown_category_rejected(self):
        with pytest.raises(InvalidArgument):
            ComponentCategories(("toaster",))

    def test_naive_start_time_rejected(self):
        with pytest.raises(InvalidArgument):
            DispatchData(type="X", start_time=datetime(2024, 1, 1), selector=ComponentIds((1,)))

    def test_non_utc_start_time_converted(self):
        cet = timezone(timedelta(hours=1))
        data = DispatchData(
            type="X", start_time=datetime(2024, 1, 1, 1, tzinfo=cet), selector=ComponentIds((1,))
        )
        assert data.start_time == T0
        assert data.start_time.tzinfo is UTC

    def test_negative_duration_rejected(self):
        with pytest.raises(InvalidArgument):
            DispatchData(type="X", start_time=T0, duration=-1, selector=ComponentIds((1,)))

    def test_payload_depth_limit(self):
        five = {"a": {"b": {"c": {"d": {"e": 1}}}}}
        DispatchData(type="X", start_time=T0, selector=ComponentIds((1,)), payload=five)
        with pytest.raises(InvalidArgument):
            DispatchData(
                type="X",
                start_time=T0,
                selector=ComponentIds((1,)),
                payload={"deeper": five},
            )

    def test_payload_size_limit(self):
        with pytest.raises(InvalidArgument):
            DispatchData(
                type="X",
                start_time=T0,
                selector=ComponentIds((1,)),
                payload={"blob": "x" * MAX_PAYLOAD_BYTES},
            )


# ======================================================================
# Filters
# ======================================================================


class TestTimeInterval:
    def test_half_open(self):
        interval = TimeInterval(start=T0, end=T0 + timedelta(hours=1))
        assert interval.contains(T0)
        assert not interval.contains(T0 + timedelta(hours=1))
        assert not interval.contains(T0 - timedelta(seconds=1))

    def test_unbounded_value_matches_open_end_only(self):
        assert TimeInterval(start=T0).contains(None)
        assert not TimeInterval(start=T0, end=T0 + timedelta(days=1)).contains(None)

    def test_reversed_interval_rejected(self):
        with pytest.raises(InvalidArgument):
            TimeInterval(start=T0, end=T0 - timedelta(seconds=1))


class TestSelectorOverlap:
    def test_ids_overlap(self):
        assert selector_overlaps(ComponentIds((1, 2)), ComponentIds((2, 3)))
        assert not selector_overlaps(ComponentIds((1,)), ComponentIds((2, 3)))

    def test_categories_overlap(self):
        battery = ComponentCategories((ComponentCategory.BATTERY,))
        assert selector_overlaps(
            battery, ComponentCategories((ComponentCategory.BATTERY, ComponentCategory.INVERTER))
        )
        assert not selector_overlaps(battery, ComponentIds((1,)))


class TestMatches:
    def test_empty_filter_matches_everything(self, one_shot_data):
        assert matches(_dispatch(one_shot_data), DispatchFilter())

    def test_selectors_are_disjunctive(self, one_shot_data):
        flt = DispatchFilter(
            selectors=(ComponentCategories((ComponentCategory.BATTERY,)), ComponentIds((2, 99)))
        )
        assert matches(_dispatch(one_shot_data), flt)

    def test_flags(self, one_shot_data):
        dispatch = _dispatch(replace(one_shot_data, is_dry_run=True))
        assert matches(dispatch, DispatchFilter(is_dry_run=True, is_active=True))
        assert not matches(dispatch, DispatchFilter(is_dry_run=False))
        assert not matches(dispatch, DispatchFilter(is_active=False))

    def test_is_recurring(self, one_shot_data, daily_data):
        assert matches(_dispatch(daily_data), DispatchFilter(recurrence=True))
        assert not matches(_dispatch(one_shot_data), DispatchFilter(recurrence=True))
        assert matches(_dispatch(one_shot_data), DispatchFilter(recurrence=False))

    def test_structured_recurrence(self, daily_data):
        dispatch = _dispatch(daily_data)
        assert matches(dispatch, DispatchFilter(recurrence=RecurrenceFilter(freq=Frequency.DAILY)))
        assert matches(dispatch, DispatchFilter(recurrence=RecurrenceFilter(byhours=(0,))))
        assert not matches(dispatch, DispatchFilter(recurrence=RecurrenceFilter(byhours=(0, 1))))
        assert not matches(dispatch, DispatchFilter(recurrence=RecurrenceFilter(interval=2)))
        assert matches(
            dispatch, DispatchFilter(recurrence=RecurrenceFilter(end_criteria=Count(3)))
        )

    def test_end_time_interval_with_unbounded_end(self, one_shot_data):
        open_ended = _dispatch(replace(one_shot_data, duration=None), end_time=None)
        assert matches(open_ended, DispatchFilter(end_time_interval=TimeInterval(start=T0)))
        assert not matches(
            open_ended,
            DispatchFilter(end_time_interval=TimeInterval(start=T0, end=T0 + timedelta(days=1))),
        )

    def test_update_time_interval(self, one_shot_data):
        dispatch = _dispatch(one_shot_data)
        assert matches(dispatch, DispatchFilter(update_time_interval=TimeInterval(end=T0)))
        assert not matches(dispatch, DispatchFilter(update_time_interval=TimeInterval(start=T0)))


# ======================================================================
# Field-mask updates
# ======================================================================


class TestNormalizeMask:
    def test_splits_paths(self):
        top, sub = normalize_mask(["is_active", "recurrence.interval"])
        assert top == {"is_active"}
        assert sub == {"interval"}

    @pytest.mark.parametrize("mask", [[], ["colour"], ["recurrence.colour"]])
    def test_invalid_masks(self, mask):
        with pytest.raises(InvalidArgument):
            normalize_mask(mask)

    def test_count_and_until_together(self):
        with pytest.raises(FailedPrecondition):
            normalize_mask(["recurrence.end_criteria.count", "recurrence.end_criteria.until"])

    def test_whole_and_partial_recurrence_together(self):
        with pytest.raises(InvalidArgument):
            normalize_mask(["recurrence", "recurrence.freq"])


class TestApplyUpdate:
    def test_only_masked_fields_change(self, daily_data):
        patch = DispatchUpdate(is_active=False, type="IGNORED", duration=1)
        updated = apply_update(daily_data, ["is_active"], patch)
        assert updated == replace(daily_data, is_active=False)

    def test_duration_can_be_cleared(self, one_shot_data):
        updated = apply_update(one_shot_data, ["duration"], DispatchUpdate(duration=None))
        assert updated.duration is None

    def test_required_field_cannot_be_cleared(self, one_shot_data):
        with pytest.raises(InvalidArgument):
            apply_update(one_shot_data, ["start_time"], DispatchUpdate())

    def test_merges_recurrence_subfields(self, daily_data):
        patch = DispatchUpdate(
            recurrence=RecurrenceUpdate(interval=2, byweekdays=(Weekday.MONDAY,))
        )
        updated = apply_update(
            daily_data, ["recurrence.interval", "recurrence.byweekdays"], patch
        )
        assert updated.recurrence.interval == 2
        assert updated.recurrence.byweekdays == (Weekday.MONDAY,)
        assert updated.recurrence.byhours == (0,)
        assert updated.recurrence.end_criteria == Count(3)

    def test_switch_end_criteria_to_until(self, daily_data):
        until = Until(T0 + timedelta(days=10))
        updated = apply_update(
            daily_data,
            ["recurrence.end_criteria.until"],
            DispatchUpdate(recurrence=RecurrenceUpdate(end_criteria=until)),
        )
        assert updated.recurrence.end_criteria == until

    def test_mismatched_end_criteria_value(self, daily_data):
        with pytest.raises(InvalidArgument):
            apply_update(
                daily_data,
                ["recurrence.end_criteria.count"],
                DispatchUpdate(recurrence=RecurrenceUpdate(end_criteria=Until(T0))),
            )

    def test_subfield_without_rule(self, one_shot_data):
        with pytest.raises(FailedPrecondition):
            apply_update(
                one_shot_data,
                ["recurrence.interval"],
                DispatchUpdate(recurrence=RecurrenceUpdate(interval=2)),
            )

    def test_replace_whole_rule(self, one_shot_data):
        updated = apply_update(
            one_shot_data,
            ["recurrence"],
            DispatchUpdate(recurrence=RecurrenceUpdate(freq=Frequency.HOURLY, end_criteria=Count(2))),
        )
        assert updated.recurrence == RecurrenceRule(freq=Frequency.HOURLY, end_criteria=Count(2))

    def test_replace_rule_requires_freq(self, one_shot_data):
        with pytest.raises(InvalidArgument):
            apply_update(
                one_shot_data,
                ["recurrence"],
                DispatchUpdate(recurrence=RecurrenceUpdate(interval=2)),
            )

    def test_remove_rule(self, daily_data):
        updated = apply_update(daily_data, ["recurrence"], DispatchUpdate())
        assert updated.recurrence is None

    def test_invalid_merged_rule_rejected(self, daily_data):
        with pytest.raises(InvalidArgument):
            apply_update(
                daily_data,
                ["recurrence.freq", "recurrence.bymonthdays"],
                DispatchUpdate(
                    recurrence=RecurrenceUpdate(freq=Frequency.WEEKLY, bymonthdays=(1,))
                ),
            )
