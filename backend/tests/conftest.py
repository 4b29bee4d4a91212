"""Shared test fixtures for dispatch engine, service and API tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from dispatch_engine.types import (
    ComponentCategories,
    ComponentCategory,
    ComponentIds,
    Count,
    DispatchData,
    Frequency,
    RecurrenceRule,
)

UTC = timezone.utc
T0 = datetime(2024, 1, 1, tzinfo=UTC)


class FakeClock:
    """Settable clock; starts a day before ``T0`` so ``T0`` lies in the future."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or T0 - timedelta(days=1)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


# ======================================================================
# Clock fixtures
# ======================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ======================================================================
# Dispatch data fixtures
# ======================================================================

@pytest.fixture
def one_shot_data() -> DispatchData:
    """One-hour battery charge at T0."""
    return DispatchData(
        type="CHARGE",
        start_time=T0,
        duration=3600,
        selector=ComponentIds((1, 2)),
        payload={"target_power_w": 5000},
    )


@pytest.fixture
def daily_data() -> DispatchData:
    """Three daily 15-minute runs at midnight, starting T0."""
    return DispatchData(
        type="PEAK_SHAVE",
        start_time=T0,
        duration=900,
        selector=ComponentCategories((ComponentCategory.BATTERY,)),
        recurrence=RecurrenceRule(
            freq=Frequency.DAILY,
            byhours=(0,),
            end_criteria=Count(3),
        ),
    )
