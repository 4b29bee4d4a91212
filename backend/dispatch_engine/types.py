"""Domain types for microgrid dispatches.

Every type here is an immutable value object.  Validation happens on
construction, so an instance that exists is an instance that is valid:
``RecurrenceRule(freq=Frequency.WEEKLY, bymonthdays=(1,))`` raises
:class:`~dispatch_engine.errors.InvalidArgument` immediately.

Sum types
---------
The selector and the recurrence end criteria are *either/or* values.  They
are modelled as small classes joined by a type alias and consumed with
``isinstance`` dispatch, never as pairs of optional fields:

* ``ComponentSelector = ComponentIds | ComponentCategories``
* ``EndCriteria = Count | Until``
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Union

from dispatch_engine.errors import InvalidArgument

# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

MAX_COUNT = 4096
MAX_INTERVAL = 10_000
MAX_DURATION_SECONDS = 2**32 - 1
MAX_PAYLOAD_DEPTH = 5
MAX_PAYLOAD_BYTES = 50 * 1024


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Frequency(str, enum.Enum):
    MINUTELY = "MINUTELY"
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class Weekday(str, enum.Enum):
    MONDAY = "MONDAY"
    TUESDAY = "TUESDAY"
    WEDNESDAY = "WEDNESDAY"
    THURSDAY = "THURSDAY"
    FRIDAY = "FRIDAY"
    SATURDAY = "SATURDAY"
    SUNDAY = "SUNDAY"

    @property
    def index(self) -> int:
        """Python weekday number (Monday is 0)."""
        return _WEEKDAY_ORDER.index(self)


_WEEKDAY_ORDER = list(Weekday)


class ComponentCategory(str, enum.Enum):
    GRID = "grid"
    METER = "meter"
    INVERTER = "inverter"
    CONVERTER = "converter"
    BATTERY = "battery"
    EV_CHARGER = "ev_charger"
    CRYPTO_MINER = "crypto_miner"
    ELECTROLYZER = "electrolyzer"
    CHP = "chp"
    RELAY = "relay"
    BREAKER = "breaker"
    PRECHARGER = "precharger"
    FUSE = "fuse"
    VOLTAGE_TRANSFORMER = "voltage_transformer"
    HVAC = "hvac"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def ensure_utc(value: datetime, name: str) -> datetime:
    """Return *value* converted to UTC; reject naive timestamps."""
    if not isinstance(value, datetime):
        raise InvalidArgument(f"{name} must be a timestamp, got {type(value).__name__}")
    if value.tzinfo is None or value.utcoffset() is None:
        raise InvalidArgument(f"{name} must be timezone-aware (UTC)")
    return value.astimezone(timezone.utc)


def _int_set(values: Iterable[int], name: str, valid: range) -> tuple[int, ...]:
    out = set()
    for v in values:
        if isinstance(v, bool) or not isinstance(v, int) or v not in valid:
            raise InvalidArgument(
                f"{name} values must be integers in [{valid.start}, {valid.stop - 1}], got {v!r}"
            )
        out.add(v)
    return tuple(sorted(out))


def _payload_depth(value: Any) -> int:
    if isinstance(value, dict):
        return 1 + max((_payload_depth(v) for v in value.values()), default=0)
    if isinstance(value, list):
        return 1 + max((_payload_depth(v) for v in value), default=0)
    return 0


def validate_payload(payload: dict[str, Any]) -> None:
    """Reject payloads nested deeper than 5 levels or larger than 50 KB."""
    if not isinstance(payload, dict):
        raise InvalidArgument("payload must be a JSON object")
    depth = _payload_depth(payload)
    if depth > MAX_PAYLOAD_DEPTH:
        raise InvalidArgument(
            f"payload nesting depth {depth} exceeds the maximum of {MAX_PAYLOAD_DEPTH}"
        )
    try:
        encoded = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise InvalidArgument(f"payload is not JSON-serialisable: {exc}") from exc
    if len(encoded) > MAX_PAYLOAD_BYTES:
        raise InvalidArgument(
            f"payload size {len(encoded)} bytes exceeds the maximum of {MAX_PAYLOAD_BYTES}"
        )


# ---------------------------------------------------------------------------
# Component selector
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ComponentIds:
    ids: tuple[int, ...]

    def __post_init__(self) -> None:
        ids = _int_set(self.ids, "component id", range(0, 2**64))
        if not ids:
            raise InvalidArgument("component selector must name at least one component id")
        object.__setattr__(self, "ids", ids)


@dataclass(frozen=True)
class ComponentCategories:
    categories: tuple[ComponentCategory, ...]

    def __post_init__(self) -> None:
        try:
            cats = {ComponentCategory(c) for c in self.categories}
        except ValueError as exc:
            raise InvalidArgument(f"unknown component category: {exc}") from exc
        if not cats:
            raise InvalidArgument("component selector must name at least one category")
        object.__setattr__(self, "categories", tuple(sorted(cats, key=lambda c: c.value)))


ComponentSelector = Union[ComponentIds, ComponentCategories]


# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Count:
    value: int

    def __post_init__(self) -> None:
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise InvalidArgument("count must be an integer")
        if not 1 <= self.value <= MAX_COUNT:
            raise InvalidArgument(f"count must be in [1, {MAX_COUNT}], got {self.value}")


@dataclass(frozen=True)
class Until:
    value: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", ensure_utc(self.value, "until"))


EndCriteria = Union[Count, Until]


@dataclass(frozen=True)
class RecurrenceRule:
    """iCalendar-like recurrence rule (RFC 5545 subset, UTC only).

    Restriction lists are normalised to sorted tuples without duplicates.
    """

    freq: Frequency
    interval: int = 1
    end_criteria: EndCriteria | None = None
    byminutes: tuple[int, ...] = ()
    byhours: tuple[int, ...] = ()
    byweekdays: tuple[Weekday, ...] = ()
    bymonthdays: tuple[int, ...] = ()
    bymonths: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        try:
            freq = Frequency(self.freq)
        except ValueError as exc:
            raise InvalidArgument(f"unknown recurrence frequency: {self.freq!r}") from exc
        object.__setattr__(self, "freq", freq)

        if isinstance(self.interval, bool) or not isinstance(self.interval, int):
            raise InvalidArgument("interval must be an integer")
        if not 1 <= self.interval <= MAX_INTERVAL:
            raise InvalidArgument(
                f"interval must be in [1, {MAX_INTERVAL}], got {self.interval}"
            )
        if self.end_criteria is not None and not isinstance(self.end_criteria, (Count, Until)):
            raise InvalidArgument("end_criteria must be either a count or an until timestamp")

        object.__setattr__(self, "byminutes", _int_set(self.byminutes, "byminutes", range(0, 60)))
        object.__setattr__(self, "byhours", _int_set(self.byhours, "byhours", range(0, 24)))
        object.__setattr__(self, "bymonths", _int_set(self.bymonths, "bymonths", range(1, 13)))

        monthdays = _int_set(self.bymonthdays, "bymonthdays", range(-31, 32))
        if 0 in monthdays:
            raise InvalidArgument("bymonthdays values must be in 1..31 or -31..-1")
        if monthdays and freq is Frequency.WEEKLY:
            raise InvalidArgument("bymonthdays must not be used with a WEEKLY frequency")
        object.__setattr__(self, "bymonthdays", monthdays)

        try:
            weekdays = {Weekday(w) for w in self.byweekdays}
        except ValueError as exc:
            raise InvalidArgument(f"unknown weekday: {exc}") from exc
        object.__setattr__(self, "byweekdays", tuple(sorted(weekdays, key=lambda w: w.index)))

    @property
    def has_restrictions(self) -> bool:
        return bool(
            self.byminutes or self.byhours or self.byweekdays or self.bymonthdays or self.bymonths
        )

    @property
    def is_bounded(self) -> bool:
        return self.end_criteria is not None


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DispatchData:
    """The user-controlled part of a dispatch."""

    type: str
    start_time: datetime
    selector: ComponentSelector
    duration: int | None = None  # seconds
    is_active: bool = True
    is_dry_run: bool = False
    payload: dict[str, Any] = field(default_factory=dict)
    recurrence: RecurrenceRule | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.type, str):
            raise InvalidArgument("type must be a string")
        object.__setattr__(self, "start_time", ensure_utc(self.start_time, "start_time"))
        if not isinstance(self.selector, (ComponentIds, ComponentCategories)):
            raise InvalidArgument("selector must be a set of component ids or categories")
        if self.duration is not None:
            if isinstance(self.duration, bool) or not isinstance(self.duration, int):
                raise InvalidArgument("duration must be an integer number of seconds")
            if not 0 <= self.duration <= MAX_DURATION_SECONDS:
                raise InvalidArgument(
                    f"duration must be in [0, {MAX_DURATION_SECONDS}] seconds"
                )
        validate_payload(self.payload)
        if self.recurrence is not None and not isinstance(self.recurrence, RecurrenceRule):
            raise InvalidArgument("recurrence must be a RecurrenceRule")


@dataclass(frozen=True)
class DispatchMetadata:
    """Store-owned metadata; ``end_time`` is ``None`` when unbounded."""

    dispatch_id: int
    create_time: datetime
    modification_time: datetime
    end_time: datetime | None


@dataclass(frozen=True)
class Dispatch:
    microgrid_id: int
    metadata: DispatchMetadata
    data: DispatchData

    @property
    def dispatch_id(self) -> int:
        return self.metadata.dispatch_id

    @property
    def key(self) -> tuple[int, int]:
        return (self.microgrid_id, self.metadata.dispatch_id)


# ---------------------------------------------------------------------------
# Partial updates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RecurrenceUpdate:
    """Values for ``recurrence.*`` field-mask paths; only masked fields are read."""

    freq: Frequency | None = None
    interval: int | None = None
    end_criteria: EndCriteria | None = None
    byminutes: tuple[int, ...] = ()
    byhours: tuple[int, ...] = ()
    byweekdays: tuple[Weekday, ...] = ()
    bymonthdays: tuple[int, ...] = ()
    bymonths: tuple[int, ...] = ()


@dataclass(frozen=True)
class DispatchUpdate:
    """Values for a field-masked update; only masked fields are read.

    ``recurrence=None`` together with the ``recurrence`` path removes the
    rule; ``duration=None`` with the ``duration`` path clears the duration.
    """

    type: str | None = None
    start_time: datetime | None = None
    duration: int | None = None
    selector: ComponentSelector | None = None
    is_active: bool | None = None
    is_dry_run: bool | None = None
    payload: dict[str, Any] | None = None
    recurrence: RecurrenceUpdate | None = None
