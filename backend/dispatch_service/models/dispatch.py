from datetime import datetime, timezone
from typing import Any

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from dispatch_engine.types import (
    ComponentCategories,
    ComponentIds,
    ComponentSelector,
    Count,
    Dispatch,
    DispatchData,
    DispatchMetadata,
    RecurrenceRule,
    Until,
)
from dispatch_service.models.database import Base


class DispatchRecord(Base):
    __tablename__ = "dispatches"
    __table_args__ = (Index("ix_dispatches_microgrid_create_time", "microgrid_id", "create_time"),)

    microgrid_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    dispatch_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    type: Mapped[str] = mapped_column(Text, nullable=False, default="")
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration: Mapped[int | None] = mapped_column(BigInteger)  # seconds
    selector: Mapped[dict] = mapped_column(JSONB, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    recurrence: Mapped[dict | None] = mapped_column(JSONB)
    create_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    modification_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))  # None = unbounded

    def apply(self, data: DispatchData) -> None:
        self.type = data.type
        self.start_time = data.start_time
        self.duration = data.duration
        self.selector = selector_to_json(data.selector)
        self.is_active = data.is_active
        self.is_dry_run = data.is_dry_run
        self.payload = dict(data.payload)
        self.recurrence = None if data.recurrence is None else recurrence_to_json(data.recurrence)

    def to_domain(self) -> Dispatch:
        data = DispatchData(
            type=self.type,
            start_time=_utc(self.start_time),
            duration=self.duration,
            selector=selector_from_json(self.selector),
            is_active=self.is_active,
            is_dry_run=self.is_dry_run,
            payload=self.payload or {},
            recurrence=None if self.recurrence is None else recurrence_from_json(self.recurrence),
        )
        metadata = DispatchMetadata(
            dispatch_id=self.dispatch_id,
            create_time=_utc(self.create_time),
            modification_time=_utc(self.modification_time),
            end_time=None if self.end_time is None else _utc(self.end_time),
        )
        return Dispatch(microgrid_id=self.microgrid_id, metadata=metadata, data=data)


class MicrogridDispatchCounter(Base):
    """Last dispatch id handed out per microgrid; ids are never reused."""

    __tablename__ = "microgrid_dispatch_counters"

    microgrid_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    last_dispatch_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


def _utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; every stored value is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# JSON column codecs
# ---------------------------------------------------------------------------


def selector_to_json(selector: ComponentSelector) -> dict[str, Any]:
    if isinstance(selector, ComponentIds):
        return {"component_ids": list(selector.ids)}
    if isinstance(selector, ComponentCategories):
        return {"component_categories": [c.value for c in selector.categories]}
    raise TypeError(f"unsupported selector type: {type(selector).__name__}")


def selector_from_json(raw: dict[str, Any]) -> ComponentSelector:
    if "component_ids" in raw:
        return ComponentIds(tuple(raw["component_ids"]))
    return ComponentCategories(tuple(raw["component_categories"]))


def recurrence_to_json(rule: RecurrenceRule) -> dict[str, Any]:
    end: dict[str, Any] | None
    if isinstance(rule.end_criteria, Count):
        end = {"count": rule.end_criteria.value}
    elif isinstance(rule.end_criteria, Until):
        end = {"until": rule.end_criteria.value.isoformat()}
    else:
        end = None
    return {
        "freq": rule.freq.value,
        "interval": rule.interval,
        "end_criteria": end,
        "byminutes": list(rule.byminutes),
        "byhours": list(rule.byhours),
        "byweekdays": [w.value for w in rule.byweekdays],
        "bymonthdays": list(rule.bymonthdays),
        "bymonths": list(rule.bymonths),
    }


def recurrence_from_json(raw: dict[str, Any]) -> RecurrenceRule:
    end_raw = raw.get("end_criteria")
    end: Count | Until | None = None
    if end_raw and "count" in end_raw:
        end = Count(end_raw["count"])
    elif end_raw and "until" in end_raw:
        end = Until(datetime.fromisoformat(end_raw["until"]))
    return RecurrenceRule(
        freq=raw["freq"],
        interval=raw.get("interval", 1),
        end_criteria=end,
        byminutes=tuple(raw.get("byminutes", ())),
        byhours=tuple(raw.get("byhours", ())),
        byweekdays=tuple(raw.get("byweekdays", ())),
        bymonthdays=tuple(raw.get("bymonthdays", ())),
        bymonths=tuple(raw.get("bymonths", ())),
    )
