"""Pydantic schemas for the dispatch API.

Request schemas stay permissive about the either/or fields (selector, end
criteria) and convert to engine types in ``to_domain``; the engine raises
``InvalidArgument`` for empty or ambiguous values, which the API reports
as 400 like every other dispatch validation failure.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from dispatch_engine.activation import ActivationState
from dispatch_engine.errors import InvalidArgument
from dispatch_engine.types import (
    ComponentCategories,
    ComponentCategory,
    ComponentIds,
    ComponentSelector,
    Count,
    Dispatch,
    DispatchData,
    DispatchUpdate,
    EndCriteria,
    Frequency,
    RecurrenceRule,
    RecurrenceUpdate,
    Until,
    Weekday,
)
from dispatch_service.services.event_bus import ActivationEvent, DispatchEvent
from dispatch_service.services.query import DispatchView, PaginationInfo


class ComponentSelectorSchema(BaseModel):
    component_ids: list[int] | None = None
    component_categories: list[ComponentCategory] | None = None

    def to_domain(self) -> ComponentSelector:
        if self.component_ids and self.component_categories:
            raise InvalidArgument("selector must use either component ids or categories, not both")
        if self.component_ids:
            return ComponentIds(tuple(self.component_ids))
        if self.component_categories:
            return ComponentCategories(tuple(self.component_categories))
        raise InvalidArgument("selector must name at least one component id or category")

    @classmethod
    def from_domain(cls, selector: ComponentSelector) -> "ComponentSelectorSchema":
        if isinstance(selector, ComponentIds):
            return cls(component_ids=list(selector.ids))
        return cls(component_categories=list(selector.categories))


class EndCriteriaSchema(BaseModel):
    count: int | None = None
    until: datetime | None = None

    def to_domain(self) -> EndCriteria | None:
        if self.count is not None and self.until is not None:
            raise InvalidArgument("end_criteria takes either count or until, not both")
        if self.count is not None:
            return Count(self.count)
        if self.until is not None:
            return Until(self.until)
        return None

    @classmethod
    def from_domain(cls, end: EndCriteria | None) -> "EndCriteriaSchema | None":
        if isinstance(end, Count):
            return cls(count=end.value)
        if isinstance(end, Until):
            return cls(until=end.value)
        return None


class RecurrenceRuleSchema(BaseModel):
    freq: Frequency
    interval: int = 1
    end_criteria: EndCriteriaSchema | None = None
    byminutes: list[int] = Field(default_factory=list)
    byhours: list[int] = Field(default_factory=list)
    byweekdays: list[Weekday] = Field(default_factory=list)
    bymonthdays: list[int] = Field(default_factory=list)
    bymonths: list[int] = Field(default_factory=list)

    def to_domain(self) -> RecurrenceRule:
        return RecurrenceRule(
            freq=self.freq,
            interval=self.interval,
            end_criteria=self.end_criteria.to_domain() if self.end_criteria else None,
            byminutes=tuple(self.byminutes),
            byhours=tuple(self.byhours),
            byweekdays=tuple(self.byweekdays),
            bymonthdays=tuple(self.bymonthdays),
            bymonths=tuple(self.bymonths),
        )

    @classmethod
    def from_domain(cls, rule: RecurrenceRule) -> "RecurrenceRuleSchema":
        return cls(
            freq=rule.freq,
            interval=rule.interval,
            end_criteria=EndCriteriaSchema.from_domain(rule.end_criteria),
            byminutes=list(rule.byminutes),
            byhours=list(rule.byhours),
            byweekdays=list(rule.byweekdays),
            bymonthdays=list(rule.bymonthdays),
            bymonths=list(rule.bymonths),
        )


class DispatchCreate(BaseModel):
    type: str = Field(max_length=255)
    start_time: datetime
    duration: int | None = Field(default=None, description="Duration in seconds")
    selector: ComponentSelectorSchema
    is_active: bool = True
    is_dry_run: bool = False
    payload: dict[str, Any] = Field(default_factory=dict)
    recurrence: RecurrenceRuleSchema | None = None

    def to_domain(self) -> DispatchData:
        return DispatchData(
            type=self.type,
            start_time=self.start_time,
            duration=self.duration,
            selector=self.selector.to_domain(),
            is_active=self.is_active,
            is_dry_run=self.is_dry_run,
            payload=self.payload,
            recurrence=self.recurrence.to_domain() if self.recurrence else None,
        )


class RecurrenceRuleUpdate(BaseModel):
    freq: Frequency | None = None
    interval: int | None = None
    end_criteria: EndCriteriaSchema | None = None
    byminutes: list[int] = Field(default_factory=list)
    byhours: list[int] = Field(default_factory=list)
    byweekdays: list[Weekday] = Field(default_factory=list)
    bymonthdays: list[int] = Field(default_factory=list)
    bymonths: list[int] = Field(default_factory=list)

    def to_domain(self) -> RecurrenceUpdate:
        return RecurrenceUpdate(
            freq=self.freq,
            interval=self.interval,
            end_criteria=self.end_criteria.to_domain() if self.end_criteria else None,
            byminutes=tuple(self.byminutes),
            byhours=tuple(self.byhours),
            byweekdays=tuple(self.byweekdays),
            bymonthdays=tuple(self.bymonthdays),
            bymonths=tuple(self.bymonths),
        )


class DispatchPatch(BaseModel):
    type: str | None = Field(default=None, max_length=255)
    start_time: datetime | None = None
    duration: int | None = None
    selector: ComponentSelectorSchema | None = None
    is_active: bool | None = None
    is_dry_run: bool | None = None
    payload: dict[str, Any] | None = None
    recurrence: RecurrenceRuleUpdate | None = None

    def to_domain(self) -> DispatchUpdate:
        return DispatchUpdate(
            type=self.type,
            start_time=self.start_time,
            duration=self.duration,
            selector=self.selector.to_domain() if self.selector else None,
            is_active=self.is_active,
            is_dry_run=self.is_dry_run,
            payload=self.payload,
            recurrence=self.recurrence.to_domain() if self.recurrence else None,
        )


class DispatchUpdateRequest(BaseModel):
    update_mask: list[str] = Field(min_length=1)
    update: DispatchPatch = Field(default_factory=DispatchPatch)


class DispatchDataResponse(BaseModel):
    type: str
    start_time: datetime
    duration: int | None
    selector: ComponentSelectorSchema
    is_active: bool
    is_dry_run: bool
    payload: dict[str, Any]
    recurrence: RecurrenceRuleSchema | None


class DispatchMetadataResponse(BaseModel):
    dispatch_id: int
    create_time: datetime
    modification_time: datetime
    end_time: datetime | None


class DispatchResponse(BaseModel):
    microgrid_id: int
    metadata: DispatchMetadataResponse
    data: DispatchDataResponse
    activation_state: ActivationState | None = None

    @classmethod
    def from_domain(
        cls, dispatch: Dispatch, activation_state: ActivationState | None = None
    ) -> "DispatchResponse":
        data = dispatch.data
        meta = dispatch.metadata
        return cls(
            microgrid_id=dispatch.microgrid_id,
            metadata=DispatchMetadataResponse(
                dispatch_id=meta.dispatch_id,
                create_time=meta.create_time,
                modification_time=meta.modification_time,
                end_time=meta.end_time,
            ),
            data=DispatchDataResponse(
                type=data.type,
                start_time=data.start_time,
                duration=data.duration,
                selector=ComponentSelectorSchema.from_domain(data.selector),
                is_active=data.is_active,
                is_dry_run=data.is_dry_run,
                payload=data.payload,
                recurrence=(
                    RecurrenceRuleSchema.from_domain(data.recurrence) if data.recurrence else None
                ),
            ),
            activation_state=activation_state,
        )

    @classmethod
    def from_view(cls, view: DispatchView) -> "DispatchResponse":
        return cls.from_domain(view.dispatch, view.activation_state)


class PaginationInfoResponse(BaseModel):
    total_items: int
    next_page_token: str | None = None

    @classmethod
    def from_domain(cls, info: PaginationInfo) -> "PaginationInfoResponse":
        return cls(total_items=info.total_items, next_page_token=info.next_page_token)


class DispatchListResponse(BaseModel):
    dispatches: list[DispatchResponse]
    pagination_info: PaginationInfoResponse


class DispatchEventMessage(BaseModel):
    event: str  # CREATED | UPDATED | DELETED
    microgrid_id: int
    dispatch_id: int
    dispatch: DispatchResponse | None = None

    @classmethod
    def from_domain(cls, event: DispatchEvent) -> "DispatchEventMessage":
        return cls(
            event=event.kind.name,
            microgrid_id=event.microgrid_id,
            dispatch_id=event.dispatch_id,
            dispatch=DispatchResponse.from_domain(event.dispatch) if event.dispatch else None,
        )


class ActivationEventMessage(BaseModel):
    microgrid_id: int
    dispatch_id: int
    previous: ActivationState | None
    current: ActivationState
    is_dry_run: bool
    occurred_at: datetime

    @classmethod
    def from_domain(cls, event: ActivationEvent) -> "ActivationEventMessage":
        return cls(
            microgrid_id=event.microgrid_id,
            dispatch_id=event.dispatch_id,
            previous=event.previous,
            current=event.current,
            is_dry_run=event.is_dry_run,
            occurred_at=event.occurred_at,
        )
