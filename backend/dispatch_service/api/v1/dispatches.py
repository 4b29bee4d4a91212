import json
from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import StreamingResponse

from dispatch_engine.activation import evaluate_activation
from dispatch_engine.errors import InvalidArgument, ResourceExhausted
from dispatch_engine.filters import DispatchFilter, RecurrenceFilter, TimeInterval
from dispatch_engine.types import (
    ComponentCategories,
    ComponentCategory,
    ComponentIds,
    Frequency,
)
from dispatch_service.core.deps import get_services
from dispatch_service.core.errors import error_body
from dispatch_service.schemas.dispatch import (
    ActivationEventMessage,
    DispatchCreate,
    DispatchEventMessage,
    DispatchListResponse,
    DispatchResponse,
    DispatchUpdateRequest,
    PaginationInfoResponse,
)
from dispatch_service.services.container import DispatchServices
from dispatch_service.services.event_bus import ActivationEvent, DispatchEvent
from dispatch_service.services.query import (
    PaginationParams,
    SortField,
    SortOptions,
    SortOrder,
)

router = APIRouter()


def _interval(start: datetime | None, end: datetime | None) -> TimeInterval | None:
    if start is None and end is None:
        return None
    return TimeInterval(start=start, end=end)


@router.get(
    "/{microgrid_id}/dispatches",
    response_model=DispatchListResponse,
    summary="List dispatches",
    description="Filtered, sorted and paginated dispatches of a microgrid, newest first by default.",
)
async def list_dispatches(
    microgrid_id: int,
    component_ids: list[int] = Query(default=[]),
    component_categories: list[ComponentCategory] = Query(default=[]),
    is_active: bool | None = None,
    is_dry_run: bool | None = None,
    is_recurring: bool | None = None,
    recurrence_freq: Frequency | None = None,
    recurrence_interval: int | None = None,
    start_from: datetime | None = None,
    start_to: datetime | None = None,
    end_from: datetime | None = None,
    end_to: datetime | None = None,
    update_from: datetime | None = None,
    update_to: datetime | None = None,
    sort_field: SortField = SortField.CREATE_TIME,
    sort_order: SortOrder = SortOrder.DESCENDING,
    page_size: int | None = None,
    page_token: str | None = None,
    services: DispatchServices = Depends(get_services),
):
    selectors = []
    if component_ids:
        selectors.append(ComponentIds(tuple(component_ids)))
    if component_categories:
        selectors.append(ComponentCategories(tuple(component_categories)))

    structured = recurrence_freq is not None or recurrence_interval is not None
    if is_recurring is not None and structured:
        raise InvalidArgument("filter by is_recurring or by recurrence fields, not both")
    recurrence = (
        RecurrenceFilter(freq=recurrence_freq, interval=recurrence_interval)
        if structured
        else is_recurring
    )

    flt = DispatchFilter(
        selectors=tuple(selectors),
        is_active=is_active,
        is_dry_run=is_dry_run,
        recurrence=recurrence,
        start_time_interval=_interval(start_from, start_to),
        end_time_interval=_interval(end_from, end_to),
        update_time_interval=_interval(update_from, update_to),
    )
    views, info = await services.query.list(
        microgrid_id,
        flt,
        SortOptions(field=sort_field, order=sort_order),
        PaginationParams(page_size=page_size, page_token=page_token),
    )
    return DispatchListResponse(
        dispatches=[DispatchResponse.from_view(v) for v in views],
        pagination_info=PaginationInfoResponse.from_domain(info),
    )


@router.post(
    "/{microgrid_id}/dispatches",
    response_model=DispatchResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create dispatch",
)
async def create_dispatch(
    microgrid_id: int,
    body: DispatchCreate,
    services: DispatchServices = Depends(get_services),
):
    dispatch = await services.store.create(microgrid_id, body.to_domain())
    return DispatchResponse.from_domain(
        dispatch, evaluate_activation(dispatch, services.store.now())
    )


@router.get(
    "/{microgrid_id}/dispatches/stream",
    summary="Stream dispatch events",
    description="Server-sent events for dispatch changes and activation transitions.",
)
async def stream_dispatches(
    microgrid_id: int,
    services: DispatchServices = Depends(get_services),
):
    subscription = services.bus.subscribe(microgrid_id)

    async def event_source():
        try:
            async for event in subscription:
                if isinstance(event, DispatchEvent):
                    message = DispatchEventMessage.from_domain(event)
                    yield f"event: {message.event.lower()}\ndata: {message.model_dump_json()}\n\n"
                elif isinstance(event, ActivationEvent):
                    message = ActivationEventMessage.from_domain(event)
                    yield f"event: activation\ndata: {message.model_dump_json()}\n\n"
        except ResourceExhausted as exc:
            yield f"event: error\ndata: {json.dumps(error_body(exc))}\n\n"
        finally:
            subscription.close()

    return StreamingResponse(event_source(), media_type="text/event-stream")


@router.get("/{microgrid_id}/dispatches/{dispatch_id}", response_model=DispatchResponse)
async def get_dispatch(
    microgrid_id: int,
    dispatch_id: int,
    services: DispatchServices = Depends(get_services),
):
    dispatch = await services.store.get(microgrid_id, dispatch_id)
    return DispatchResponse.from_domain(
        dispatch, evaluate_activation(dispatch, services.store.now())
    )


@router.patch("/{microgrid_id}/dispatches/{dispatch_id}", response_model=DispatchResponse)
async def update_dispatch(
    microgrid_id: int,
    dispatch_id: int,
    body: DispatchUpdateRequest,
    services: DispatchServices = Depends(get_services),
):
    dispatch = await services.store.update(
        microgrid_id, dispatch_id, body.update_mask, body.update.to_domain()
    )
    return DispatchResponse.from_domain(
        dispatch, evaluate_activation(dispatch, services.store.now())
    )


@router.delete(
    "/{microgrid_id}/dispatches/{dispatch_id}", status_code=status.HTTP_204_NO_CONTENT
)
async def delete_dispatch(
    microgrid_id: int,
    dispatch_id: int,
    services: DispatchServices = Depends(get_services),
):
    await services.store.delete(microgrid_id, dispatch_id)
