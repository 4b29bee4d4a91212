"""Wiring of store, bus, tracker and query engine into one unit."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_service.config import Settings, settings as default_settings
from dispatch_service.services.activation_tracker import ActivationTracker
from dispatch_service.services.dispatch_store import DispatchStore, utcnow
from dispatch_service.services.event_bus import EventBus
from dispatch_service.services.query import QueryEngine


@dataclass
class DispatchServices:
    session_factory: async_sessionmaker[AsyncSession]
    bus: EventBus
    store: DispatchStore
    tracker: ActivationTracker
    query: QueryEngine

    @classmethod
    def build(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = utcnow,
        config: Settings | None = None,
    ) -> DispatchServices:
        config = config or default_settings
        bus = EventBus(buffer_size=config.subscriber_buffer_size)
        store = DispatchStore(
            session_factory,
            bus=bus,
            clock=clock,
            max_retries=config.store_max_retries,
            retry_initial_delay=config.store_retry_initial_delay,
        )
        tracker = ActivationTracker(bus, clock, interval_seconds=config.tracker_interval_seconds)
        store.add_listener(tracker.on_change)
        query = QueryEngine(
            store,
            default_page_size=config.default_page_size,
            max_page_size=config.max_page_size,
        )
        return cls(
            session_factory=session_factory,
            bus=bus,
            store=store,
            tracker=tracker,
            query=query,
        )
