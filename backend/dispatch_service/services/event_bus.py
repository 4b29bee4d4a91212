"""Per-microgrid fan-out of dispatch change and activation events.

Architecture:
- one bounded ``asyncio.Queue`` per subscriber
- ``publish`` never awaits, so a slow subscriber can never block a writer
- a subscriber whose buffer fills up is terminated with ``ResourceExhausted``
  instead of silently losing events; it resubscribes and re-lists

Usage:
    bus = EventBus(buffer_size=256)
    async with bus.subscribe(microgrid_id=7) as subscription:
        async for event in subscription:
            ...
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Union

from dispatch_engine.activation import ActivationState
from dispatch_engine.errors import ResourceExhausted
from dispatch_engine.types import Dispatch

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 256


class EventKind(int, enum.Enum):
    UNSPECIFIED = 0  # wire zero-value; never emitted
    CREATED = 1
    UPDATED = 2
    DELETED = 3


@dataclass(frozen=True)
class DispatchEvent:
    kind: EventKind
    microgrid_id: int
    dispatch_id: int
    dispatch: Dispatch | None  # None for DELETED

    def __post_init__(self) -> None:
        if self.kind is EventKind.UNSPECIFIED:
            raise ValueError("dispatch events must be CREATED, UPDATED or DELETED")
        if self.kind is not EventKind.DELETED and self.dispatch is None:
            raise ValueError(f"{self.kind.name} events carry the dispatch snapshot")


@dataclass(frozen=True)
class ActivationEvent:
    microgrid_id: int
    dispatch_id: int
    previous: ActivationState | None
    current: ActivationState
    is_dry_run: bool
    occurred_at: datetime


Event = Union[DispatchEvent, ActivationEvent]


class _Closed:
    pass


_CLOSED = _Closed()


class Subscription:
    """A single consumer's view of one microgrid's event stream."""

    def __init__(self, bus: EventBus, microgrid_id: int, buffer_size: int) -> None:
        self.microgrid_id = microgrid_id
        self._bus = bus
        self._queue: asyncio.Queue[Event | _Closed] = asyncio.Queue(maxsize=buffer_size)
        self._failure: ResourceExhausted | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, event: Event) -> bool:
        """Buffer *event*; on overflow terminate and return False."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._failure = ResourceExhausted(
                f"subscriber buffer of {self._queue.maxsize} events overflowed "
                f"for microgrid {self.microgrid_id}; resubscribe and list to resync"
            )
            logger.warning(
                "Subscriber overflow on microgrid %s, terminating subscription",
                self.microgrid_id,
                extra={"microgrid_id": self.microgrid_id},
            )
            self._terminate()
            return False
        return True

    def _terminate(self) -> None:
        self._closed = True
        self._bus._discard(self)
        while not self._queue.empty():
            self._queue.get_nowait()
        # Wake a reader blocked on an empty queue
        self._queue.put_nowait(_CLOSED)

    def close(self) -> None:
        """Stop delivery immediately and release the buffer."""
        if not self._closed:
            self._terminate()

    async def get(self) -> Event:
        """Next event; raises ``ResourceExhausted`` after an overflow."""
        if self._failure is not None:
            raise self._failure
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if isinstance(item, _Closed):
            if self._failure is not None:
                raise self._failure
            raise StopAsyncIteration
        return item

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Event:
        return await self.get()

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class EventBus:
    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        if buffer_size < 1:
            raise ValueError(f"buffer_size must be positive, got {buffer_size}")
        self.buffer_size = buffer_size
        self._subscribers: dict[int, list[Subscription]] = defaultdict(list)

    def subscribe(self, microgrid_id: int) -> Subscription:
        subscription = Subscription(self, microgrid_id, self.buffer_size)
        self._subscribers[microgrid_id].append(subscription)
        logger.info(
            "New subscriber on microgrid %s (%d total)",
            microgrid_id,
            len(self._subscribers[microgrid_id]),
            extra={"microgrid_id": microgrid_id},
        )
        return subscription

    def subscriber_count(self, microgrid_id: int) -> int:
        return len(self._subscribers.get(microgrid_id, ()))

    def publish(self, event: Event) -> None:
        """Fan *event* out to the microgrid's subscribers without blocking."""
        for subscription in list(self._subscribers.get(event.microgrid_id, ())):
            subscription._deliver(event)

    def close(self) -> None:
        for subscriptions in list(self._subscribers.values()):
            for subscription in list(subscriptions):
                subscription.close()

    def _discard(self, subscription: Subscription) -> None:
        subscriptions = self._subscribers.get(subscription.microgrid_id)
        if subscriptions is None:
            return
        if subscription in subscriptions:
            subscriptions.remove(subscription)
        if not subscriptions:
            del self._subscribers[subscription.microgrid_id]
