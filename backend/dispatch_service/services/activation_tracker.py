"""Background activation tracking.

The tracker remembers the last activation state it announced for every
dispatch and publishes an :class:`ActivationEvent` whenever that state
changes.  It is fed two ways:

* ``on_change`` -- synchronously by the store right after each committed
  create/update/delete, so transitions caused by writes go out immediately
  and in commit order.
* ``evaluate`` -- from the periodic ``run`` loop, over an explicit snapshot
  taken from the store for that tick.  Snapshot rows older than what the
  tracker has already seen, and rows deleted since, are skipped.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import TYPE_CHECKING

from dispatch_engine.activation import ActivationState, evaluate_activation
from dispatch_engine.types import Dispatch
from dispatch_service.services.event_bus import (
    ActivationEvent,
    DispatchEvent,
    EventBus,
    EventKind,
)

if TYPE_CHECKING:
    from dispatch_service.services.dispatch_store import DispatchStore

logger = logging.getLogger(__name__)

Key = tuple[int, int]


class ActivationTracker:
    def __init__(
        self,
        bus: EventBus,
        clock: Callable[[], datetime],
        interval_seconds: float = 60.0,
    ) -> None:
        self._bus = bus
        self._clock = clock
        self.interval_seconds = interval_seconds
        self._states: dict[Key, ActivationState] = {}
        self._seen: dict[Key, datetime] = {}  # modification time last evaluated
        self._deleted: set[Key] = set()

    def state_of(self, microgrid_id: int, dispatch_id: int) -> ActivationState | None:
        return self._states.get((microgrid_id, dispatch_id))

    # ------------------------------------------------------------------
    # Store-driven updates
    # ------------------------------------------------------------------

    def on_change(self, event: DispatchEvent) -> None:
        key = (event.microgrid_id, event.dispatch_id)
        if event.kind is EventKind.DELETED:
            self._states.pop(key, None)
            self._seen.pop(key, None)
            self._deleted.add(key)
            return
        assert event.dispatch is not None
        self._evaluate_one(event.dispatch, self._clock())

    # ------------------------------------------------------------------
    # Periodic evaluation
    # ------------------------------------------------------------------

    def evaluate(self, snapshot: Iterable[Dispatch], now: datetime) -> int:
        """Evaluate every dispatch in *snapshot*; return the number of transitions.

        A failure on one dispatch is logged and does not stop the others.
        """
        transitions = 0
        present: set[Key] = set()
        for dispatch in snapshot:
            key = dispatch.key
            present.add(key)
            if key in self._deleted:
                continue
            seen = self._seen.get(key)
            if seen is not None and seen > dispatch.metadata.modification_time:
                continue  # the store already told us about a newer version
            try:
                if self._evaluate_one(dispatch, now):
                    transitions += 1
            except Exception:
                logger.exception(
                    "Activation evaluation failed for dispatch %s/%s",
                    dispatch.microgrid_id,
                    dispatch.dispatch_id,
                    extra={
                        "microgrid_id": dispatch.microgrid_id,
                        "dispatch_id": dispatch.dispatch_id,
                    },
                )
        # Tombstones only matter while a stale snapshot may still carry the row.
        self._deleted &= present
        return transitions

    async def tick(self, store: DispatchStore) -> int:
        snapshot = await store.snapshot()
        return self.evaluate(snapshot, self._clock())

    async def run(self, store: DispatchStore) -> None:
        """Evaluate on a fixed interval until cancelled."""
        logger.info("Activation tracker started (interval=%.1fs)", self.interval_seconds)
        try:
            while True:
                try:
                    transitions = await self.tick(store)
                    if transitions:
                        logger.info("Activation tick: %d transition(s)", transitions)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Activation tick failed")
                await asyncio.sleep(self.interval_seconds)
        finally:
            logger.info("Activation tracker stopped")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _evaluate_one(self, dispatch: Dispatch, now: datetime) -> bool:
        key = dispatch.key
        current = evaluate_activation(dispatch, now)
        self._seen[key] = dispatch.metadata.modification_time
        previous = self._states.get(key)
        if previous is current:
            return False

        self._states[key] = current
        self._bus.publish(
            ActivationEvent(
                microgrid_id=dispatch.microgrid_id,
                dispatch_id=dispatch.dispatch_id,
                previous=previous,
                current=current,
                is_dry_run=dispatch.data.is_dry_run,
                occurred_at=now,
            )
        )
        logger.info(
            "Dispatch %s/%s %s -> %s%s",
            dispatch.microgrid_id,
            dispatch.dispatch_id,
            previous.value if previous else "-",
            current.value,
            " (dry run)" if dispatch.data.is_dry_run else "",
            extra={
                "microgrid_id": dispatch.microgrid_id,
                "dispatch_id": dispatch.dispatch_id,
                "state": current.value,
            },
        )
        return True
