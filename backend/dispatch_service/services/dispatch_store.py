"""Durable dispatch storage on SQLAlchemy's async ORM.

The store is the only writer of dispatch identity and metadata:

- ids come from ``microgrid_dispatch_counters`` and are never reused
- ``create_time`` / ``modification_time`` / ``end_time`` are stamped here
- writes to one ``(microgrid_id, dispatch_id)`` are serialized by a keyed
  ``asyncio.Lock``; unrelated dispatches proceed concurrently
- change events are published while the key's lock is still held, so each
  dispatch's events leave in commit order

Every operation runs in a single transaction.  Transient database errors
are retried with exponential backoff; whatever still fails surfaces as
``Internal`` and leaves nothing behind.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_engine.errors import DispatchError, Internal, InvalidArgument, NotFound
from dispatch_engine.recurrence import compute_end_time
from dispatch_engine.types import Dispatch, DispatchData, DispatchUpdate
from dispatch_engine.updates import apply_update, normalize_mask
from dispatch_service.models.dispatch import DispatchRecord, MicrogridDispatchCounter
from dispatch_service.services.event_bus import DispatchEvent, EventBus, EventKind

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]
ChangeListener = Callable[[DispatchEvent], None]

MAX_RETRY_DELAY = 2.0  # seconds
_ONE_MICROSECOND = timedelta(microseconds=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_transient_error(exc: SQLAlchemyError) -> bool:
    """Connection drops, timeouts and lock contention are worth retrying."""
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    if isinstance(exc, OperationalError):
        return True
    message = str(exc).lower()
    return any(
        pattern in message
        for pattern in ("deadlock", "database is locked", "connection reset", "timeout")
    )


class KeyedLocks:
    """One ``asyncio.Lock`` per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class DispatchStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        bus: EventBus | None = None,
        clock: Clock = utcnow,
        max_retries: int = 3,
        retry_initial_delay: float = 0.05,
    ) -> None:
        self._session_factory = session_factory
        self._bus = bus
        self._clock = clock
        self._max_retries = max_retries
        self._retry_initial_delay = retry_initial_delay
        self._locks = KeyedLocks()
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a synchronous callback run after every committed change."""
        self._listeners.append(listener)

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, microgrid_id: int, data: DispatchData) -> Dispatch:
        now = self._clock()
        if data.start_time < now:
            raise InvalidArgument(
                f"start_time {data.start_time.isoformat()} is in the past (now {now.isoformat()})"
            )
        end_time = compute_end_time(data)

        dispatch_id = await self._retrying("allocate_id", self._allocate_id, microgrid_id)
        async with self._locks.hold(("dispatch", microgrid_id, dispatch_id)):
            dispatch = await self._retrying(
                "create", self._insert, microgrid_id, dispatch_id, data, now, end_time
            )
            self._emit(DispatchEvent(EventKind.CREATED, microgrid_id, dispatch_id, dispatch))

        logger.info(
            "Created dispatch %s/%s (type=%r, recurring=%s)",
            microgrid_id,
            dispatch_id,
            data.type,
            data.recurrence is not None,
            extra={"microgrid_id": microgrid_id, "dispatch_id": dispatch_id},
        )
        return dispatch

    async def update(
        self,
        microgrid_id: int,
        dispatch_id: int,
        update_mask: Iterable[str],
        patch: DispatchUpdate,
    ) -> Dispatch:
        mask = tuple(update_mask)
        async with self._locks.hold(("dispatch", microgrid_id, dispatch_id)):
            dispatch = await self._retrying(
                "update", self._update_row, microgrid_id, dispatch_id, mask, patch
            )
            self._emit(DispatchEvent(EventKind.UPDATED, microgrid_id, dispatch_id, dispatch))

        logger.info(
            "Updated dispatch %s/%s fields=%s",
            microgrid_id,
            dispatch_id,
            ",".join(mask),
            extra={"microgrid_id": microgrid_id, "dispatch_id": dispatch_id},
        )
        return dispatch

    async def delete(self, microgrid_id: int, dispatch_id: int) -> None:
        async with self._locks.hold(("dispatch", microgrid_id, dispatch_id)):
            await self._retrying("delete", self._delete_row, microgrid_id, dispatch_id)
            self._emit(DispatchEvent(EventKind.DELETED, microgrid_id, dispatch_id, None))

        logger.info(
            "Deleted dispatch %s/%s",
            microgrid_id,
            dispatch_id,
            extra={"microgrid_id": microgrid_id, "dispatch_id": dispatch_id},
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, microgrid_id: int, dispatch_id: int) -> Dispatch:
        return await self._retrying("get", self._get_row, microgrid_id, dispatch_id)

    async def list_microgrid(self, microgrid_id: int) -> list[Dispatch]:
        """All dispatches of one microgrid, read in a single transaction."""
        return await self._retrying("list", self._select_all, microgrid_id)

    async def snapshot(self) -> list[Dispatch]:
        """All dispatches of every microgrid, read in a single transaction."""
        return await self._retrying("snapshot", self._select_all, None)

    # ------------------------------------------------------------------
    # Transaction bodies
    # ------------------------------------------------------------------

    async def _allocate_id(self, microgrid_id: int) -> int:
        async with self._locks.hold(("counter", microgrid_id)):
            async with self._session_factory() as session, session.begin():
                counter = await session.get(
                    MicrogridDispatchCounter, microgrid_id, with_for_update=True
                )
                if counter is None:
                    counter = MicrogridDispatchCounter(microgrid_id=microgrid_id, last_dispatch_id=0)
                    session.add(counter)
                counter.last_dispatch_id += 1
                return counter.last_dispatch_id

    async def _insert(
        self,
        microgrid_id: int,
        dispatch_id: int,
        data: DispatchData,
        now: datetime,
        end_time: datetime | None,
    ) -> Dispatch:
        async with self._session_factory() as session, session.begin():
            record = DispatchRecord(
                microgrid_id=microgrid_id,
                dispatch_id=dispatch_id,
                create_time=now,
                modification_time=now,
                end_time=end_time,
            )
            record.apply(data)
            session.add(record)
            return record.to_domain()

    async def _update_row(
        self,
        microgrid_id: int,
        dispatch_id: int,
        mask: tuple[str, ...],
        patch: DispatchUpdate,
    ) -> Dispatch:
        now = self._clock()
        async with self._session_factory() as session, session.begin():
            record = await session.get(
                DispatchRecord, (microgrid_id, dispatch_id), with_for_update=True
            )
            if record is None:
                raise NotFound(f"dispatch {dispatch_id} not found in microgrid {microgrid_id}")
            current = record.to_domain()

            data = apply_update(current.data, mask, patch)
            top_level, _ = normalize_mask(mask)
            if "start_time" in top_level and data.start_time < now:
                raise InvalidArgument(
                    f"start_time {data.start_time.isoformat()} is in the past (now {now.isoformat()})"
                )

            record.apply(data)
            record.end_time = compute_end_time(data)
            record.modification_time = max(
                now, current.metadata.modification_time + _ONE_MICROSECOND
            )
            return record.to_domain()

    async def _delete_row(self, microgrid_id: int, dispatch_id: int) -> None:
        async with self._session_factory() as session, session.begin():
            record = await session.get(DispatchRecord, (microgrid_id, dispatch_id))
            if record is None:
                raise NotFound(f"dispatch {dispatch_id} not found in microgrid {microgrid_id}")
            await session.delete(record)

    async def _get_row(self, microgrid_id: int, dispatch_id: int) -> Dispatch:
        async with self._session_factory() as session:
            record = await session.get(DispatchRecord, (microgrid_id, dispatch_id))
            if record is None:
                raise NotFound(f"dispatch {dispatch_id} not found in microgrid {microgrid_id}")
            return record.to_domain()

    async def _select_all(self, microgrid_id: int | None) -> list[Dispatch]:
        stmt = select(DispatchRecord).order_by(
            DispatchRecord.microgrid_id, DispatchRecord.dispatch_id
        )
        if microgrid_id is not None:
            stmt = stmt.where(DispatchRecord.microgrid_id == microgrid_id)
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            return [record.to_domain() for record in result.scalars().all()]

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _emit(self, event: DispatchEvent) -> None:
        if self._bus is not None:
            self._bus.publish(event)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Change listener failed for dispatch %s/%s",
                    event.microgrid_id,
                    event.dispatch_id,
                )

    async def _retrying(self, operation: str, func: Callable[..., Awaitable[T]], *args) -> T:
        delay = self._retry_initial_delay
        for attempt in range(self._max_retries + 1):
            try:
                return await func(*args)
            except DispatchError:
                raise
            except SQLAlchemyError as exc:
                if not is_transient_error(exc):
                    logger.error("Non-transient store error in %s: %s", operation, exc, exc_info=True)
                    raise Internal(f"{operation} failed: store error") from exc
                if attempt >= self._max_retries:
                    logger.error(
                        "Max retries (%d) exceeded in %s", self._max_retries, operation, exc_info=True
                    )
                    raise Internal(f"{operation} failed after {attempt + 1} attempts") from exc
                logger.warning(
                    "Transient store error in %s (attempt %d/%d): %s. Retrying in %.2fs",
                    operation,
                    attempt + 1,
                    self._max_retries,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, MAX_RETRY_DELAY)
        raise Internal(f"{operation} failed")  # pragma: no cover
