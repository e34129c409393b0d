from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from vibeproxy.core.config.settings import get_settings
from vibeproxy.core.exceptions import UsageStoreError
from vibeproxy.core.usage.ranges import UsageRange
from vibeproxy.core.usage.types import InferenceEvent, UsageAggregates, UsageEventFilter
from vibeproxy.core.utils.time import utcnow
from vibeproxy.db.session import SessionLocal, _safe_close, _safe_rollback
from vibeproxy.modules.usage.repository import UsageEventsRepository

logger = logging.getLogger(__name__)

type _QueueItem = tuple[InferenceEvent, asyncio.Future[None]] | None


class UsageStore:
    """Append-only event store with a single writer task.

    ``record`` hands the event to the writer and waits until its batch is
    committed, so a returned call means the event is durable and visible to
    ``query``.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], AsyncSession] = SessionLocal,
        queue_max_size: int = 1000,
        batch_size: int = 100,
        record_timeout_seconds: float = 2.0,
        query_max_rows: int = 500_000,
    ) -> None:
        self._session_factory = session_factory
        self._queue_max_size = queue_max_size
        self._batch_size = max(1, batch_size)
        self._record_timeout_seconds = record_timeout_seconds
        self._query_max_rows = query_max_rows
        self._queue: asyncio.Queue[_QueueItem] | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._queue = asyncio.Queue(maxsize=self._queue_max_size)
        self._task = asyncio.create_task(self._run_writer())

    async def stop(self) -> None:
        if self._task is None or self._queue is None:
            return
        if not self._task.done():
            await self._queue.put(None)
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        self._queue = None

    async def flush(self) -> None:
        if self._queue is None:
            return
        await self._queue.join()

    async def record(self, event: InferenceEvent) -> None:
        if self._queue is None or not self.is_running:
            raise UsageStoreError("Usage store is not running")
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        try:
            self._queue.put_nowait((event, future))
        except asyncio.QueueFull as exc:
            raise UsageStoreError("Usage store queue is full") from exc
        try:
            await asyncio.wait_for(asyncio.shield(future), timeout=self._record_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise UsageStoreError("Timed out waiting for usage event commit") from exc
        except UsageStoreError:
            raise
        except Exception as exc:
            raise UsageStoreError(f"Usage event write failed: {exc}") from exc

    async def query(
        self,
        usage_range: UsageRange | str,
        filters: UsageEventFilter | None = None,
        *,
        now: datetime | None = None,
    ) -> list[InferenceEvent]:
        """Matching events in timestamp order, keeping the newest when the row cap is hit."""
        resolved = UsageRange.parse(usage_range)
        now = now or utcnow()
        since = resolved.since(now)
        async with self._session_factory() as session:
            repo = UsageEventsRepository(session)
            events = await repo.list_events(
                since=since,
                filters=filters,
                limit=self._query_max_rows + 1,
                newest_first=True,
            )
        if len(events) > self._query_max_rows:
            logger.warning(
                "Usage query truncated to newest rows range=%s max_rows=%d",
                resolved.value,
                self._query_max_rows,
            )
            events = events[: self._query_max_rows]
        events.reverse()
        return events

    async def aggregate(
        self,
        usage_range: UsageRange | str,
        filters: UsageEventFilter | None = None,
        *,
        now: datetime | None = None,
    ) -> UsageAggregates:
        resolved = UsageRange.parse(usage_range)
        now = now or utcnow()
        since = resolved.since(now)
        async with self._session_factory() as session:
            repo = UsageEventsRepository(session)
            breakdown = await repo.aggregate_breakdown(since=since, filters=filters)
            buckets = await repo.aggregate_by_bucket(resolved.granularity, since=since, filters=filters)
        return UsageAggregates(breakdown=breakdown, buckets=buckets)

    async def _run_writer(self) -> None:
        assert self._queue is not None
        queue = self._queue
        stopping = False
        while not stopping:
            item = await queue.get()
            batch: list[tuple[InferenceEvent, asyncio.Future[None]]] = []
            taken = 1
            if item is None:
                stopping = True
            else:
                batch.append(item)
            while len(batch) < self._batch_size:
                try:
                    item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                taken += 1
                if item is None:
                    stopping = True
                    continue
                batch.append(item)
            try:
                if batch:
                    await self._write_batch(batch)
            finally:
                for _ in range(taken):
                    queue.task_done()

    async def _write_batch(self, batch: list[tuple[InferenceEvent, asyncio.Future[None]]]) -> None:
        events = [event for event, _ in batch]
        session = self._session_factory()
        try:
            repo = UsageEventsRepository(session)
            await repo.add_events(events)
        except Exception as exc:
            await _safe_rollback(session)
            logger.warning("Usage batch write failed events=%d", len(events), exc_info=True)
            for _, future in batch:
                if not future.done():
                    future.set_exception(UsageStoreError(f"Usage event write failed: {exc}"))
                    # Callers that timed out never retrieve it.
                    future.exception()
        else:
            logger.debug("Usage batch committed events=%d", len(events))
            for _, future in batch:
                if not future.done():
                    future.set_result(None)
        finally:
            await _safe_close(session)


_usage_store: UsageStore | None = None


def get_usage_store() -> UsageStore:
    global _usage_store
    if _usage_store is None:
        settings = get_settings()
        _usage_store = UsageStore(
            queue_max_size=settings.usage_queue_max_size,
            batch_size=settings.usage_write_batch_size,
            record_timeout_seconds=settings.usage_record_timeout_seconds,
            query_max_rows=settings.usage_query_max_rows,
        )
    return _usage_store


def reset_usage_store() -> None:
    global _usage_store
    _usage_store = None
