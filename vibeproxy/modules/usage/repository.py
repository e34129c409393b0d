from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import Integer, Select, and_, cast, func, select, true
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from vibeproxy.core.usage.ranges import BucketGranularity
from vibeproxy.core.usage.types import (
    BreakdownRowData,
    InferenceEvent,
    TimeseriesPointData,
    UsageEventFilter,
    UsageOutcome,
)
from vibeproxy.core.utils.time import to_utc_naive
from vibeproxy.db.models import UsageEvent

_SQLITE_BUCKET_FORMATS = {
    BucketGranularity.HOUR: "%Y-%m-%d %H:00:00",
    BucketGranularity.DAY: "%Y-%m-%d 00:00:00",
    BucketGranularity.MONTH: "%Y-%m-01 00:00:00",
}


class UsageEventsRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add_events(self, events: Sequence[InferenceEvent]) -> int:
        if not events:
            return 0
        self._session.add_all([_to_row(event) for event in events])
        await self._session.commit()
        return len(events)

    async def list_events(
        self,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        filters: UsageEventFilter | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[InferenceEvent]:
        stmt = select(UsageEvent).where(_conditions(since, until, filters))
        if newest_first:
            stmt = stmt.order_by(UsageEvent.timestamp.desc(), UsageEvent.id.desc())
        else:
            stmt = stmt.order_by(UsageEvent.timestamp, UsageEvent.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return [_from_row(row) for row in result.scalars().all()]

    async def aggregate_breakdown(
        self,
        *,
        since: datetime | None = None,
        filters: UsageEventFilter | None = None,
    ) -> list[BreakdownRowData]:
        stmt = (
            _with_counters(UsageEvent.provider, UsageEvent.model, UsageEvent.account_key)
            .add_columns(func.max(UsageEvent.timestamp).label("last_seen"))
            .where(_conditions(since, None, filters))
            .group_by(UsageEvent.provider, UsageEvent.model, UsageEvent.account_key)
        )
        result = await self._session.execute(stmt)
        return [
            BreakdownRowData(
                provider=row.provider,
                model=row.model,
                account_key=row.account_key,
                requests=int(row.requests),
                total_tokens=int(row.total_tokens),
                input_tokens=int(row.input_tokens),
                output_tokens=int(row.output_tokens),
                cached_tokens=int(row.cached_tokens),
                reasoning_tokens=int(row.reasoning_tokens),
                error_count=int(row.error_count),
                last_seen=row.last_seen,
            )
            for row in result.all()
        ]

    async def aggregate_by_bucket(
        self,
        granularity: BucketGranularity,
        *,
        since: datetime | None = None,
        filters: UsageEventFilter | None = None,
    ) -> list[TimeseriesPointData]:
        bind = self._session.get_bind()
        dialect = bind.dialect.name if bind else "sqlite"
        if dialect == "postgresql":
            bucket_expr = func.date_trunc(granularity.value, UsageEvent.timestamp)
        else:
            bucket_expr = func.strftime(_SQLITE_BUCKET_FORMATS[granularity], UsageEvent.timestamp)
        bucket_col = bucket_expr.label("bucket_start")

        stmt = (
            _with_counters(bucket_col)
            .where(_conditions(since, None, filters))
            .group_by(bucket_col)
            .order_by(bucket_col)
        )
        result = await self._session.execute(stmt)
        points: list[TimeseriesPointData] = []
        for row in result.all():
            start = row.bucket_start
            if isinstance(start, str):
                start = datetime.fromisoformat(start)
            start = to_utc_naive(start)
            points.append(
                TimeseriesPointData(
                    bucket=granularity.label(start),
                    bucket_start=start,
                    requests=int(row.requests),
                    total_tokens=int(row.total_tokens),
                    input_tokens=int(row.input_tokens),
                    output_tokens=int(row.output_tokens),
                    cached_tokens=int(row.cached_tokens),
                    reasoning_tokens=int(row.reasoning_tokens),
                    error_count=int(row.error_count),
                )
            )
        return points


def _with_counters(*columns) -> Select:
    return select(
        *columns,
        func.count(UsageEvent.id).label("requests"),
        func.coalesce(func.sum(UsageEvent.total_tokens), 0).label("total_tokens"),
        func.coalesce(func.sum(UsageEvent.input_tokens), 0).label("input_tokens"),
        func.coalesce(func.sum(UsageEvent.output_tokens), 0).label("output_tokens"),
        func.coalesce(func.sum(UsageEvent.cached_tokens), 0).label("cached_tokens"),
        func.coalesce(func.sum(UsageEvent.reasoning_tokens), 0).label("reasoning_tokens"),
        func.coalesce(
            func.sum(cast(UsageEvent.outcome != UsageOutcome.SUCCESS.value, Integer)),
            0,
        ).label("error_count"),
    )


def _conditions(
    since: datetime | None,
    until: datetime | None,
    filters: UsageEventFilter | None,
) -> ColumnElement[bool]:
    clauses: list[ColumnElement[bool]] = []
    if since is not None:
        clauses.append(UsageEvent.timestamp >= to_utc_naive(since))
    if until is not None:
        clauses.append(UsageEvent.timestamp < to_utc_naive(until))
    if filters is not None:
        if filters.provider:
            clauses.append(UsageEvent.provider == filters.provider)
        if filters.model:
            clauses.append(UsageEvent.model == filters.model)
        if filters.account_key is not None:
            clauses.append(UsageEvent.account_key == filters.account_key)
    if not clauses:
        return true()
    return and_(*clauses)


def _to_row(event: InferenceEvent) -> UsageEvent:
    return UsageEvent(
        request_id=event.request_id,
        timestamp=to_utc_naive(event.timestamp),
        method=event.method,
        path=event.path,
        provider=event.provider,
        model=event.model,
        account_key=event.account_key,
        outcome=event.outcome.value,
        error_class=event.error_class,
        status_code=event.status_code,
        latency_ms=event.latency_ms,
        request_bytes=event.request_bytes,
        response_bytes=event.response_bytes,
        input_tokens=event.input_tokens,
        output_tokens=event.output_tokens,
        cached_tokens=event.cached_tokens,
        reasoning_tokens=event.reasoning_tokens,
        total_tokens=event.total_tokens,
    )


def _from_row(row: UsageEvent) -> InferenceEvent:
    return InferenceEvent(
        id=row.id,
        timestamp=row.timestamp,
        provider=row.provider,
        model=row.model,
        account_key=row.account_key,
        outcome=UsageOutcome(row.outcome),
        error_class=row.error_class,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        cached_tokens=row.cached_tokens,
        reasoning_tokens=row.reasoning_tokens,
        total_tokens=row.total_tokens,
        request_id=row.request_id,
        method=row.method,
        path=row.path,
        status_code=row.status_code,
        latency_ms=row.latency_ms,
        request_bytes=row.request_bytes,
        response_bytes=row.response_bytes,
    )
