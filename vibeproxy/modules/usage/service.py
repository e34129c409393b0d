from __future__ import annotations

from datetime import datetime

from vibeproxy.core.usage.ranges import UsageRange
from vibeproxy.core.usage.types import (
    BreakdownRowData,
    TimeseriesPointData,
    UsageEventFilter,
    UsageSummaryData,
)
from vibeproxy.core.utils.time import utcnow
from vibeproxy.modules.usage.builders import build_breakdown, build_summary, build_timeseries
from vibeproxy.modules.usage.schemas import BreakdownRow, TimeseriesPoint, UsageReport, UsageSummary
from vibeproxy.modules.usage.store import UsageStore, get_usage_store


class UsageAggregator:
    def __init__(self, store: UsageStore | None = None) -> None:
        self._store = store or get_usage_store()

    async def summarize(
        self,
        usage_range: UsageRange | str,
        filters: UsageEventFilter | None = None,
        *,
        now: datetime | None = None,
    ) -> UsageSummary:
        resolved = UsageRange.parse(usage_range)
        aggregates = await self._store.aggregate(resolved, filters, now=now)
        return _summary_model(build_summary(aggregates.breakdown))

    async def timeseries(
        self,
        usage_range: UsageRange | str,
        filters: UsageEventFilter | None = None,
        *,
        now: datetime | None = None,
    ) -> list[TimeseriesPoint]:
        resolved = UsageRange.parse(usage_range)
        now = now or utcnow()
        aggregates = await self._store.aggregate(resolved, filters, now=now)
        return [_point_model(point) for point in build_timeseries(aggregates.buckets, resolved, now)]

    async def breakdown(
        self,
        usage_range: UsageRange | str,
        filters: UsageEventFilter | None = None,
        *,
        now: datetime | None = None,
    ) -> list[BreakdownRow]:
        resolved = UsageRange.parse(usage_range)
        aggregates = await self._store.aggregate(resolved, filters, now=now)
        return [_row_model(row) for row in build_breakdown(aggregates.breakdown)]

    async def report(
        self,
        usage_range: UsageRange | str,
        filters: UsageEventFilter | None = None,
        *,
        now: datetime | None = None,
    ) -> UsageReport:
        """Summary, timeseries and breakdown computed from one set of grouped sums."""
        resolved = UsageRange.parse(usage_range)
        now = now or utcnow()
        aggregates = await self._store.aggregate(resolved, filters, now=now)
        return UsageReport(
            range=resolved.value,
            generated_at=now,
            summary=_summary_model(build_summary(aggregates.breakdown)),
            timeseries=[_point_model(point) for point in build_timeseries(aggregates.buckets, resolved, now)],
            breakdown=[_row_model(row) for row in build_breakdown(aggregates.breakdown)],
        )


def _summary_model(data: UsageSummaryData) -> UsageSummary:
    return UsageSummary(
        total_requests=data.total_requests,
        total_tokens=data.total_tokens,
        input_tokens=data.input_tokens,
        output_tokens=data.output_tokens,
        cached_tokens=data.cached_tokens,
        reasoning_tokens=data.reasoning_tokens,
        error_count=data.error_count,
        error_rate=data.error_rate,
    )


def _point_model(point: TimeseriesPointData) -> TimeseriesPoint:
    return TimeseriesPoint(
        bucket=point.bucket,
        bucket_start=point.bucket_start,
        requests=point.requests,
        total_tokens=point.total_tokens,
        input_tokens=point.input_tokens,
        output_tokens=point.output_tokens,
        cached_tokens=point.cached_tokens,
        reasoning_tokens=point.reasoning_tokens,
        error_count=point.error_count,
    )


def _row_model(row: BreakdownRowData) -> BreakdownRow:
    return BreakdownRow(
        provider=row.provider,
        model=row.model,
        account_key=row.account_key,
        requests=row.requests,
        total_tokens=row.total_tokens,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        cached_tokens=row.cached_tokens,
        reasoning_tokens=row.reasoning_tokens,
        error_count=row.error_count,
        last_seen=row.last_seen,
    )
