from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from vibeproxy.core.usage.ranges import UsageRange
from vibeproxy.core.usage.types import (
    BreakdownRowData,
    TimeseriesPointData,
    UsageSummaryData,
)
from vibeproxy.core.utils.time import to_utc_naive


@dataclass(slots=True)
class _Counters:
    requests: int = 0
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0
    error_count: int = 0

    def add(self, aggregate: BreakdownRowData | TimeseriesPointData) -> None:
        self.requests += aggregate.requests
        self.total_tokens += aggregate.total_tokens
        self.input_tokens += aggregate.input_tokens
        self.output_tokens += aggregate.output_tokens
        self.cached_tokens += aggregate.cached_tokens
        self.reasoning_tokens += aggregate.reasoning_tokens
        self.error_count += aggregate.error_count


def build_summary(rows: Iterable[BreakdownRowData]) -> UsageSummaryData:
    counters = _Counters()
    for row in rows:
        counters.add(row)
    return UsageSummaryData(
        total_requests=counters.requests,
        total_tokens=counters.total_tokens,
        input_tokens=counters.input_tokens,
        output_tokens=counters.output_tokens,
        cached_tokens=counters.cached_tokens,
        reasoning_tokens=counters.reasoning_tokens,
        error_count=counters.error_count,
    )


def build_timeseries(
    buckets: list[TimeseriesPointData],
    usage_range: UsageRange,
    now: datetime,
) -> list[TimeseriesPointData]:
    """Zero-fill grouped buckets into contiguous half-open intervals.

    Fixed windows cover every bucket from the one holding the window start to
    the one holding ``now``. ``all`` starts at the first populated bucket and
    is empty when nothing was recorded.
    """
    granularity = usage_range.granularity
    now = to_utc_naive(now)
    since = usage_range.since(now)
    starts = [granularity.floor(to_utc_naive(bucket.bucket_start)) for bucket in buckets]

    if since is not None:
        first = granularity.floor(since)
    elif starts:
        first = min(starts)
    else:
        return []

    last = granularity.floor(now)
    if starts:
        # Events stamped past ``now`` still land in a bucket.
        last = max(last, max(starts))

    slots: dict[datetime, _Counters] = {}
    slot = first
    while slot <= last:
        slots[slot] = _Counters()
        slot = granularity.next(slot)

    for start, bucket in zip(starts, buckets):
        counters = slots.get(start)
        if counters is None:
            counters = slots[first] if start < first else slots[last]
        counters.add(bucket)

    return [
        TimeseriesPointData(
            bucket=granularity.label(start),
            bucket_start=start,
            requests=counters.requests,
            total_tokens=counters.total_tokens,
            input_tokens=counters.input_tokens,
            output_tokens=counters.output_tokens,
            cached_tokens=counters.cached_tokens,
            reasoning_tokens=counters.reasoning_tokens,
            error_count=counters.error_count,
        )
        for start, counters in slots.items()
    ]


def build_breakdown(rows: Iterable[BreakdownRowData]) -> list[BreakdownRowData]:
    return sorted(
        rows,
        key=lambda row: (-row.total_tokens, -row.requests, row.provider, row.model, row.account_key),
    )
