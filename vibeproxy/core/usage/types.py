from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class UsageOutcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class TokenCounts:
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0
    total_tokens: int | None = None

    @property
    def resolved_total(self) -> int:
        if self.total_tokens is not None:
            return self.total_tokens
        return self.input_tokens + self.output_tokens

    def merge(self, other: TokenCounts) -> TokenCounts:
        # Streaming providers report cumulative counters, so the largest value wins.
        total: int | None
        if self.total_tokens is None:
            total = other.total_tokens
        elif other.total_tokens is None:
            total = self.total_tokens
        else:
            total = max(self.total_tokens, other.total_tokens)
        return TokenCounts(
            input_tokens=max(self.input_tokens, other.input_tokens),
            output_tokens=max(self.output_tokens, other.output_tokens),
            cached_tokens=max(self.cached_tokens, other.cached_tokens),
            reasoning_tokens=max(self.reasoning_tokens, other.reasoning_tokens),
            total_tokens=total,
        )


@dataclass(frozen=True, slots=True)
class InferenceEvent:
    timestamp: datetime
    provider: str
    model: str
    account_key: str = ""
    outcome: UsageOutcome = UsageOutcome.SUCCESS
    error_class: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0
    total_tokens: int = 0
    request_id: str | None = None
    method: str = "POST"
    path: str = ""
    status_code: int | None = None
    latency_ms: int | None = None
    request_bytes: int = 0
    response_bytes: int = 0
    id: int | None = field(default=None, compare=False)


@dataclass(frozen=True, slots=True)
class UsageEventFilter:
    provider: str | None = None
    model: str | None = None
    account_key: str | None = None


@dataclass(frozen=True, slots=True)
class UsageSummaryData:
    total_requests: int = 0
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0
    error_count: int = 0

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.error_count / self.total_requests


@dataclass(frozen=True, slots=True)
class TimeseriesPointData:
    bucket: str
    bucket_start: datetime
    requests: int = 0
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0
    error_count: int = 0


@dataclass(frozen=True, slots=True)
class BreakdownRowData:
    provider: str
    model: str
    account_key: str
    requests: int = 0
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0
    error_count: int = 0
    last_seen: datetime | None = None


@dataclass(frozen=True, slots=True)
class UsageAggregates:
    """Grouped sums for one range, straight from the database."""

    breakdown: list[BreakdownRowData] = field(default_factory=list)
    buckets: list[TimeseriesPointData] = field(default_factory=list)
