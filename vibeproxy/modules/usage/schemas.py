from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import Field

from vibeproxy.modules.shared.schemas import DashboardModel


class UsageSummary(DashboardModel):
    total_requests: int = 0
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0
    error_count: int = 0
    error_rate: float = 0.0


class TimeseriesPoint(DashboardModel):
    bucket: str
    bucket_start: datetime
    requests: int = 0
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0
    error_count: int = 0


class BreakdownRow(DashboardModel):
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


class UsageReport(DashboardModel):
    range: str
    generated_at: datetime
    summary: UsageSummary
    timeseries: List[TimeseriesPoint] = Field(default_factory=list)
    breakdown: List[BreakdownRow] = Field(default_factory=list)
