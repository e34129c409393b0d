from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import Field

from vibeproxy.modules.native_usage.schemas import NativeUsagePanel
from vibeproxy.modules.shared.schemas import DashboardModel
from vibeproxy.modules.usage.schemas import BreakdownRow, TimeseriesPoint, UsageSummary


class UsageDashboardResponse(DashboardModel):
    range: str
    generated_at: datetime
    summary: UsageSummary
    timeseries: List[TimeseriesPoint] = Field(default_factory=list)
    breakdown: List[BreakdownRow] = Field(default_factory=list)
    native: NativeUsagePanel | None = None
