from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List

from pydantic import Field

from vibeproxy.modules.shared.schemas import DashboardModel


class NativeUsageStatus(str, Enum):
    OK = "ok"
    UNAVAILABLE = "unavailable"
    STALE = "stale"


class NativeUsageSummary(DashboardModel):
    total_requests: int = 0
    total_tokens: int = 0


class NativeUsageRow(DashboardModel):
    source: str
    model: str
    auth_index: str | None = None
    requests: int = 0
    tokens: int = 0
    failed_requests: int = 0


class NativeUsagePanel(DashboardModel):
    status: NativeUsageStatus
    requested_range: str
    effective_range: str
    message: str | None = None
    summary: NativeUsageSummary | None = None
    rows: List[NativeUsageRow] = Field(default_factory=list)
    last_synced_at: datetime | None = None
