from __future__ import annotations

import asyncio
from datetime import datetime

from vibeproxy.core.config.settings import get_settings
from vibeproxy.core.usage.ranges import UsageRange
from vibeproxy.core.usage.types import UsageEventFilter
from vibeproxy.core.utils.time import utcnow
from vibeproxy.modules.dashboard.schemas import UsageDashboardResponse
from vibeproxy.modules.native_usage.schemas import NativeUsagePanel
from vibeproxy.modules.native_usage.service import NativeUsageReconciler, get_native_usage_reconciler
from vibeproxy.modules.usage.service import UsageAggregator


class DashboardService:
    def __init__(
        self,
        aggregator: UsageAggregator | None = None,
        reconciler: NativeUsageReconciler | None = None,
        *,
        include_native: bool | None = None,
    ) -> None:
        self._aggregator = aggregator or UsageAggregator()
        self._reconciler = reconciler or get_native_usage_reconciler()
        self._include_native = get_settings().native_usage_enabled if include_native is None else include_native

    async def get_usage_dashboard(
        self,
        usage_range: UsageRange | str | None = None,
        filters: UsageEventFilter | None = None,
        *,
        now: datetime | None = None,
    ) -> UsageDashboardResponse:
        resolved = UsageRange.parse(usage_range)
        now = now or utcnow()
        native: NativeUsagePanel | None = None
        if self._include_native:
            report, native = await asyncio.gather(
                self._aggregator.report(resolved, filters, now=now),
                self._reconciler.fetch(resolved),
            )
        else:
            report = await self._aggregator.report(resolved, filters, now=now)
        return UsageDashboardResponse(
            range=report.range,
            generated_at=report.generated_at,
            summary=report.summary,
            timeseries=report.timeseries,
            breakdown=report.breakdown,
            native=native,
        )
