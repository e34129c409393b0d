from __future__ import annotations

from dataclasses import dataclass

from vibeproxy.modules.dashboard.service import DashboardService
from vibeproxy.modules.proxy.service import ProxyService, get_proxy_service


@dataclass(slots=True)
class ProxyContext:
    service: ProxyService


def get_proxy_context() -> ProxyContext:
    return ProxyContext(service=get_proxy_service())


def get_dashboard_service() -> DashboardService:
    return DashboardService()
