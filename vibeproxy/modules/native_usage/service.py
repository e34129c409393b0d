from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from aiohttp_retry import RetryClient

from vibeproxy.core.clients.management import ManagementUsageFetchError, fetch_native_usage
from vibeproxy.core.config.routing import RoutingConfigStore, get_routing_config_store
from vibeproxy.core.config.settings import Settings, get_settings
from vibeproxy.core.types import JsonObject, JsonValue
from vibeproxy.core.usage.extract import INPUT_KEYS, OUTPUT_KEYS, TOTAL_KEYS, find_number
from vibeproxy.core.usage.ranges import UsageRange
from vibeproxy.core.utils.time import parse_iso8601, utcnow
from vibeproxy.modules.native_usage.schemas import (
    NativeUsagePanel,
    NativeUsageRow,
    NativeUsageStatus,
    NativeUsageSummary,
)

logger = logging.getLogger(__name__)

type KeyProvider = Callable[[], str | None]
type RowKey = tuple[str, str, str | None]


class NativeUsagePayloadError(ValueError):
    pass


@dataclass(slots=True)
class _RowTotals:
    requests: int = 0
    tokens: int = 0
    failed_requests: int = 0


def effective_range(usage_range: UsageRange) -> UsageRange:
    # The management API keeps a bounded history, so "all" means the last 30 days.
    if usage_range is UsageRange.ALL:
        return UsageRange.LAST_30_DAYS
    return usage_range


class NativeUsageReconciler:
    """Best-effort view of the backend's own usage counters.

    ``fetch`` never raises. Failures produce an ``unavailable`` panel, or the
    last good panel for the same window marked ``stale``.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        config_store: RoutingConfigStore | None = None,
        key_provider: KeyProvider | None = None,
        client: RetryClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings or get_settings()
        self._config_store = config_store or get_routing_config_store()
        self._key_provider = key_provider or (lambda: self._settings.management_key)
        self._client = client
        self._clock = clock
        self._last_good: dict[UsageRange, NativeUsagePanel] = {}
        self._last_synced_at: datetime | None = None

    @property
    def last_synced_at(self) -> datetime | None:
        return self._last_synced_at

    async def fetch(self, usage_range: UsageRange | str) -> NativeUsagePanel:
        requested = UsageRange.parse(usage_range)
        effective = effective_range(requested)

        if not self._settings.native_usage_enabled:
            return self._unavailable(requested, effective, "Native usage comparison is disabled")

        management_key = self._key_provider()
        if not management_key:
            return self._unavailable(requested, effective, "Management key not configured")

        now = self._clock()
        since = effective.since(now)
        snapshot = self._config_store.snapshot()
        try:
            payload = await fetch_native_usage(
                base_url=snapshot.backend_base_url,
                management_key=management_key,
                path=self._settings.native_usage_path,
                timeout_seconds=self._settings.native_usage_timeout_seconds,
                max_retries=self._settings.native_usage_max_retries,
                client=self._client,
            )
            rows = parse_native_rows(payload, since=since)
        except ManagementUsageFetchError as exc:
            return self._fallback(requested, effective, exc.message)
        except NativeUsagePayloadError as exc:
            logger.warning("Native usage payload rejected error=%s", exc)
            return self._fallback(requested, effective, str(exc))
        except Exception as exc:
            logger.warning("Native usage fetch crashed", exc_info=True)
            return self._fallback(requested, effective, f"Native usage unavailable: {exc}")

        self._last_synced_at = now
        panel = NativeUsagePanel(
            status=NativeUsageStatus.OK,
            requested_range=requested.value,
            effective_range=effective.value,
            message=_clamp_message(requested, effective),
            summary=NativeUsageSummary(
                total_requests=sum(row.requests for row in rows),
                total_tokens=sum(row.tokens for row in rows),
            ),
            rows=rows,
            last_synced_at=now,
        )
        self._last_good[effective] = panel
        logger.debug("Native usage synced range=%s rows=%d", effective.value, len(rows))
        return panel

    def _fallback(self, requested: UsageRange, effective: UsageRange, message: str) -> NativeUsagePanel:
        cached = self._last_good.get(effective)
        if cached is None:
            return self._unavailable(requested, effective, message)
        return cached.model_copy(
            update={
                "status": NativeUsageStatus.STALE,
                "requested_range": requested.value,
                "message": message,
            }
        )

    def _unavailable(self, requested: UsageRange, effective: UsageRange, message: str) -> NativeUsagePanel:
        return NativeUsagePanel(
            status=NativeUsageStatus.UNAVAILABLE,
            requested_range=requested.value,
            effective_range=effective.value,
            message=message,
            summary=None,
            rows=[],
            last_synced_at=self._last_synced_at,
        )


def parse_native_rows(payload: JsonObject, *, since: datetime | None) -> list[NativeUsageRow]:
    """Group ``usage.apis.<api>.models.<model>.details[]`` entries per source, model and auth index."""
    usage = payload.get("usage")
    if not isinstance(usage, dict):
        raise NativeUsagePayloadError("Native usage payload has no usage object")
    apis = usage.get("apis") or {}
    if not isinstance(apis, dict):
        raise NativeUsagePayloadError("Native usage payload has malformed apis")

    grouped: dict[RowKey, _RowTotals] = {}
    for api_name, api in apis.items():
        if not isinstance(api, dict):
            continue
        models = api.get("models")
        if not isinstance(models, dict):
            continue
        for model_name, model in models.items():
            if not isinstance(model, dict):
                continue
            details = model.get("details")
            if not isinstance(details, list):
                continue
            for detail in details:
                if not isinstance(detail, dict):
                    continue
                timestamp = _detail_timestamp(detail)
                if timestamp is None:
                    continue
                if since is not None and timestamp < since:
                    continue
                key = (_detail_source(detail, api_name), model_name, _auth_index(detail.get("auth_index")))
                totals = grouped.get(key)
                if totals is None:
                    totals = _RowTotals()
                    grouped[key] = totals
                totals.requests += 1
                totals.tokens += _detail_tokens(detail.get("tokens"))
                if detail.get("failed") is True:
                    totals.failed_requests += 1

    rows = [
        NativeUsageRow(
            source=source,
            model=model,
            auth_index=auth_index,
            requests=totals.requests,
            tokens=totals.tokens,
            failed_requests=totals.failed_requests,
        )
        for (source, model, auth_index), totals in grouped.items()
    ]
    rows.sort(key=lambda row: (-row.tokens, -row.requests, row.source, row.model, row.auth_index or ""))
    return rows


def _detail_timestamp(detail: JsonObject) -> datetime | None:
    value = detail.get("timestamp")
    if not isinstance(value, str):
        return None
    return parse_iso8601(value)


def _detail_source(detail: JsonObject, api_name: str) -> str:
    source = detail.get("source")
    if isinstance(source, str) and source.strip():
        return source.strip()
    return api_name


def _auth_index(value: JsonValue) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, str)):
        text = str(value).strip()
        return text or None
    return None


def _detail_tokens(tokens: JsonValue) -> int:
    if not isinstance(tokens, dict):
        return 0
    total = find_number(tokens, TOTAL_KEYS)
    if total:
        return total
    return (find_number(tokens, INPUT_KEYS) or 0) + (find_number(tokens, OUTPUT_KEYS) or 0)


def _clamp_message(requested: UsageRange, effective: UsageRange) -> str | None:
    if requested is effective:
        return None
    return f"Native usage covers {effective.value} at most"


_reconciler: NativeUsageReconciler | None = None


def get_native_usage_reconciler() -> NativeUsageReconciler:
    global _reconciler
    if _reconciler is None:
        _reconciler = NativeUsageReconciler()
    return _reconciler


def reset_native_usage_reconciler() -> None:
    global _reconciler
    _reconciler = None
