from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

import aiohttp
import anyio
from fastapi import Request
from fastapi.responses import Response, StreamingResponse

from vibeproxy.core.clients.http import get_http_client
from vibeproxy.core.config.routing import RoutingConfig, RoutingConfigStore, get_routing_config_store
from vibeproxy.core.config.settings import Settings, get_settings
from vibeproxy.core.exceptions import ProxyUpstreamError, UsageStoreError
from vibeproxy.core.routing.classifier import RouteDecision, RouteKind, classify, model_from_path, resolve_provider
from vibeproxy.core.usage.tap import UsageTap, tap_stream
from vibeproxy.core.usage.types import InferenceEvent, UsageOutcome
from vibeproxy.core.utils.request_id import get_request_id
from vibeproxy.core.utils.time import utcnow
from vibeproxy.modules.proxy.types import RewriteDecision
from vibeproxy.modules.proxy.upstream import (
    filter_response_headers,
    login_redirect_url,
    plan_inference,
    plan_passthrough,
    rewrite_management_headers,
)
from vibeproxy.modules.usage.store import UsageStore, get_usage_store

logger = logging.getLogger(__name__)

GATEWAY_ACCOUNT_KEY = "gateway"


@dataclass(slots=True)
class _StreamState:
    completed: bool = False
    upstream_error: str | None = None


@dataclass(frozen=True, slots=True)
class _InferenceContext:
    route: RouteDecision
    decision: RewriteDecision
    method: str
    provider: str
    model: str
    request_id: str | None
    request_bytes: int
    started_at: float


class ProxyService:
    def __init__(
        self,
        *,
        config_store: RoutingConfigStore | None = None,
        usage_store: UsageStore | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._config_store = config_store or get_routing_config_store()
        self._usage_store = usage_store or get_usage_store()
        self._settings = settings or get_settings()
        self._pending: set[asyncio.Task[None]] = set()

    async def handle(self, request: Request) -> Response:
        config = self._config_store.snapshot()
        route = classify(request.method, _request_target(request), request.headers)
        logger.debug(
            "Proxy request request_id=%s method=%s path=%s kind=%s",
            get_request_id(),
            request.method,
            route.path,
            route.kind.value,
        )

        if route.kind == RouteKind.LOGIN_REDIRECT:
            location = login_redirect_url(route, config)
            logger.info("Redirecting CLI login request_id=%s location=%s", get_request_id(), location)
            return Response(status_code=302, headers={"Location": location})

        if route.is_passthrough:
            return await self._forward_management(request, route, config)

        if route.kind == RouteKind.PROVIDER_PATH_REWRITE:
            logger.info("Rewrote provider path from=%s to=%s", route.path, route.upstream_path)
        return await self._forward_inference(request, route, config)

    async def drain(self) -> None:
        """Wait for scheduled usage writes to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _forward_management(self, request: Request, route: RouteDecision, config: RoutingConfig) -> Response:
        decision = plan_passthrough(route, request.headers.items(), config)
        data = request.stream() if _has_request_body(request) else None
        try:
            upstream = await get_http_client().session.request(
                request.method,
                decision.url,
                headers=decision.headers,
                data=data,
                allow_redirects=False,
                timeout=self._timeout(),
            )
        except TimeoutError as exc:
            logger.warning("Management request timed out request_id=%s url=%s", get_request_id(), decision.url)
            raise ProxyUpstreamError(
                "Gateway Timeout - management origin did not respond",
                code="upstream_timeout",
                status_code=504,
            ) from exc
        except aiohttp.ClientError as exc:
            logger.warning(
                "Management request failed request_id=%s url=%s error=%s",
                get_request_id(),
                decision.url,
                exc,
            )
            raise ProxyUpstreamError("Bad Gateway - could not reach management origin") from exc

        headers = rewrite_management_headers(upstream.headers.items(), config.management_origin)
        return _streaming_response(upstream, headers, self._relay(upstream, upstream.content.iter_any(), None))

    async def _forward_inference(self, request: Request, route: RouteDecision, config: RoutingConfig) -> Response:
        started_at = time.monotonic()
        method = request.method.upper()
        body = await request.body()
        decision = plan_inference(method, route, body, request.headers.items(), config)
        if decision.rewritten:
            logger.info(
                "Thinking rewrite applied request_id=%s model=%s budget=%s max_tokens=%s",
                get_request_id(),
                decision.model,
                decision.budget,
                decision.max_tokens,
            )

        model = decision.model or model_from_path(route.upstream_path)
        provider = "anthropic" if decision.is_gateway else resolve_provider(route.upstream_path, model)
        context = _InferenceContext(
            route=route,
            decision=decision,
            method=method,
            provider=provider,
            model=model or "unknown",
            request_id=get_request_id(),
            request_bytes=len(decision.body),
            started_at=started_at,
        )
        track = method == "POST" and config.usage_tracking_enabled

        try:
            upstream = await get_http_client().session.request(
                method,
                decision.url,
                headers=decision.headers,
                data=decision.body or None,
                allow_redirects=False,
                timeout=self._timeout(),
            )
        except TimeoutError as exc:
            logger.warning(
                "Upstream request timed out request_id=%s upstream=%s url=%s",
                context.request_id,
                decision.upstream.value,
                decision.url,
            )
            if track:
                self._schedule_record(_error_event(context, "upstream_timeout", status_code=504))
            raise ProxyUpstreamError(
                "Gateway Timeout - upstream did not respond",
                code="upstream_timeout",
                status_code=504,
            ) from exc
        except aiohttp.ClientError as exc:
            logger.warning(
                "Upstream request failed request_id=%s upstream=%s url=%s error=%s",
                context.request_id,
                decision.upstream.value,
                decision.url,
                exc,
            )
            if track:
                self._schedule_record(_error_event(context, "upstream_unreachable", status_code=502))
            raise ProxyUpstreamError(f"Bad Gateway - could not reach {decision.upstream.value}") from exc

        if decision.is_gateway:
            account_key = GATEWAY_ACCOUNT_KEY
        else:
            account_key = upstream.headers.get(config.account_key_header, "")
        headers = filter_response_headers(upstream.headers.items())

        if not track:
            return _streaming_response(upstream, headers, self._relay(upstream, upstream.content.iter_any(), None))

        tap = UsageTap(
            upstream.headers.get("content-type"),
            max_event_bytes=self._settings.max_sse_event_bytes,
            max_capture_bytes=self._settings.max_usage_capture_bytes,
        )

        def _on_finish(state: _StreamState) -> None:
            self._schedule_record(_completed_event(context, upstream.status, account_key, tap, state))

        chunks = tap_stream(upstream.content.iter_any(), tap)
        return _streaming_response(upstream, headers, self._relay(upstream, chunks, _on_finish))

    async def _relay(
        self,
        upstream: aiohttp.ClientResponse,
        chunks: AsyncIterator[bytes],
        on_finish: Callable[[_StreamState], None] | None,
    ) -> AsyncIterator[bytes]:
        state = _StreamState()
        try:
            async for chunk in chunks:
                yield chunk
            state.completed = True
        except (aiohttp.ClientError, TimeoutError) as exc:
            state.upstream_error = "upstream_stream_error"
            logger.warning(
                "Upstream stream interrupted request_id=%s status=%s error=%s",
                get_request_id(),
                upstream.status,
                exc,
            )
        finally:
            upstream.close()
            if on_finish is not None:
                on_finish(state)

    def _schedule_record(self, event: InferenceEvent) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._record(event))
        except RuntimeError:
            logger.warning("Dropped usage event without a running loop request_id=%s", event.request_id)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _record(self, event: InferenceEvent) -> None:
        with anyio.CancelScope(shield=True):
            try:
                await self._usage_store.record(event)
            except UsageStoreError as exc:
                logger.warning(
                    "Dropped usage event request_id=%s provider=%s model=%s error=%s",
                    event.request_id,
                    event.provider,
                    event.model,
                    exc.message,
                )

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=None,
            sock_connect=self._settings.upstream_connect_timeout_seconds,
            sock_read=self._settings.upstream_read_timeout_seconds,
        )


def _streaming_response(
    upstream: aiohttp.ClientResponse,
    headers: list[tuple[str, str]],
    body: AsyncIterator[bytes],
) -> StreamingResponse:
    response = StreamingResponse(body, status_code=upstream.status)
    for key, value in headers:
        response.headers.append(key, value)
    return response


def _request_target(request: Request) -> str:
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1").split("?", 1)[0] if raw_path else request.url.path
    query = request.scope.get("query_string", b"").decode("latin-1")
    if query:
        return f"{path}?{query}"
    return path


def _has_request_body(request: Request) -> bool:
    if "transfer-encoding" in request.headers:
        return True
    length = request.headers.get("content-length")
    return bool(length) and length != "0"


def _latency_ms(context: _InferenceContext) -> int:
    return int((time.monotonic() - context.started_at) * 1000)


def _error_event(context: _InferenceContext, error_class: str, *, status_code: int) -> InferenceEvent:
    return InferenceEvent(
        timestamp=utcnow(),
        provider=context.provider,
        model=context.model,
        account_key=GATEWAY_ACCOUNT_KEY if context.decision.is_gateway else "",
        outcome=UsageOutcome.ERROR,
        error_class=error_class,
        request_id=context.request_id,
        method=context.method,
        path=context.route.upstream_path,
        status_code=status_code,
        latency_ms=_latency_ms(context),
        request_bytes=context.request_bytes,
    )


def _completed_event(
    context: _InferenceContext,
    status_code: int,
    account_key: str,
    tap: UsageTap,
    state: _StreamState,
) -> InferenceEvent:
    counts = tap.finish() if state.completed else tap.counts
    error_class: str | None = None
    if state.upstream_error is not None:
        error_class = state.upstream_error
    elif not state.completed:
        error_class = "client_disconnected"
    elif status_code >= 400:
        error_class = f"http_{status_code}"

    return InferenceEvent(
        timestamp=utcnow(),
        provider=context.provider,
        model=context.model,
        account_key=account_key,
        outcome=UsageOutcome.ERROR if error_class else UsageOutcome.SUCCESS,
        error_class=error_class,
        input_tokens=counts.input_tokens if counts else 0,
        output_tokens=counts.output_tokens if counts else 0,
        cached_tokens=counts.cached_tokens if counts else 0,
        reasoning_tokens=counts.reasoning_tokens if counts else 0,
        total_tokens=counts.resolved_total if counts else 0,
        request_id=context.request_id,
        method=context.method,
        path=context.route.upstream_path,
        status_code=status_code,
        latency_ms=_latency_ms(context),
        request_bytes=context.request_bytes,
        response_bytes=tap.bytes_seen,
    )


_proxy_service: ProxyService | None = None


def get_proxy_service() -> ProxyService:
    global _proxy_service
    if _proxy_service is None:
        _proxy_service = ProxyService()
    return _proxy_service


def reset_proxy_service() -> None:
    global _proxy_service
    _proxy_service = None
