from __future__ import annotations

from collections.abc import Iterable
from urllib.parse import urlsplit

from multidict import CIMultiDict

from vibeproxy.core.config.routing import RoutingConfig
from vibeproxy.core.routing.classifier import RouteDecision
from vibeproxy.core.routing.thinking import is_claude_model, merge_beta_header, read_model, rewrite_thinking
from vibeproxy.modules.proxy.types import RewriteDecision, UpstreamTarget

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

_DROP_INFERENCE_HEADERS = frozenset({"host", "content-length", "accept-encoding", "anthropic-beta"})
_DROP_GATEWAY_HEADERS = frozenset({"authorization", "x-api-key", "anthropic-version", "content-type"})
_DROP_PASSTHROUGH_HEADERS = frozenset({"host"})


def filter_request_headers(
    headers: Iterable[tuple[str, str]],
    drop: Iterable[str] = (),
) -> CIMultiDict[str]:
    pairs = list(headers)
    excluded = set(HOP_BY_HOP_HEADERS) | {name.lower() for name in drop} | _connection_tokens(pairs)
    filtered: CIMultiDict[str] = CIMultiDict()
    for key, value in pairs:
        if key.lower() in excluded:
            continue
        # Repeated fields are forwarded as separate lines.
        filtered.add(key, value)
    return filtered


def filter_response_headers(headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    pairs = list(headers)
    excluded = set(HOP_BY_HOP_HEADERS) | {"content-length"} | _connection_tokens(pairs)
    return [(key, value) for key, value in pairs if key.lower() not in excluded]


def plan_inference(
    method: str,
    route: RouteDecision,
    body: bytes,
    headers: Iterable[tuple[str, str]],
    config: RoutingConfig,
) -> RewriteDecision:
    """Rewrite an inference request and pick the upstream that serves it."""
    inbound = list(headers)
    existing_beta = _header_value(inbound, "anthropic-beta")

    model: str | None = None
    rewritten = False
    thinking_header = False
    budget: int | None = None
    max_tokens: int | None = None
    if method.upper() == "POST" and body:
        rewrite = rewrite_thinking(body, config.thinking)
        body = rewrite.body
        model = rewrite.model
        rewritten = rewrite.rewritten
        thinking_header = rewrite.thinking_header
        budget = rewrite.budget
        max_tokens = rewrite.max_tokens
    elif body:
        model = read_model(body)

    use_gateway = config.gateway_active and method.upper() == "POST" and is_claude_model(model)
    if use_gateway:
        out_headers = filter_request_headers(inbound, _DROP_INFERENCE_HEADERS | _DROP_GATEWAY_HEADERS)
        out_headers["x-api-key"] = config.gateway_api_key or ""
        out_headers["anthropic-version"] = config.anthropic_version
        out_headers["content-type"] = "application/json"
        url = f"{config.gateway_base_url}{config.gateway_messages_path}"
        upstream = UpstreamTarget.ALTERNATE_GATEWAY
    else:
        out_headers = filter_request_headers(inbound, _DROP_INFERENCE_HEADERS)
        url = f"{config.backend_base_url}{route.upstream_target}"
        upstream = UpstreamTarget.LOCAL_BACKEND

    out_headers["accept-encoding"] = "identity"
    if thinking_header:
        out_headers["anthropic-beta"] = merge_beta_header(existing_beta, config.interleaved_thinking_beta)
    elif existing_beta is not None:
        out_headers["anthropic-beta"] = existing_beta

    return RewriteDecision(
        upstream=upstream,
        url=url,
        body=body,
        headers=out_headers,
        max_tokens=max_tokens,
        budget=budget,
        model=model,
        rewritten=rewritten,
    )


def plan_passthrough(route: RouteDecision, headers: Iterable[tuple[str, str]], config: RoutingConfig) -> RewriteDecision:
    return RewriteDecision(
        upstream=UpstreamTarget.REMOTE_MANAGEMENT,
        url=f"{config.management_origin}{route.upstream_target}",
        body=b"",
        headers=filter_request_headers(headers, _DROP_PASSTHROUGH_HEADERS),
    )


def login_redirect_url(route: RouteDecision, config: RoutingConfig) -> str:
    return f"{config.login_origin}{route.upstream_target}"


def rewrite_location(value: str, management_origin: str) -> str:
    """Point management redirects back at the local ``/api`` prefix."""
    host = urlsplit(management_origin).netloc
    for scheme in ("https://", "http://"):
        prefix = f"{scheme}{host}/"
        if host and value.startswith(prefix):
            return f"/api/{value[len(prefix):]}"
    if value.startswith("/") and not value.startswith("//"):
        return f"/api{value}"
    return value


def rewrite_set_cookie(value: str, management_origin: str) -> str:
    host = urlsplit(management_origin).hostname
    if not host:
        return value
    rewritten = []
    for part in value.split(";"):
        name, sep, domain = part.strip().partition("=")
        if sep and name.lower() == "domain" and domain.strip().lstrip(".").lower() == host.lower():
            leading = part[: len(part) - len(part.lstrip())]
            rewritten.append(f"{leading}{name}=localhost")
        else:
            rewritten.append(part)
    return ";".join(rewritten)


def rewrite_management_headers(headers: Iterable[tuple[str, str]], management_origin: str) -> list[tuple[str, str]]:
    result: list[tuple[str, str]] = []
    for key, value in filter_response_headers(headers):
        lower = key.lower()
        if lower == "location":
            value = rewrite_location(value, management_origin)
        elif lower == "set-cookie":
            value = rewrite_set_cookie(value, management_origin)
        result.append((key, value))
    return result


def _header_value(headers: Iterable[tuple[str, str]], name: str) -> str | None:
    for key, value in headers:
        if key.lower() == name:
            return value
    return None


def _connection_tokens(headers: Iterable[tuple[str, str]]) -> set[str]:
    tokens: set[str] = set()
    for key, value in headers:
        if key.lower() == "connection":
            tokens.update(token.strip().lower() for token in value.split(",") if token.strip())
    return tokens
