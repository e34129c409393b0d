from __future__ import annotations

import json

import pytest

from vibeproxy.core.config.routing import RoutingConfig, RoutingConfigStore
from vibeproxy.core.config.settings import Settings
from vibeproxy.core.routing.classifier import classify
from vibeproxy.modules.proxy.types import UpstreamTarget
from vibeproxy.modules.proxy.upstream import (
    filter_request_headers,
    filter_response_headers,
    plan_inference,
    plan_passthrough,
    rewrite_location,
    rewrite_set_cookie,
)

pytestmark = pytest.mark.unit

BETA = "interleaved-thinking-2025-05-14"


def _config(**changes) -> RoutingConfig:
    store = RoutingConfigStore(RoutingConfig.from_settings(Settings(backend_base_url="http://127.0.0.1:8318")))
    if changes:
        store.update(**changes)
    return store.snapshot()


def test_thinking_request_goes_to_backend_with_beta_header():
    body = b'{"model":"claude-sonnet-4-5-thinking-2048","max_tokens":1000}'
    headers = [
        ("host", "127.0.0.1:8317"),
        ("authorization", "Bearer local"),
        ("content-length", str(len(body))),
        ("accept-encoding", "gzip"),
        ("anthropic-beta", "context-1m-2025-08-07"),
    ]
    decision = plan_inference("POST", classify("POST", "/v1/messages"), body, headers, _config())

    assert decision.upstream == UpstreamTarget.LOCAL_BACKEND
    assert decision.url == "http://127.0.0.1:8318/v1/messages"
    assert decision.headers["authorization"] == "Bearer local"
    assert decision.headers["anthropic-beta"] == f"context-1m-2025-08-07,{BETA}"
    assert "host" not in decision.headers
    assert "content-length" not in decision.headers
    assert decision.headers["accept-encoding"] == "identity"
    assert decision.budget == 2048
    assert decision.max_tokens == 3072
    assert json.loads(decision.body)["model"] == "claude-sonnet-4-5"


def test_existing_beta_header_is_kept_without_rewrite():
    body = b'{"model":"gpt-5","input":"hi"}'
    decision = plan_inference(
        "POST",
        classify("POST", "/v1/responses"),
        body,
        [("anthropic-beta", "files-api")],
        _config(),
    )
    assert decision.body is body
    assert decision.headers["anthropic-beta"] == "files-api"
    assert decision.model == "gpt-5"


def test_gateway_replaces_auth_for_claude_models():
    body = b'{"model":"claude-opus-4-5","messages":[]}'
    config = _config(gateway_enabled=True, gateway_api_key="vck-123")
    decision = plan_inference(
        "POST",
        classify("POST", "/api/provider/anthropic/v1/messages?beta=true"),
        body,
        [("Authorization", "Bearer local"), ("X-Api-Key", "old")],
        config,
    )

    assert decision.upstream == UpstreamTarget.ALTERNATE_GATEWAY
    assert decision.url == "https://ai-gateway.vercel.sh/v1/messages"
    assert decision.headers["x-api-key"] == "vck-123"
    assert decision.headers["anthropic-version"] == "2023-06-01"
    assert "Authorization" not in decision.headers
    assert decision.headers.getall("x-api-key") == ["vck-123"]


@pytest.mark.parametrize(
    ("enabled", "key", "model", "method"),
    [
        (True, None, "claude-opus-4-5", "POST"),
        (False, "vck-123", "claude-opus-4-5", "POST"),
        (True, "vck-123", "gpt-5", "POST"),
        (True, "vck-123", "claude-opus-4-5", "GET"),
    ],
)
def test_gateway_requires_flag_key_post_and_claude(enabled, key, model, method):
    body = json.dumps({"model": model}).encode()
    config = _config(gateway_enabled=enabled, gateway_api_key=key)
    decision = plan_inference(method, classify(method, "/v1/messages"), body, [], config)
    assert decision.upstream == UpstreamTarget.LOCAL_BACKEND


def test_passthrough_targets_management_origin():
    decision = plan_passthrough(classify("GET", "/threads?page=2"), [("Host", "localhost:8317")], _config())
    assert decision.upstream == UpstreamTarget.REMOTE_MANAGEMENT
    assert decision.url == "https://ampcode.com/threads?page=2"
    assert len(decision.headers) == 0


def test_hop_by_hop_and_connection_listed_headers_are_removed():
    headers = [
        ("Connection", "keep-alive, X-Private"),
        ("Keep-Alive", "timeout=5"),
        ("X-Private", "secret"),
        ("Transfer-Encoding", "chunked"),
        ("Accept", "application/json"),
    ]
    assert list(filter_request_headers(headers).items()) == [("Accept", "application/json")]


def test_repeated_request_headers_are_all_forwarded():
    headers = [
        ("Host", "localhost:8317"),
        ("X-Trace", "first"),
        ("Cookie", "a=1"),
        ("x-trace", "second"),
    ]
    decision = plan_passthrough(classify("GET", "/threads"), headers, _config())

    assert decision.headers.getall("X-Trace") == ["first", "second"]
    assert decision.headers.getall("cookie") == ["a=1"]
    assert "host" not in decision.headers


def test_response_headers_drop_length_and_keep_duplicates():
    headers = [
        ("Content-Length", "12"),
        ("Content-Type", "application/json"),
        ("Set-Cookie", "a=1"),
        ("Set-Cookie", "b=2"),
    ]
    assert filter_response_headers(headers) == [
        ("Content-Type", "application/json"),
        ("Set-Cookie", "a=1"),
        ("Set-Cookie", "b=2"),
    ]


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("/foo", "/api/foo"),
        ("https://ampcode.com/bar", "/api/bar"),
        ("http://ampcode.com/baz?q=1", "/api/baz?q=1"),
        ("https://other.com/x", "https://other.com/x"),
        ("//cdn.example.com/x", "//cdn.example.com/x"),
    ],
)
def test_rewrite_location(value, expected):
    assert rewrite_location(value, "https://ampcode.com") == expected


def test_rewrite_set_cookie_domain():
    origin = "https://ampcode.com"
    assert rewrite_set_cookie("session=abc; Domain=.ampcode.com; Path=/", origin) == (
        "session=abc; Domain=localhost; Path=/"
    )
    assert rewrite_set_cookie("session=abc; domain=ampcode.com", origin) == "session=abc; domain=localhost"
    assert rewrite_set_cookie("session=abc; Domain=example.org", origin) == "session=abc; Domain=example.org"


def test_snapshot_is_not_affected_by_later_updates():
    store = RoutingConfigStore(RoutingConfig.from_settings(Settings()))
    before = store.snapshot()
    store.set_gateway(enabled=True, api_key="  vck-1  ")
    after = store.snapshot()

    assert before.gateway_active is False
    assert after.gateway_active is True
    assert after.gateway_api_key == "vck-1"
