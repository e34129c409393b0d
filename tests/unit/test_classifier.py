from __future__ import annotations

import pytest

from vibeproxy.core.routing.classifier import (
    RouteKind,
    classify,
    model_from_path,
    provider_for_model,
    provider_hint,
    resolve_provider,
)

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    ("path", "redirect_path"),
    [
        ("/auth/cli-login", "/auth/cli-login"),
        ("/api/auth/cli-login", "/auth/cli-login"),
        ("/auth/cli-login/callback", "/auth/cli-login/callback"),
    ],
)
def test_login_paths_redirect_without_api_prefix(path, redirect_path):
    decision = classify("GET", path)
    assert decision.kind == RouteKind.LOGIN_REDIRECT
    assert decision.redirect_path == redirect_path


def test_login_redirect_keeps_query_string():
    decision = classify("GET", "/auth/cli-login?x=1&y=two")
    assert decision.kind == RouteKind.LOGIN_REDIRECT
    assert decision.upstream_target == "/auth/cli-login?x=1&y=two"


def test_provider_path_is_rewritten_under_api():
    decision = classify("POST", "/provider/foo/bar")
    assert decision.kind == RouteKind.PROVIDER_PATH_REWRITE
    assert decision.upstream_path == "/api/provider/foo/bar"
    assert decision.is_inference


@pytest.mark.parametrize(
    "path",
    ["/v1/messages", "/api/v1/chat/completions", "/api/provider/anthropic/v1/messages"],
)
def test_inference_paths(path):
    decision = classify("POST", path)
    assert decision.kind == RouteKind.INFERENCE
    assert decision.upstream_path == path


@pytest.mark.parametrize("path", ["/", "/threads", "/api/user", "/v1", "/news.rss"])
def test_other_paths_go_to_management(path):
    decision = classify("GET", path)
    assert decision.kind == RouteKind.MANAGEMENT_PASSTHROUGH
    assert decision.is_passthrough
    assert decision.upstream_path == path


@pytest.mark.parametrize("path", ["", "*", "http://example.com/v1/messages"])
def test_non_origin_form_targets_are_unclassified(path):
    decision = classify("OPTIONS", path)
    assert decision.kind == RouteKind.UNCLASSIFIED
    assert decision.is_passthrough


def test_query_survives_provider_rewrite():
    decision = classify("POST", "/provider/google/v1beta/models/gemini-2.5-pro:streamGenerateContent?alt=sse")
    assert decision.upstream_target == "/api/provider/google/v1beta/models/gemini-2.5-pro:streamGenerateContent?alt=sse"


def test_provider_hint_aliases():
    assert provider_hint("/api/provider/claude/v1/messages") == "anthropic"
    assert provider_hint("/api/provider/google/v1beta/models") == "gemini"
    assert provider_hint("/api/provider/somethingnew/v1") == "somethingnew"
    assert provider_hint("/v1/messages") is None


def test_model_from_gemini_path():
    assert model_from_path("/api/provider/google/v1beta/models/gemini-2.5-pro:generateContent") == "gemini-2.5-pro"
    assert model_from_path("/v1/messages") is None


def test_provider_resolution_falls_back_to_model_then_unknown():
    assert provider_for_model("claude-sonnet-4-5") == "anthropic"
    assert provider_for_model("gemini-claude-opus-4-5-thinking") == "anthropic"
    assert provider_for_model("gpt-5-codex") == "openai"
    assert resolve_provider("/v1/chat/completions", "qwen3-coder-plus") == "qwen"
    assert resolve_provider("/v1/chat/completions", "mystery") == "unknown"
    assert resolve_provider("/api/provider/openai/v1/responses", "claude-x") == "openai"
