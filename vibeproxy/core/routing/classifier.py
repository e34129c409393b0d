from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

LOGIN_PREFIXES = ("/auth/cli-login", "/api/auth/cli-login")
PROVIDER_PREFIX = "/provider/"
API_PROVIDER_PREFIX = "/api/provider/"
INFERENCE_PREFIXES = ("/v1/", "/api/v1/", API_PROVIDER_PREFIX)

_PATH_MODEL_PATTERN = re.compile(r"/models/(?P<model>[^/:?]+)(?::[^/?]*)?$")

_PROVIDER_ALIASES = {
    "anthropic": "anthropic",
    "claude": "anthropic",
    "openai": "openai",
    "codex": "openai",
    "google": "gemini",
    "gemini": "gemini",
    "qwen": "qwen",
    "zai": "zai",
    "github-copilot": "github-copilot",
    "copilot": "github-copilot",
    "antigravity": "antigravity",
}


class RouteKind(str, Enum):
    LOGIN_REDIRECT = "login_redirect"
    PROVIDER_PATH_REWRITE = "provider_path_rewrite"
    MANAGEMENT_PASSTHROUGH = "management_passthrough"
    INFERENCE = "inference"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True, slots=True)
class RouteDecision:
    kind: RouteKind
    path: str
    upstream_path: str
    query: str = ""
    redirect_path: str | None = None

    @property
    def is_inference(self) -> bool:
        return self.kind in (RouteKind.INFERENCE, RouteKind.PROVIDER_PATH_REWRITE)

    @property
    def is_passthrough(self) -> bool:
        return self.kind in (RouteKind.MANAGEMENT_PASSTHROUGH, RouteKind.UNCLASSIFIED)

    @property
    def upstream_target(self) -> str:
        if not self.query:
            return self.upstream_path
        return f"{self.upstream_path}?{self.query}"


def classify(method: str, path: str, headers: Mapping[str, str] | None = None) -> RouteDecision:
    """Decide how the proxy handles a request.

    Total over its inputs: anything that is not an origin-form path falls back to
    ``UNCLASSIFIED``. A query string embedded in ``path`` is split off and carried
    separately so it survives path rewrites unchanged.
    """
    raw_path, _, query = path.partition("?")

    if not raw_path.startswith("/"):
        return RouteDecision(
            kind=RouteKind.UNCLASSIFIED,
            path=raw_path,
            upstream_path=raw_path or "/",
            query=query,
        )

    if raw_path.startswith(LOGIN_PREFIXES):
        login_path = raw_path[len("/api") :] if raw_path.startswith("/api/") else raw_path
        return RouteDecision(
            kind=RouteKind.LOGIN_REDIRECT,
            path=raw_path,
            upstream_path=login_path,
            query=query,
            redirect_path=login_path,
        )

    if raw_path.startswith(PROVIDER_PREFIX):
        return RouteDecision(
            kind=RouteKind.PROVIDER_PATH_REWRITE,
            path=raw_path,
            upstream_path=f"/api{raw_path}",
            query=query,
        )

    if raw_path.startswith(INFERENCE_PREFIXES):
        return RouteDecision(
            kind=RouteKind.INFERENCE,
            path=raw_path,
            upstream_path=raw_path,
            query=query,
        )

    return RouteDecision(
        kind=RouteKind.MANAGEMENT_PASSTHROUGH,
        path=raw_path,
        upstream_path=raw_path,
        query=query,
    )


def provider_hint(path: str) -> str | None:
    if not path.startswith(API_PROVIDER_PREFIX):
        return None
    segment = path[len(API_PROVIDER_PREFIX) :].split("/", 1)[0].strip().lower()
    if not segment:
        return None
    return _PROVIDER_ALIASES.get(segment, segment)


def model_from_path(path: str) -> str | None:
    match = _PATH_MODEL_PATTERN.search(path)
    if match is None:
        return None
    return match.group("model")


def provider_for_model(model: str | None) -> str | None:
    if not model:
        return None
    name = model.strip().lower()
    if name.startswith(("claude-", "gemini-claude-")):
        return "anthropic"
    if name.startswith(("gpt-", "o1", "o3", "o4", "codex", "chatgpt-")):
        return "openai"
    if name.startswith("gemini-"):
        return "gemini"
    if name.startswith(("qwen", "qwq")):
        return "qwen"
    if name.startswith("glm-"):
        return "zai"
    return None


def resolve_provider(path: str, model: str | None) -> str:
    return provider_hint(path) or provider_for_model(model) or "unknown"
