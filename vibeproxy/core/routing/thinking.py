from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass

from vibeproxy.core.config.routing import ThinkingPolicy
from vibeproxy.core.types import JsonObject

logger = logging.getLogger(__name__)

CLAUDE_MODEL_PREFIXES = ("claude-", "gemini-claude-")
MAX_TOKEN_FIELDS = ("max_tokens", "max_output_tokens")

_THINKING_SUFFIX = re.compile(r"(?P<base>.+)-thinking-(?P<budget>[0-9]{1,12})")


@dataclass(frozen=True, slots=True)
class ThinkingRewrite:
    body: bytes
    model: str | None
    rewritten: bool = False
    thinking_header: bool = False
    budget: int | None = None
    max_tokens: int | None = None


def is_claude_model(model: str | None) -> bool:
    return bool(model) and model.startswith(CLAUDE_MODEL_PREFIXES)


def read_model(body: bytes) -> str | None:
    payload = _load_object(body)
    if payload is None:
        return None
    model = payload.get("model")
    return model if isinstance(model, str) else None


def rewrite_thinking(body: bytes, policy: ThinkingPolicy | None = None) -> ThinkingRewrite:
    """Expand a ``<model>-thinking-<budget>`` suffix into a ``thinking`` block.

    Anything that does not match is returned with the original bytes. The
    rewrite never raises; parse problems are logged and the body passes through.
    """
    policy = policy or ThinkingPolicy()
    payload = _load_object(body)
    if payload is None:
        return ThinkingRewrite(body=body, model=None)

    model = payload.get("model")
    if not isinstance(model, str):
        return ThinkingRewrite(body=body, model=None)
    if not is_claude_model(model):
        return ThinkingRewrite(body=body, model=model)

    match = _THINKING_SUFFIX.fullmatch(model)
    budget = int(match.group("budget")) if match else 0
    if match is None or budget <= 0:
        if model.endswith("-thinking") or "-thinking(" in model:
            # The backend resolves these itself; only the beta header is added.
            logger.debug("Thinking model without budget model=%s", model)
            return ThinkingRewrite(body=body, model=model, thinking_header=True)
        return ThinkingRewrite(body=body, model=model)

    if not _ceilings_are_finite(payload):
        logger.warning("Token ceiling is not a finite number, passing through model=%s", model)
        return ThinkingRewrite(body=body, model=model)

    base = match.group("base")
    # gemini-claude-* ids keep their "-thinking" marker upstream.
    clean_model = f"{base}-thinking" if model.startswith("gemini-claude-") else base

    effective_budget = min(budget, policy.hard_token_cap - 1)
    if effective_budget != budget:
        logger.info(
            "Adjusted thinking budget model=%s requested=%d effective=%d",
            model,
            budget,
            effective_budget,
        )

    payload["model"] = clean_model
    payload["thinking"] = {"type": "enabled", "budget_tokens": effective_budget}
    max_tokens = _raise_token_ceiling(payload, effective_budget, policy)

    try:
        rendered = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError):
        logger.warning("Failed to serialize thinking rewrite model=%s", model, exc_info=True)
        return ThinkingRewrite(body=body, model=model)

    logger.info(
        "Rewrote thinking model from=%s to=%s budget=%d max_tokens=%s",
        model,
        clean_model,
        effective_budget,
        max_tokens,
    )
    return ThinkingRewrite(
        body=rendered,
        model=clean_model,
        rewritten=True,
        thinking_header=True,
        budget=effective_budget,
        max_tokens=max_tokens,
    )


def required_max_tokens(budget: int, policy: ThinkingPolicy) -> int:
    headroom = max(policy.minimum_headroom, int(budget * policy.headroom_ratio))
    required = min(budget + headroom, policy.hard_token_cap)
    if required <= budget:
        required = budget + 1
    return required


def merge_beta_header(existing: str | None, value: str) -> str:
    if not existing or not existing.strip():
        return value
    entries = [entry.strip() for entry in existing.split(",") if entry.strip()]
    if value in entries:
        return existing
    return f"{existing},{value}"


def _raise_token_ceiling(payload: JsonObject, budget: int, policy: ThinkingPolicy) -> int | None:
    resolved: int | None = None
    for field in MAX_TOKEN_FIELDS:
        current = payload.get(field)
        if isinstance(current, bool) or not isinstance(current, (int, float)):
            continue
        if current <= budget:
            payload[field] = required_max_tokens(budget, policy)
        value = payload[field]
        if isinstance(value, (int, float)):
            resolved = int(value) if resolved is None else max(resolved, int(value))
    return resolved


def _ceilings_are_finite(payload: JsonObject) -> bool:
    # json.loads accepts NaN, Infinity and 1e999, none of which convert to int.
    for field in MAX_TOKEN_FIELDS:
        value = payload.get(field)
        if isinstance(value, float) and not math.isfinite(value):
            return False
    return True


def _load_object(body: bytes) -> JsonObject | None:
    if not body:
        return None
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, ValueError):
        logger.debug("Request body is not JSON, passing through bytes=%d", len(body))
        return None
    if not isinstance(payload, dict):
        return None
    return payload
