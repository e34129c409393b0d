from __future__ import annotations

from vibeproxy.core.types import JsonValue
from vibeproxy.core.usage.types import TokenCounts

USAGE_CONTAINER_KEYS = ("usage", "usageMetadata", "usage_metadata")

INPUT_KEYS = ("input_tokens", "prompt_tokens", "promptTokenCount")
OUTPUT_KEYS = ("output_tokens", "completion_tokens", "candidatesTokenCount")
TOTAL_KEYS = ("total_tokens", "totalTokenCount")
CACHED_KEYS = (
    "cached_tokens",
    "cached_input_tokens",
    "cache_read_input_tokens",
    "cachedContentTokenCount",
    "cache_creation_input_tokens",
)
REASONING_KEYS = ("reasoning_tokens", "thinking_tokens", "thoughtsTokenCount", "reasoningTokenCount")


def extract_token_counts(payload: JsonValue) -> TokenCounts | None:
    """Collect token counters from every usage block found in ``payload``.

    Anthropic, OpenAI chat/responses and Gemini shapes are recognized. Returns
    ``None`` when the payload carries no usage block at all.
    """
    containers = list(_iter_usage_containers(payload))
    if not containers:
        return None
    counts: TokenCounts | None = None
    for container in containers:
        found = _counts_from_container(container)
        if found is None:
            continue
        counts = found if counts is None else counts.merge(found)
    return counts


def _iter_usage_containers(value: JsonValue):
    if isinstance(value, dict):
        for key, nested in value.items():
            if key in USAGE_CONTAINER_KEYS and isinstance(nested, dict):
                yield nested
            else:
                yield from _iter_usage_containers(nested)
    elif isinstance(value, list):
        for nested in value:
            yield from _iter_usage_containers(nested)


def _counts_from_container(container: dict[str, JsonValue]) -> TokenCounts | None:
    input_tokens = find_number(container, INPUT_KEYS)
    output_tokens = find_number(container, OUTPUT_KEYS)
    total_tokens = find_number(container, TOTAL_KEYS)
    cached_tokens = find_number(container, CACHED_KEYS)
    reasoning_tokens = find_number(container, REASONING_KEYS)
    if all(
        value is None for value in (input_tokens, output_tokens, total_tokens, cached_tokens, reasoning_tokens)
    ):
        return None
    return TokenCounts(
        input_tokens=input_tokens or 0,
        output_tokens=output_tokens or 0,
        cached_tokens=cached_tokens or 0,
        reasoning_tokens=reasoning_tokens or 0,
        total_tokens=total_tokens,
    )


def find_number(value: JsonValue, keys: tuple[str, ...]) -> int | None:
    if isinstance(value, dict):
        for key in keys:
            if key in value:
                number = _as_count(value[key])
                if number is not None:
                    return number
        for nested in value.values():
            found = find_number(nested, keys)
            if found is not None:
                return found
        return None
    if isinstance(value, list):
        for nested in value:
            found = find_number(nested, keys)
            if found is not None:
                return found
    return None


def _as_count(value: JsonValue) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, float):
        return max(round(value), 0)
    if isinstance(value, str):
        try:
            return max(int(value.strip()), 0)
        except ValueError:
            return None
    return None
