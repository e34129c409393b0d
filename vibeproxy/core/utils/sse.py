from __future__ import annotations

import json

from vibeproxy.core.types import JsonValue

_DONE_SENTINEL = b"[DONE]"


def parse_sse_data_line(line: bytes) -> JsonValue | None:
    stripped = line.strip()
    if not stripped.startswith(b"data:"):
        return None
    data = stripped[len(b"data:") :].strip()
    if not data or data == _DONE_SENTINEL:
        return None
    try:
        return json.loads(data)
    except (UnicodeDecodeError, ValueError):
        return None


def is_event_stream(content_type: str | None) -> bool:
    if not content_type:
        return False
    return content_type.split(";", 1)[0].strip().lower() == "text/event-stream"


def is_json_content(content_type: str | None) -> bool:
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")
