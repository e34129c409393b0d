from __future__ import annotations

from vibeproxy.core.types import JsonObject


def openai_error(code: str, message: str, *, error_type: str = "server_error") -> JsonObject:
    return {"error": {"message": message, "type": error_type, "code": code}}
