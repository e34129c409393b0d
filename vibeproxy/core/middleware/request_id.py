from __future__ import annotations

from collections.abc import Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.responses import Response

from vibeproxy.core.utils.request_id import ensure_request_id, reset_request_id, set_request_id


def add_request_id_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def request_id_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        token = set_request_id(None)
        try:
            ensure_request_id(request.headers.get("x-request-id"))
            return await call_next(request)
        finally:
            reset_request_id(token)
