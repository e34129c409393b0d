from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from vibeproxy.core.errors import openai_error
from vibeproxy.core.exceptions import AppError, ProxyUpstreamError
from vibeproxy.core.utils.request_id import get_request_id

logger = logging.getLogger(__name__)


def add_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ProxyUpstreamError)
    async def _upstream_error_handler(request: Request, exc: ProxyUpstreamError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=openai_error(exc.code, exc.message, error_type=exc.error_type),
        )

    @app.exception_handler(AppError)
    async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=openai_error(exc.code, exc.message),
        )

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "Unhandled proxy error request_id=%s method=%s path=%s",
            get_request_id(),
            request.method,
            request.url.path,
        )
        return JSONResponse(
            status_code=500,
            content=openai_error("internal_error", "Unexpected error"),
        )
