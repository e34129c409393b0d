from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from vibeproxy.dependencies import ProxyContext, get_proxy_context

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

router = APIRouter(tags=["proxy"])


@router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy(
    request: Request,
    path: str,
    context: ProxyContext = Depends(get_proxy_context),
) -> Response:
    return await context.service.handle(request)
