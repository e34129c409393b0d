from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from vibeproxy import __version__
from vibeproxy.core.clients.http import close_http_client, init_http_client
from vibeproxy.core.handlers import add_exception_handlers
from vibeproxy.core.middleware import add_request_id_middleware
from vibeproxy.db.session import close_db, init_db
from vibeproxy.modules.proxy import api as proxy_api
from vibeproxy.modules.proxy.service import get_proxy_service
from vibeproxy.modules.usage.store import get_usage_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    await init_db()
    await init_http_client()
    usage_store = get_usage_store()
    await usage_store.start()

    try:
        yield
    finally:
        try:
            await get_proxy_service().drain()
            await usage_store.stop()
        finally:
            try:
                await close_http_client()
            finally:
                await close_db()


def create_app() -> FastAPI:
    # Every path belongs to the proxy, so the interactive docs stay off.
    app = FastAPI(
        title="vibeproxy",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    add_request_id_middleware(app)
    add_exception_handlers(app)

    app.include_router(proxy_api.router)
    return app


app = create_app()
