from __future__ import annotations

import os
import socket
import tempfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from httpx import ASGITransport, AsyncClient

TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="vibeproxy-tests-"))
TEST_DB_PATH = TEST_DB_DIR / "usage.db"

os.environ["VIBEPROXY_DATABASE_URL"] = os.environ.get(
    "VIBEPROXY_TEST_DATABASE_URL", f"sqlite+aiosqlite:///{TEST_DB_PATH}"
)
os.environ["VIBEPROXY_BACKEND_BASE_URL"] = "http://127.0.0.1:9"
os.environ["VIBEPROXY_MANAGEMENT_KEY"] = ""
os.environ["VIBEPROXY_GATEWAY_API_KEY"] = ""
os.environ["VIBEPROXY_GATEWAY_ENABLED"] = "false"
os.environ["VIBEPROXY_USAGE_RECORD_TIMEOUT_SECONDS"] = "10"
os.environ["VIBEPROXY_UPSTREAM_CONNECT_TIMEOUT_SECONDS"] = "2"

from vibeproxy.core.config.routing import get_routing_config_store  # noqa: E402
from vibeproxy.core.config.settings import get_settings  # noqa: E402
from vibeproxy.db.models import Base  # noqa: E402
from vibeproxy.db.session import engine  # noqa: E402
from vibeproxy.main import create_app  # noqa: E402
from vibeproxy.modules.native_usage.service import reset_native_usage_reconciler  # noqa: E402
from vibeproxy.modules.proxy.service import reset_proxy_service  # noqa: E402
from vibeproxy.modules.usage.store import reset_usage_store  # noqa: E402

type Responder = Callable[[web.Request, bytes], Awaitable[web.StreamResponse]]


@dataclass(slots=True)
class RecordedRequest:
    method: str
    path: str
    query_string: str
    headers: dict[str, str]
    body: bytes
    header_pairs: list[tuple[str, str]] = field(default_factory=list)


@dataclass(slots=True)
class FakeUpstream:
    server: TestServer
    requests: list[RecordedRequest] = field(default_factory=list)
    responder: Responder | None = None

    @property
    def base_url(self) -> str:
        return str(self.server.make_url("")).rstrip("/")

    def respond_json(self, payload: object, *, status: int = 200, headers: dict[str, str] | None = None) -> None:
        async def _respond(_: web.Request, __: bytes) -> web.StreamResponse:
            return web.json_response(payload, status=status, headers=headers)

        self.responder = _respond

    def respond_raw(
        self,
        body: bytes,
        *,
        status: int = 200,
        content_type: str = "application/json",
        headers: dict[str, str] | None = None,
    ) -> None:
        async def _respond(_: web.Request, __: bytes) -> web.StreamResponse:
            response = web.Response(body=body, status=status, headers=headers)
            response.content_type = content_type
            return response

        self.responder = _respond


async def _start_upstream() -> FakeUpstream:
    upstream: FakeUpstream

    async def _handle(request: web.Request) -> web.StreamResponse:
        body = await request.read()
        upstream.requests.append(
            RecordedRequest(
                method=request.method,
                path=request.path,
                query_string=request.query_string,
                headers={key.lower(): value for key, value in request.headers.items()},
                body=body,
                header_pairs=[(key.lower(), value) for key, value in request.headers.items()],
            )
        )
        if upstream.responder is None:
            return web.json_response({"ok": True})
        return await upstream.responder(request, body)

    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", _handle)
    server = TestServer(app, host="127.0.0.1")
    await server.start_server()
    upstream = FakeUpstream(server=server)
    return upstream


def _reset_schema(sync_conn) -> None:
    Base.metadata.drop_all(sync_conn)
    Base.metadata.create_all(sync_conn)


@pytest.fixture(autouse=True)
def reset_singletons():
    get_settings.cache_clear()
    get_routing_config_store().reset()
    reset_usage_store()
    reset_proxy_service()
    reset_native_usage_reconciler()
    yield
    get_routing_config_store().reset()


@pytest_asyncio.fixture
async def db_setup():
    async with engine.begin() as conn:
        await conn.run_sync(_reset_schema)
    yield True
    await engine.dispose()


@pytest_asyncio.fixture
async def app_instance(db_setup):
    return create_app()


@pytest_asyncio.fixture
async def async_client(app_instance):
    async with app_instance.router.lifespan_context(app_instance):
        transport = ASGITransport(app=app_instance)
        async with AsyncClient(transport=transport, base_url="http://127.0.0.1:8317") as client:
            yield client


@pytest_asyncio.fixture
async def fake_backend():
    upstream = await _start_upstream()
    get_routing_config_store().update(backend_base_url=upstream.base_url)
    yield upstream
    await upstream.server.close()


@pytest_asyncio.fixture
async def fake_management():
    upstream = await _start_upstream()
    get_routing_config_store().update(management_origin=upstream.base_url)
    yield upstream
    await upstream.server.close()


@pytest_asyncio.fixture
async def fake_gateway():
    upstream = await _start_upstream()
    get_routing_config_store().update(
        gateway_enabled=True,
        gateway_api_key="vck-test",
        gateway_base_url=upstream.base_url,
    )
    yield upstream
    await upstream.server.close()


@pytest.fixture
def closed_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port
