from __future__ import annotations

from dataclasses import dataclass

import aiohttp
from aiohttp_retry import RetryClient

from vibeproxy.core.config.settings import get_settings


@dataclass(slots=True)
class HttpClient:
    session: aiohttp.ClientSession
    retry_client: RetryClient


_http_client: HttpClient | None = None


def _build_session() -> aiohttp.ClientSession:
    settings = get_settings()
    connector = aiohttp.TCPConnector(limit_per_host=settings.upstream_pool_size_per_host)
    # Bodies are relayed verbatim, so the client must never decode Content-Encoding.
    return aiohttp.ClientSession(connector=connector, auto_decompress=False)


async def init_http_client() -> HttpClient:
    global _http_client
    if _http_client is not None and not _http_client.session.closed:
        return _http_client
    session = _build_session()
    retry_client = RetryClient(client_session=session, raise_for_status=False)
    _http_client = HttpClient(session=session, retry_client=retry_client)
    return _http_client


async def close_http_client() -> None:
    global _http_client
    client = _http_client
    _http_client = None
    if client is None:
        return
    if not client.session.closed:
        await client.session.close()


def get_http_client() -> HttpClient:
    if _http_client is None or _http_client.session.closed:
        raise RuntimeError("HTTP client is not initialized")
    return _http_client
