from __future__ import annotations

import asyncio
import logging

import aiohttp
from aiohttp_retry import ExponentialRetry, RetryClient

from vibeproxy.core.clients.http import get_http_client
from vibeproxy.core.types import JsonObject
from vibeproxy.core.utils.request_id import get_request_id

RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}
RETRY_START_TIMEOUT = 0.5
RETRY_MAX_TIMEOUT = 2.0

logger = logging.getLogger(__name__)


class ManagementUsageFetchError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


async def fetch_native_usage(
    *,
    base_url: str,
    management_key: str,
    path: str = "/v0/management/usage",
    timeout_seconds: float = 5.0,
    max_retries: int = 1,
    client: RetryClient | None = None,
) -> JsonObject:
    """Fetch the backend's own usage statistics from its management API."""
    url = f"{base_url.rstrip('/')}/{path.lstrip('/')}"
    timeout = aiohttp.ClientTimeout(total=timeout_seconds)
    retry_client = client or get_http_client().retry_client

    try:
        async with retry_client.request(
            "GET",
            url,
            headers=_management_headers(management_key),
            timeout=timeout,
            retry_options=_retry_options(max_retries + 1),
        ) as resp:
            if resp.status >= 400:
                message = await _error_message(resp)
                logger.warning(
                    "Native usage fetch failed request_id=%s status=%s message=%s",
                    get_request_id(),
                    resp.status,
                    message,
                )
                raise ManagementUsageFetchError(resp.status, message)
            try:
                data = await resp.json(content_type=None)
            except ValueError as exc:
                raise ManagementUsageFetchError(502, "Invalid native usage payload") from exc
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.warning(
            "Native usage fetch error request_id=%s error=%s",
            get_request_id(),
            exc,
        )
        raise ManagementUsageFetchError(0, f"Native usage fetch failed: {exc}") from exc

    if not isinstance(data, dict):
        raise ManagementUsageFetchError(502, "Invalid native usage payload")
    return data


def _management_headers(management_key: str) -> dict[str, str]:
    headers = {
        "Authorization": f"Bearer {management_key}",
        "Accept": "application/json",
        # The shared session never decompresses.
        "Accept-Encoding": "identity",
    }
    request_id = get_request_id()
    if request_id:
        headers["x-request-id"] = request_id
    return headers


async def _error_message(resp: aiohttp.ClientResponse) -> str:
    fallback = f"Native usage fetch failed ({resp.status})"
    try:
        data = await resp.json(content_type=None)
    except Exception:
        text = (await resp.text(errors="replace")).strip()
        return text or fallback
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str) and error:
            return error
        if isinstance(data.get("message"), str):
            return data["message"]
    return fallback


def _retry_options(attempts: int) -> ExponentialRetry:
    return ExponentialRetry(
        attempts=attempts,
        start_timeout=RETRY_START_TIMEOUT,
        max_timeout=RETRY_MAX_TIMEOUT,
        factor=2.0,
        statuses=RETRYABLE_STATUS,
        exceptions={aiohttp.ClientError, asyncio.TimeoutError},
        retry_all_server_errors=False,
    )
