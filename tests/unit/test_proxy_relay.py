from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime

import aiohttp
import pytest

from vibeproxy.core.config.routing import RoutingConfigStore
from vibeproxy.core.config.settings import Settings
from vibeproxy.core.usage.types import InferenceEvent
from vibeproxy.modules.proxy.service import ProxyService
from vibeproxy.modules.usage.store import UsageStore

pytestmark = pytest.mark.unit


class _FakeUpstream:
    status = 200

    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


class _RecordingStore(UsageStore):
    def __init__(self) -> None:
        super().__init__()
        self.events: list[InferenceEvent] = []

    async def record(self, event: InferenceEvent) -> None:
        self.events.append(event)


async def _chunks(*parts: bytes, error: Exception | None = None) -> AsyncIterator[bytes]:
    for part in parts:
        yield part
    if error is not None:
        raise error


def _service() -> ProxyService:
    return ProxyService(config_store=RoutingConfigStore(), usage_store=_RecordingStore(), settings=Settings())


@pytest.mark.asyncio
async def test_relay_marks_completed_stream():
    upstream = _FakeUpstream()
    states = []

    relayed = [chunk async for chunk in _service()._relay(upstream, _chunks(b"a", b"b"), states.append)]

    assert relayed == [b"a", b"b"]
    assert upstream.closed
    assert states[0].completed
    assert states[0].upstream_error is None


@pytest.mark.asyncio
async def test_relay_reports_client_disconnect():
    upstream = _FakeUpstream()
    states = []
    relay = _service()._relay(upstream, _chunks(b"a", b"b", b"c"), states.append)

    assert await relay.__anext__() == b"a"
    await relay.aclose()

    assert upstream.closed
    assert not states[0].completed
    assert states[0].upstream_error is None


@pytest.mark.asyncio
async def test_relay_reports_upstream_failure():
    upstream = _FakeUpstream()
    states = []
    error = aiohttp.ClientPayloadError("connection reset")

    relayed = [chunk async for chunk in _service()._relay(upstream, _chunks(b"a", error=error), states.append)]

    assert relayed == [b"a"]
    assert states[0].upstream_error == "upstream_stream_error"
    assert not states[0].completed


@pytest.mark.asyncio
async def test_drain_waits_for_scheduled_records():
    store = _RecordingStore()
    service = ProxyService(config_store=RoutingConfigStore(), usage_store=store, settings=Settings())
    event = InferenceEvent(timestamp=datetime(2025, 1, 1), provider="openai", model="gpt-4o")

    service._schedule_record(event)
    await service.drain()

    assert store.events == [event]
