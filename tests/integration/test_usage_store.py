from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from vibeproxy.core.exceptions import UsageStoreError
from vibeproxy.core.usage.types import InferenceEvent, UsageEventFilter, UsageOutcome
from vibeproxy.core.utils.time import utcnow
from vibeproxy.db.session import SessionLocal
from vibeproxy.modules.usage.repository import UsageEventsRepository
from vibeproxy.modules.usage.service import UsageAggregator
from vibeproxy.modules.usage.store import UsageStore

pytestmark = pytest.mark.integration


def _event(index: int, **overrides) -> InferenceEvent:
    values = {
        "timestamp": utcnow() - timedelta(minutes=index),
        "provider": "anthropic",
        "model": "claude-sonnet-4-5",
        "account_key": "acct-1",
        "input_tokens": index,
        "output_tokens": 1,
        "total_tokens": index + 1,
        "request_id": f"req-{index}",
        "path": "/v1/messages",
    }
    values.update(overrides)
    return InferenceEvent(**values)


@pytest.mark.asyncio
async def test_concurrent_records_are_all_persisted_once(db_setup):
    store = UsageStore(batch_size=16, record_timeout_seconds=10.0)
    await store.start()
    try:
        await asyncio.gather(*(store.record(_event(index)) for index in range(100)))
        events = await store.query("24h")
    finally:
        await store.stop()

    assert len(events) == 100
    assert sorted(event.request_id for event in events) == sorted(f"req-{index}" for index in range(100))
    assert len({event.id for event in events}) == 100
    timestamps = [event.timestamp for event in events]
    assert timestamps == sorted(timestamps)


@pytest.mark.asyncio
async def test_recorded_event_is_visible_immediately(db_setup):
    store = UsageStore(record_timeout_seconds=10.0)
    await store.start()
    try:
        await store.record(_event(1, outcome=UsageOutcome.ERROR, error_class="http_500", status_code=500))
        events = await store.query("7d")
    finally:
        await store.stop()

    assert len(events) == 1
    assert events[0].outcome == UsageOutcome.ERROR
    assert events[0].error_class == "http_500"
    assert events[0].status_code == 500


@pytest.mark.asyncio
async def test_query_respects_range_and_filters(db_setup):
    now = utcnow()
    store = UsageStore(record_timeout_seconds=10.0)
    await store.start()
    try:
        await store.record(_event(1, timestamp=now - timedelta(hours=2)))
        await store.record(_event(2, timestamp=now - timedelta(days=3), provider="openai", model="gpt-4o"))
        await store.record(_event(3, timestamp=now - timedelta(days=20), account_key="acct-2"))
        await store.record(_event(4, timestamp=now - timedelta(days=400)))

        assert len(await store.query("24h", now=now)) == 1
        assert len(await store.query("7d", now=now)) == 2
        assert len(await store.query("30d", now=now)) == 3
        assert len(await store.query("all", now=now)) == 4
        openai = await store.query("all", UsageEventFilter(provider="openai"), now=now)
        assert [event.model for event in openai] == ["gpt-4o"]
        second_account = await store.query("all", UsageEventFilter(account_key="acct-2"), now=now)
        assert [event.request_id for event in second_account] == ["req-3"]
    finally:
        await store.stop()


@pytest.mark.asyncio
async def test_query_is_capped(db_setup):
    store = UsageStore(record_timeout_seconds=10.0, query_max_rows=3)
    await store.start()
    try:
        for index in range(5):
            await store.record(_event(index))
        events = await store.query("24h")
    finally:
        await store.stop()
    assert [event.request_id for event in events] == ["req-2", "req-1", "req-0"]


@pytest.mark.asyncio
async def test_record_requires_running_writer(db_setup):
    store = UsageStore()
    with pytest.raises(UsageStoreError):
        await store.record(_event(1))


@pytest.mark.asyncio
async def test_stop_drains_queued_events(db_setup):
    store = UsageStore(record_timeout_seconds=10.0)
    await store.start()
    pending = [asyncio.create_task(store.record(_event(index))) for index in range(10)]
    await asyncio.sleep(0)
    await store.stop()
    await asyncio.gather(*pending)

    async with SessionLocal() as session:
        events = await UsageEventsRepository(session).list_events()
    assert len(events) == 10


@pytest.mark.asyncio
async def test_capped_query_keeps_newest_and_aggregates_see_everything(db_setup):
    now = utcnow()
    store = UsageStore(record_timeout_seconds=10.0, query_max_rows=2)
    await store.start()
    try:
        for hours, tokens in ((3, 1), (2, 10), (1, 100)):
            await store.record(_event(hours, timestamp=now - timedelta(hours=hours), total_tokens=tokens))
        events = await store.query("24h", now=now)
        report = await UsageAggregator(store).report("24h", now=now)
    finally:
        await store.stop()

    assert [event.total_tokens for event in events] == [10, 100]
    assert report.summary.total_requests == 3
    assert report.summary.total_tokens == 111
    assert sum(point.total_tokens for point in report.timeseries) == 111
    assert sum(row.total_tokens for row in report.breakdown) == 111


@pytest.mark.asyncio
async def test_aggregates_group_by_provider_model_and_account(db_setup):
    now = utcnow()
    store = UsageStore(record_timeout_seconds=10.0)
    await store.start()
    try:
        await store.record(_event(1, timestamp=now - timedelta(hours=1), total_tokens=120, account_key="acct-a"))
        await store.record(_event(2, timestamp=now - timedelta(hours=2), total_tokens=10, account_key="acct-a"))
        await store.record(
            _event(3, timestamp=now - timedelta(hours=3), total_tokens=340, provider="openai", model="gpt-4o")
        )
        await store.record(
            _event(
                4,
                timestamp=now - timedelta(hours=4),
                total_tokens=0,
                account_key="acct-b",
                outcome=UsageOutcome.ERROR,
                error_class="http_500",
            )
        )
        aggregates = await store.aggregate("24h", now=now)
    finally:
        await store.stop()

    rows = {(row.provider, row.model, row.account_key): row for row in aggregates.breakdown}
    assert set(rows) == {
        ("anthropic", "claude-sonnet-4-5", "acct-a"),
        ("openai", "gpt-4o", "acct-1"),
        ("anthropic", "claude-sonnet-4-5", "acct-b"),
    }
    first = rows[("anthropic", "claude-sonnet-4-5", "acct-a")]
    assert first.requests == 2
    assert first.total_tokens == 130
    assert first.error_count == 0
    assert abs(first.last_seen - (now - timedelta(hours=1))) < timedelta(seconds=1)
    assert rows[("anthropic", "claude-sonnet-4-5", "acct-b")].error_count == 1
    assert sum(bucket.requests for bucket in aggregates.buckets) == 4
    assert all(bucket.bucket_start.minute == 0 for bucket in aggregates.buckets)


@pytest.mark.asyncio
async def test_flush_waits_for_queued_events(db_setup):
    store = UsageStore(record_timeout_seconds=10.0)
    await store.start()
    try:
        pending = [asyncio.create_task(store.record(_event(index))) for index in range(5)]
        await asyncio.sleep(0)
        await store.flush()

        async with SessionLocal() as session:
            events = await UsageEventsRepository(session).list_events()
        await asyncio.gather(*pending)
    finally:
        await store.stop()

    assert len(events) == 5
