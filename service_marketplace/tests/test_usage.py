"""
Unit tests for usage recording and aggregation.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from service_marketplace.app.models import UsageRecord
from service_marketplace.app.usage import UsageRecorder, aggregate_usage, empty_stats


def usage(feed_id, day, queries=1, size=100):
    return UsageRecord(credential_id="k1", endpoint=f"/api/data/{feed_id}", method="GET", status_code=200,
                       response_time_ms=12, feed_id=feed_id, queries_used=queries, data_size=size,
                       timestamp=datetime(2024, 3, day, 12, tzinfo=timezone.utc))


def test_aggregate_usage_totals_and_groups():
    records = [usage("0xfeed1", 2), usage("0xfeed2", 1, size=50), usage("0xfeed1", 2, queries=0)]

    stats = aggregate_usage(records)

    assert stats["totalRequests"] == 3
    assert stats["totalQueries"] == 2
    assert stats["totalDataSize"] == 250
    by_feed = {f["feedId"]: f for f in stats["byFeed"]}
    assert by_feed["0xfeed1"] == {"feedId": "0xfeed1", "requests": 2, "queries": 1, "dataSize": 200}
    assert [d["date"] for d in stats["byDate"]] == ["2024-03-01", "2024-03-02"]


def test_aggregate_usage_of_nothing():
    assert aggregate_usage([]) == empty_stats()


class TestUsageRecorder:
    """Test cases for UsageRecorder."""

    @pytest.mark.asyncio
    async def test_record_is_written_in_background(self, store, background, metrics):
        recorder = UsageRecorder(store, background, metrics=metrics)

        task = recorder.record(usage("0xfeed1", 1))
        await task

        rows = await store.query_usage(["k1"])
        assert len(rows) == 1
        assert b'usage_records_total{status="written"} 1.0' in metrics.export()

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self, store, background, metrics):
        store.insert_usage = AsyncMock(side_effect=RuntimeError("db down"))
        recorder = UsageRecorder(store, background, metrics=metrics)

        await recorder.record(usage("0xfeed1", 1))

        assert b'status="failed"' in metrics.export()

    @pytest.mark.asyncio
    async def test_drain_waits_for_pending_writes(self, store, background):
        recorder = UsageRecorder(store, background)
        for day in (1, 2, 3):
            recorder.record(usage("0xfeed1", day))

        cancelled = await background.drain(timeout=1.0)

        assert cancelled == 0
        assert len(await store.query_usage(["k1"])) == 3
        assert len(background) == 0
