"""
Usage recording and aggregation.

Every request that carried a validated API key produces one usage record.
Records are written from background tasks so that logging can neither
delay nor fail the response.
"""

from typing import Any, Dict, Iterable, Optional

from fastapi import Request, Response

from shared.background import BackgroundTaskSet
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..models import Credential, UsageRecord
from ..persistence.base import MarketplaceStore


def empty_stats() -> Dict[str, Any]:
    return {"totalRequests": 0, "totalQueries": 0, "totalDataSize": 0, "byFeed": [], "byDate": []}


def aggregate_usage(records: Iterable[UsageRecord]) -> Dict[str, Any]:
    """Totals plus per-feed and per-day aggregates (days ascending)."""
    stats = empty_stats()
    by_feed: Dict[str, Dict[str, Any]] = {}
    by_date: Dict[str, Dict[str, Any]] = {}

    for record in records:
        stats["totalRequests"] += 1
        stats["totalQueries"] += record.queries_used or 0
        stats["totalDataSize"] += record.data_size or 0

        if record.feed_id:
            feed = by_feed.setdefault(record.feed_id, {"feedId": record.feed_id, "requests": 0,
                                                       "queries": 0, "dataSize": 0})
            feed["requests"] += 1
            feed["queries"] += record.queries_used or 0
            feed["dataSize"] += record.data_size or 0

        day = record.timestamp.date().isoformat()
        date = by_date.setdefault(day, {"date": day, "requests": 0, "queries": 0, "dataSize": 0})
        date["requests"] += 1
        date["queries"] += record.queries_used or 0
        date["dataSize"] += record.data_size or 0

    stats["byFeed"] = list(by_feed.values())
    stats["byDate"] = [by_date[day] for day in sorted(by_date)]
    return stats


class UsageRecorder:
    """Fire-and-forget writer of usage records."""

    def __init__(self, store: MarketplaceStore, background: BackgroundTaskSet,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.background = background
        self.metrics = metrics
        self.logger = get_logger("marketplace.usage")

    def record(self, record: UsageRecord):
        """Schedule a write and return immediately."""
        return self.background.spawn(self._write(record), name=f"usage:{record.credential_id}")

    async def _write(self, record: UsageRecord):
        try:
            await self.store.insert_usage(record)
        except Exception as e:
            self.logger.warning("Failed to record usage", credential_id=record.credential_id,
                                endpoint=record.endpoint, error=str(e))
            if self.metrics:
                self.metrics.increment_counter("usage_records_total", status="failed")
            return
        if self.metrics:
            self.metrics.increment_counter("usage_records_total", status="written")

    def record_request(self, request: Request, response: Response, duration: float):
        """Record a finished request if it was made with a validated key."""
        credential: Optional[Credential] = getattr(request.state, "credential", None)
        if credential is None:
            return None

        path = request.url.path
        content_length = response.headers.get("content-length")
        record = UsageRecord(
            credential_id=credential.id,
            feed_id=credential.feed_id or request.path_params.get("feed_id"),
            subscription_id=credential.subscription_id,
            endpoint=path,
            method=request.method,
            status_code=response.status_code,
            response_time_ms=int(duration * 1000),
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
            queries_used=1 if request.method == "GET" and "/data/" in path else 0,
            data_size=int(content_length) if content_length and content_length.isdigit() else 0,
        )
        return self.record(record)
