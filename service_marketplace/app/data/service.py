"""
Feed data retrieval: previews, authorized reads, history and live snapshots.

Feed metadata is always re-read from the ledger. Only blob payloads go
through the cache, and premium payloads are cached in their stored
(encrypted) form so decryption keys never end up in the cache.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from shared.errors import AuthenticationError, AuthorizationError, FeedInactiveError, NotFoundError
from shared.logging import get_logger, set_access_context

from ..auth.access import AccessDecision, AccessDecisionEngine, AuthContext
from ..caching.blob_cache import BlobCache, data_key, preview_key
from ..models import Feed, HistoryEntry
from ..payload import placeholder_preview, preview_of
from ..persistence.base import MarketplaceStore

DEFAULT_HISTORY_LIMIT = 100
ACCESS_DENIED_MESSAGE = "Access denied. Invalid or expired subscription."
CREDENTIALS_REQUIRED_MESSAGE = "API key or subscriptionId and consumer required"


@dataclass
class DataResult:
    feed: Feed
    payload: Any
    decision: AccessDecision


def _from_millis(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _within(moment: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    return (start is None or moment >= start) and (end is None or moment <= end)


class DataRetrievalService:
    """Orchestrates feed lookup, authorization, caching and decryption."""

    def __init__(self, ledger, blob_store, cache: BlobCache, access: AccessDecisionEngine,
                 store: MarketplaceStore, history_max_limit: int = 1000):
        self.ledger = ledger
        self.blob_store = blob_store
        self.cache = cache
        self.access = access
        self.store = store
        self.history_max_limit = history_max_limit
        self.logger = get_logger("marketplace.data")

    async def get_feed(self, feed_id: str) -> Feed:
        feed = await self.ledger.get_feed(feed_id)
        if feed is None:
            raise NotFoundError("Feed not found", {"feedId": feed_id})
        return feed

    async def get_active_feed(self, feed_id: str) -> Feed:
        feed = await self.get_feed(feed_id)
        if not feed.is_active:
            raise FeedInactiveError(feed_id)
        return feed

    async def get_preview(self, feed_id: str) -> Dict[str, Any]:
        """Public, bounded sample of a feed. Blob store failures degrade to a placeholder."""
        feed = await self.get_active_feed(feed_id)

        sample = await self.cache.get(preview_key(feed_id))
        if sample is None:
            try:
                full = await self.blob_store.retrieve(feed.walrus_blob_id)
            except Exception as e:
                self.logger.warning("Preview fetch failed, serving placeholder",
                                    feed_id=feed_id, blob_id=feed.walrus_blob_id, error=str(e))
                return {"data": placeholder_preview(), "feed": feed}
            sample = preview_of(full)
            await self.cache.put(preview_key(feed_id), sample)

        return {"data": sample, "feed": feed}

    async def get_data(self, feed_id: str, context: AuthContext,
                       decryption_key: Optional[str] = None) -> DataResult:
        """Authorized full payload of a feed."""
        feed = await self.get_active_feed(feed_id)
        set_access_context(feed_id=feed_id)
        decision = await self._authorize(feed_id, context)

        stored = await self._stored_payload(feed)
        payload = self._open(feed, stored, decryption_key)
        return DataResult(feed=feed, payload=payload, decision=decision)

    async def get_history(self, feed_id: str, context: AuthContext, limit: Optional[int] = None,
                          start: Optional[datetime] = None, end: Optional[datetime] = None,
                          decryption_key: Optional[str] = None) -> List[Dict[str, Any]]:
        """Past payloads, newest first.

        A blob that cannot be fetched yields a record with an ``error``
        instead of failing the page.
        """
        feed = await self.get_feed(feed_id)
        set_access_context(feed_id=feed_id)
        await self._authorize(feed_id, context)

        page_size = min(max(limit or DEFAULT_HISTORY_LIMIT, 1), self.history_max_limit)
        entries = await self.store.list_history(feed_id, start=start, end=end, limit=page_size)
        if not entries:
            current = HistoryEntry(feed_id=feed_id, blob_id=feed.walrus_blob_id,
                                   recorded_at=_from_millis(feed.last_updated))
            if _within(current.recorded_at, start, end):
                entries = [current]

        results = await asyncio.gather(
            *(self.blob_store.retrieve(entry.blob_id) for entry in entries),
            return_exceptions=True
        )

        records = []
        for entry, result in zip(entries, results):
            record = {"timestamp": entry.recorded_at.isoformat(), "blobId": entry.blob_id}
            if isinstance(result, Exception):
                self.logger.warning("History blob fetch failed", feed_id=feed_id,
                                    blob_id=entry.blob_id, error=str(result))
                record["error"] = "Failed to retrieve blob"
            else:
                try:
                    record["data"] = self._open(feed, result, decryption_key)
                except Exception as e:
                    record["error"] = str(e)
            records.append(record)
        return records

    async def snapshot(self, feed_id: str, decryption_key: Optional[str] = None) -> Any:
        """Current payload for an already authorized live binding."""
        feed = await self.get_feed(feed_id)
        stored = await self._stored_payload(feed)
        return self._open(feed, stored, decryption_key)

    async def _authorize(self, feed_id: str, context: AuthContext) -> AccessDecision:
        if not context.has_read_credentials:
            raise AuthenticationError(CREDENTIALS_REQUIRED_MESSAGE)
        decision = await self.access.authorize(feed_id, context)
        if not decision.granted:
            raise AuthorizationError(ACCESS_DENIED_MESSAGE)
        return decision

    async def _stored_payload(self, feed: Feed) -> Any:
        key = data_key(feed.id)
        stored = await self.cache.get(key)
        if stored is None:
            stored = await self.blob_store.retrieve(feed.walrus_blob_id)
            await self.cache.put(key, stored)
        return stored

    def _open(self, feed: Feed, stored: Any, decryption_key: Optional[str]) -> Any:
        if feed.is_premium and decryption_key:
            return self.blob_store.decrypt(stored, decryption_key)
        return stored
