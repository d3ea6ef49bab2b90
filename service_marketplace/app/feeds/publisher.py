"""
Feed write path: registration, provider updates and device ingestion.

Every write uploads the payload first and then moves the ledger pointer.
The two steps are not atomic. Provider updates report a failed pointer
move as an error carrying the orphaned blob id; device ingestion reports
it as an accepted-but-unsynced result.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from shared.errors import AuthenticationError, AuthorizationError, NotFoundError, UpstreamError
from shared.logging import get_logger, set_access_context

from ..auth.access import AccessDecisionEngine, AuthContext
from ..caching.blob_cache import BlobCache
from ..models import HistoryEntry, RegisterFeedRequest
from ..persistence.base import MarketplaceStore
from ..ws.connection_manager import LiveUpdateBroadcaster

NOT_PROVIDER_MESSAGE = "Unauthorized: Not the feed provider"
PROVIDER_CREDENTIALS_REQUIRED = "Provider API key or provider address required"
LEDGER_UPDATE_FAILED = "Blob stored but ledger update failed"
LEDGER_SYNC_WARNING = "Data stored in blob store but the ledger pointer was not updated"


@dataclass
class IngestResult:
    feed_id: str
    blob_id: str
    ledger_synced: bool
    warning: Optional[str] = None


class FeedPublisher:
    """Uploads feed payloads and moves ledger pointers."""

    def __init__(self, ledger, blob_store, cache: BlobCache, store: MarketplaceStore,
                 broadcaster: LiveUpdateBroadcaster, access: AccessDecisionEngine):
        self.ledger = ledger
        self.blob_store = blob_store
        self.cache = cache
        self.store = store
        self.broadcaster = broadcaster
        self.access = access
        self.logger = get_logger("marketplace.feeds")

    async def register_feed(self, request: RegisterFeedRequest) -> Dict[str, Any]:
        """Upload the initial payload and register the feed on the ledger."""
        provider = request.provider or self.ledger.get_address()
        upload = await self.blob_store.upload(
            request.initial_data,
            encrypt=request.is_premium,
            encryption_key=request.encryption_key,
        )

        metadata = {
            "name": request.name,
            "category": request.category,
            "description": request.description,
            "location": request.location,
            "price_per_query": request.price_per_query,
            "monthly_subscription_price": request.monthly_subscription_price,
            "is_premium": request.is_premium,
            "update_frequency": request.update_frequency,
        }
        try:
            feed_id = await self.ledger.register_feed(provider, metadata, upload.blob_id)
        except UpstreamError as e:
            e.details.setdefault("blobId", upload.blob_id)
            raise

        await self._append_history(feed_id, upload.blob_id)
        self.logger.info("Feed registered", feed_id=feed_id, provider=provider,
                         blob_id=upload.blob_id, premium=request.is_premium)

        result = {"feedId": feed_id, "walrusBlobId": upload.blob_id}
        if upload.encryption_key:
            result["encryptionKey"] = upload.encryption_key
        return result

    async def update_feed(self, feed_id: str, data: Any, context: AuthContext,
                          encryption_key: Optional[str] = None) -> Dict[str, Any]:
        """Provider update of a feed's payload."""
        feed = await self.ledger.get_feed(feed_id)
        if feed is None:
            raise NotFoundError("Feed not found", {"feedId": feed_id})
        set_access_context(feed_id=feed_id)

        await self._authorize_write(feed_id, context, feed)

        upload = await self.blob_store.upload(data, encrypt=feed.is_premium, encryption_key=encryption_key)
        try:
            await self.ledger.update_feed_data(feed_id, upload.blob_id)
        except UpstreamError as e:
            self.logger.error("Ledger pointer move failed after upload", feed_id=feed_id,
                              blob_id=upload.blob_id, error=e.reason)
            raise UpstreamError("ledger", e.reason, {"blobId": upload.blob_id, "feedId": feed_id},
                                message=LEDGER_UPDATE_FAILED) from e

        await self._after_pointer_move(feed_id, upload.blob_id, upload.stored)

        result = {"feedId": feed_id, "newWalrusBlobId": upload.blob_id}
        if upload.encryption_key:
            result["encryptionKey"] = upload.encryption_key
        return result

    async def ingest(self, feed_id: str, device_id: Optional[str], data: Dict[str, Any],
                     context: AuthContext) -> IngestResult:
        """Device ingestion.

        Without provider credentials the payload is only uploaded. With
        them the ledger pointer is moved too, and a failure of that step is
        reported on the result instead of raised.
        """
        set_access_context(feed_id=feed_id)
        can_write = context.credential is not None or bool(context.provider_address)
        if can_write:
            await self._authorize_write(feed_id, context)

        enriched = dict(data)
        enriched.update({
            "deviceId": device_id or "unknown",
            "receivedAt": int(time.time() * 1000),
            "source": "iot_device",
        })
        upload = await self.blob_store.upload(enriched, encrypt=False)

        if not can_write:
            self.logger.info("Device payload stored without ledger update", feed_id=feed_id,
                             device_id=device_id, blob_id=upload.blob_id)
            return IngestResult(feed_id=feed_id, blob_id=upload.blob_id, ledger_synced=False)

        try:
            await self.ledger.update_feed_data(feed_id, upload.blob_id)
        except UpstreamError as e:
            self.logger.warning("Device payload stored but ledger update failed", feed_id=feed_id,
                                device_id=device_id, blob_id=upload.blob_id, error=e.reason)
            return IngestResult(feed_id=feed_id, blob_id=upload.blob_id, ledger_synced=False,
                                warning=LEDGER_SYNC_WARNING)

        await self._after_pointer_move(feed_id, upload.blob_id, upload.stored)
        return IngestResult(feed_id=feed_id, blob_id=upload.blob_id, ledger_synced=True)

    async def _authorize_write(self, feed_id: str, context: AuthContext, feed=None):
        if context.credential is None and not context.provider_address:
            raise AuthenticationError(PROVIDER_CREDENTIALS_REQUIRED)
        decision = await self.access.authorize_write(feed_id, context, feed)
        if not decision.granted:
            raise AuthorizationError(NOT_PROVIDER_MESSAGE)
        return decision

    async def _after_pointer_move(self, feed_id: str, blob_id: str, stored: Any):
        await self._append_history(feed_id, blob_id)
        await self.cache.invalidate_feed(feed_id)
        delivered = await self.broadcaster.notify(feed_id, stored)
        self.logger.info("Feed data updated", feed_id=feed_id, blob_id=blob_id, delivered=delivered)

    async def _append_history(self, feed_id: str, blob_id: str):
        try:
            await self.store.append_history(HistoryEntry(feed_id=feed_id, blob_id=blob_id))
        except Exception as e:
            self.logger.warning("Failed to index feed history", feed_id=feed_id, blob_id=blob_id, error=str(e))
