"""
Unit tests for the data retrieval service.
"""

from datetime import datetime, timedelta, timezone

import pytest

from shared.errors import AuthenticationError, AuthorizationError, FeedInactiveError, NotFoundError
from shared.test_helpers import CONSUMER_ADDRESS, OTHER_ADDRESS, FakeClock, test_data_factory

from service_marketplace.app.adapters.blob_store_client import seal
from service_marketplace.app.auth.access import AccessDecisionEngine, AuthContext
from service_marketplace.app.caching.blob_cache import MemoryBlobCache, data_key, preview_key
from service_marketplace.app.data.service import DataRetrievalService
from service_marketplace.app.models import HistoryEntry, utcnow
from service_marketplace.app.payload import MAPPING_PREVIEW


class TestDataRetrievalService:
    """Test cases for DataRetrievalService."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cache(self, clock, metrics):
        return MemoryBlobCache(ttl=300, metrics=metrics, clock=clock)

    @pytest.fixture
    def data_service(self, ledger, blob_store, cache, store, metrics):
        access = AccessDecisionEngine(ledger, metrics=metrics)
        return DataRetrievalService(ledger, blob_store, cache, access, store, history_max_limit=1000)

    @pytest.fixture
    def legacy(self):
        return AuthContext(subscription_id="0xsub1", consumer_address=CONSUMER_ADDRESS)

    @pytest.mark.asyncio
    async def test_preview_is_public_and_bounded(self, data_service, feed, readings):
        result = await data_service.get_preview(feed.id)

        assert result["data"] == readings[:3]
        assert result["feed"].id == feed.id

    @pytest.mark.asyncio
    async def test_preview_degrades_to_placeholder(self, data_service, blob_store, cache, feed):
        """An unreachable blob store yields a placeholder that is not cached."""
        blob_store.unreachable = True

        result = await data_service.get_preview(feed.id)

        assert result["data"] == MAPPING_PREVIEW
        assert await cache.get(preview_key(feed.id)) is None

    @pytest.mark.asyncio
    async def test_preview_is_cached(self, data_service, blob_store, feed):
        await data_service.get_preview(feed.id)
        await data_service.get_preview(feed.id)

        assert blob_store.retrieve_calls == 1

    @pytest.mark.asyncio
    async def test_unknown_feed(self, data_service):
        with pytest.raises(NotFoundError):
            await data_service.get_preview("0xnope")

    @pytest.mark.asyncio
    async def test_inactive_feed_is_distinct_error(self, data_service, ledger, legacy):
        ledger.add_feed(test_data_factory.create_feed("0xoff", is_active=False))

        with pytest.raises(FeedInactiveError):
            await data_service.get_data("0xoff", legacy)

    @pytest.mark.asyncio
    async def test_get_data_authorized(self, data_service, feed, subscription, readings, legacy):
        result = await data_service.get_data(feed.id, legacy)

        assert result.payload == readings
        assert result.decision.granted

    @pytest.mark.asyncio
    async def test_get_data_without_credentials(self, data_service, feed):
        with pytest.raises(AuthenticationError):
            await data_service.get_data(feed.id, AuthContext())

    @pytest.mark.asyncio
    async def test_get_data_denied(self, data_service, feed, subscription):
        context = AuthContext(subscription_id=subscription.id, consumer_address=OTHER_ADDRESS)

        with pytest.raises(AuthorizationError):
            await data_service.get_data(feed.id, context)

    @pytest.mark.asyncio
    async def test_denied_reads_never_touch_blob_store(self, data_service, blob_store, feed, subscription):
        context = AuthContext(subscription_id=subscription.id, consumer_address=OTHER_ADDRESS)

        with pytest.raises(AuthorizationError):
            await data_service.get_data(feed.id, context)

        assert blob_store.retrieve_calls == 0

    @pytest.mark.asyncio
    async def test_preview_never_served_as_data(self, data_service, cache, feed, subscription,
                                                readings, legacy):
        await data_service.get_preview(feed.id)

        result = await data_service.get_data(feed.id, legacy)

        assert result.payload == readings
        assert await cache.get(data_key(feed.id)) == readings

    @pytest.mark.asyncio
    async def test_premium_cached_encrypted_and_decrypted_per_request(self, data_service, ledger,
                                                                      blob_store, cache, legacy):
        feed = ledger.add_feed(test_data_factory.create_feed("0xfeed1", is_premium=True))
        ledger.add_subscription(test_data_factory.create_subscription("0xsub1", feed.id))
        blob_store.put(feed.walrus_blob_id, seal({"co2": 410}, "s3cret-key"))

        decrypted = await data_service.get_data(feed.id, legacy, decryption_key="s3cret-key")
        still_sealed = await data_service.get_data(feed.id, legacy)

        assert decrypted.payload == {"co2": 410}
        assert still_sealed.payload["encrypted"] is True
        assert (await cache.get(data_key(feed.id)))["encrypted"] is True

    @pytest.mark.asyncio
    async def test_history_falls_back_to_current_pointer(self, data_service, feed, subscription,
                                                         readings, legacy):
        records = await data_service.get_history(feed.id, legacy)

        assert len(records) == 1
        assert records[0]["blobId"] == feed.walrus_blob_id
        assert records[0]["data"] == readings

    @pytest.mark.asyncio
    async def test_history_fallback_respects_date_range(self, data_service, feed, subscription, legacy):
        updated = datetime.fromtimestamp(feed.last_updated / 1000, tz=timezone.utc)

        inside = await data_service.get_history(feed.id, legacy, start=updated - timedelta(days=1),
                                                end=updated + timedelta(days=1))
        before = await data_service.get_history(feed.id, legacy, end=updated - timedelta(days=1))

        assert [r["blobId"] for r in inside] == [feed.walrus_blob_id]
        assert before == []

    @pytest.mark.asyncio
    async def test_history_marks_failed_blobs(self, data_service, store, blob_store, feed,
                                              subscription, legacy):
        now = utcnow()
        blob_store.put("blob-old", {"v": 1})
        await store.append_history(HistoryEntry(feed.id, "blob-old", now - timedelta(minutes=2)))
        await store.append_history(HistoryEntry(feed.id, "blob-gone", now - timedelta(minutes=1)))

        records = await data_service.get_history(feed.id, legacy)

        assert [r["blobId"] for r in records] == ["blob-gone", "blob-old"]
        assert records[0]["error"] == "Failed to retrieve blob"
        assert records[1]["data"] == {"v": 1}

    @pytest.mark.asyncio
    async def test_history_limit_is_capped(self, ledger, blob_store, cache, store, metrics, feed,
                                           subscription, legacy):
        access = AccessDecisionEngine(ledger, metrics=metrics)
        data_service = DataRetrievalService(ledger, blob_store, cache, access, store, history_max_limit=5)
        now = utcnow()
        for i in range(8):
            blob_store.put(f"blob-h{i}", {"i": i})
            await store.append_history(HistoryEntry(feed.id, f"blob-h{i}", now + timedelta(seconds=i)))

        records = await data_service.get_history(feed.id, legacy, limit=5000)

        assert len(records) == 5
        assert records[0]["data"] == {"i": 7}

    @pytest.mark.asyncio
    async def test_history_requires_authorization(self, data_service, feed, subscription):
        with pytest.raises(AuthorizationError):
            await data_service.get_history(
                feed.id, AuthContext(subscription_id=subscription.id, consumer_address=OTHER_ADDRESS)
            )
