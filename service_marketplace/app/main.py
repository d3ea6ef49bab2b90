"""
IoT Data Marketplace gateway.

Brokers access to ledger-registered IoT feeds whose payloads live in a
blob store: feed and subscription management, authorized data reads,
device ingestion, API key management, subscriber dashboards and a live
update channel over WebSocket.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from shared.background import BackgroundTaskSet
from shared.base_service import BaseService, VERSION
from shared.config import MarketplaceConfig
from shared.errors import AuthenticationError, AuthorizationError, NotFoundError, ValidationError
from shared.metrics import MetricsCollector

from .adapters import BlobStoreClient, LedgerClient
from .auth import AccessDecisionEngine, CredentialValidator, resolve_auth_context
from .caching import BlobCache, create_blob_cache
from .data import DataRetrievalService
from .feeds import FeedPublisher
from .models import (
    CredentialType,
    IoTFeedUpdateRequest,
    IoTUpdateRequest,
    ProviderKeyRequest,
    RatingRequest,
    RegisterFeedRequest,
    SubscribeRequest,
    SubscriberKeyRequest,
    SubscriptionTier,
    UpdateFeedDataRequest,
    UploadRequest,
    VerifyRequest,
)
from .persistence import MarketplaceStore, open_store
from .usage import UsageRecorder, aggregate_usage, empty_stats
from .ws import ConnectionLimitExceeded, LiveMessageHandler, LiveUpdateBroadcaster

DECRYPTION_KEY_HEADER = "X-Decryption-Key"
WS_TRY_AGAIN_LATER = 1013


def _parse_date(value: Optional[str], field: str) -> Optional[datetime]:
    """Parse ISO-8601 dates with Z or offset suffixes."""
    if not value:
        return None
    candidate = value.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        raise ValidationError(f"Invalid {field}", {"field": field, "value": value})
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now_ms() -> int:
    return int(time.time() * 1000)


def _listing(items: List[Any]) -> Dict[str, Any]:
    return {"success": True, "data": items, "count": len(items)}


class MarketplaceService(BaseService):
    """Marketplace gateway service implementation."""

    def __init__(self, config: Optional[MarketplaceConfig] = None, *,
                 ledger=None, blob_store=None,
                 store: Optional[MarketplaceStore] = None,
                 cache: Optional[BlobCache] = None,
                 metrics: Optional[MetricsCollector] = None,
                 background: Optional[BackgroundTaskSet] = None):
        super().__init__("marketplace", config, metrics)

        self.ledger = ledger or LedgerClient(self.config, metrics=self.metrics)
        self.blob_store = blob_store or BlobStoreClient(self.config, metrics=self.metrics)
        self.cache = cache if cache is not None else create_blob_cache(
            self.config.cache_backend, self.config.cache_ttl, self.config.redis_url, self.metrics
        )
        self.background = background if background is not None else BackgroundTaskSet("background")
        self.access = AccessDecisionEngine(self.ledger, metrics=self.metrics)
        self.broadcaster = LiveUpdateBroadcaster(
            heartbeat_interval=self.config.ws_heartbeat_interval,
            max_connections=self.config.ws_max_connections,
            metrics=self.metrics,
        )

        self.store: Optional[MarketplaceStore] = None
        self.validator: Optional[CredentialValidator] = None
        self.data_service: Optional[DataRetrievalService] = None
        self.publisher: Optional[FeedPublisher] = None
        self.usage_recorder: Optional[UsageRecorder] = None
        self.ws_handler: Optional[LiveMessageHandler] = None
        self._owns_store = store is None
        if store is not None:
            self._wire(store)

        self._setup_usage_middleware()
        self._setup_index_routes()
        self._setup_feed_routes()
        self._setup_subscription_routes()
        self._setup_data_routes()
        self._setup_iot_routes()
        self._setup_api_key_routes()
        self._setup_subscriber_routes()
        self._setup_live_routes()

        self.app.state.marketplace_service = self

    def _wire(self, store: MarketplaceStore):
        """Build the components that depend on the selected store."""
        self.store = store
        self.validator = CredentialValidator(store, background=self.background)
        self.data_service = DataRetrievalService(
            self.ledger, self.blob_store, self.cache, self.access, store,
            history_max_limit=self.config.history_max_limit,
        )
        self.publisher = FeedPublisher(self.ledger, self.blob_store, self.cache, store,
                                       self.broadcaster, self.access)
        self.usage_recorder = UsageRecorder(store, self.background, metrics=self.metrics)
        self.ws_handler = LiveMessageHandler(self.broadcaster, self.validator, self.access, self.data_service)

    async def start(self):
        """Open the store strategy and start the liveness loop."""
        if self.store is None:
            self._wire(await open_store(self.config))
        await self.broadcaster.start()
        self.logger.info("Marketplace gateway started", ledger=self.config.ledger_rpc_url(),
                         cache_backend=self.config.cache_backend, store=getattr(self.store, "name", None))

    async def stop(self):
        """Close live connections, drain background work, release clients."""
        await self.broadcaster.stop()
        abandoned = await self.background.drain(self.config.background_drain_timeout)
        await self.ledger.close()
        await self.blob_store.close()
        await self.cache.close()
        if self.store is not None and self._owns_store:
            await self.store.stop()
        self.logger.info("Marketplace gateway stopped", abandoned_tasks=abandoned)

    def _setup_usage_middleware(self):

        @self.app.middleware("http")
        async def record_usage(request: Request, call_next):
            start_time = time.time()
            response = await call_next(request)
            if self.usage_recorder is not None:
                self.usage_recorder.record_request(request, response, time.time() - start_time)
            return response

    def _setup_index_routes(self):

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "name": "IoT Data Marketplace API",
                "version": VERSION,
                "endpoints": {
                    "feeds": "/api/feeds",
                    "subscriptions": "/api/subscriptions",
                    "data": "/api/data",
                    "websocket": "/ws",
                },
            }

    def _setup_feed_routes(self):

        @self.app.get("/api/feeds")
        async def list_feeds(
            category: Optional[str] = None,
            is_premium: Optional[str] = Query(None, alias="isPremium"),
            min_price: Optional[float] = Query(None, alias="minPrice"),
            max_price: Optional[float] = Query(None, alias="maxPrice"),
            location: Optional[str] = None,
        ):
            """List registered feeds with optional filters."""
            feeds = await self.ledger.list_feeds()
            if category:
                feeds = [f for f in feeds if f.category == category]
            if is_premium is not None:
                wanted = is_premium.lower() == "true"
                feeds = [f for f in feeds if f.is_premium == wanted]
            if min_price is not None:
                feeds = [f for f in feeds if f.monthly_subscription_price >= min_price]
            if max_price is not None:
                feeds = [f for f in feeds if f.monthly_subscription_price <= max_price]
            if location:
                needle = location.lower()
                feeds = [f for f in feeds if needle in f.location.lower()]
            return _listing([f.to_dict() for f in feeds])

        @self.app.get("/api/feeds/{feed_id}")
        async def get_feed(feed_id: str):
            feed = await self.data_service.get_feed(feed_id)
            return {"success": True, "data": feed.to_dict()}

        @self.app.post("/api/feeds")
        async def create_feed(body: RegisterFeedRequest):
            """Register a feed and upload its initial payload."""
            result = await self.publisher.register_feed(body)
            return {"success": True, "data": result}

        @self.app.put("/api/feeds/{feed_id}/data")
        async def update_feed_data(feed_id: str, body: UpdateFeedDataRequest, request: Request):
            """Push a new payload for an existing feed."""
            context = await resolve_auth_context(request, self.validator, provider=body.provider)
            result = await self.publisher.update_feed(feed_id, body.data, context,
                                                      encryption_key=body.encryption_key)
            return {"success": True, "data": result}

        @self.app.post("/api/feeds/{feed_id}/rating")
        async def submit_rating(feed_id: str, body: RatingRequest):
            if not body.is_valid():
                raise ValidationError("Invalid rating (must be 1-5)")
            rating_id = await self.ledger.submit_rating(feed_id, body.stars, body.comment or "")
            return {"success": True, "data": {"ratingId": rating_id}}

    def _setup_subscription_routes(self):

        @self.app.post("/api/subscribe/{feed_id}")
        async def subscribe(feed_id: str, body: SubscribeRequest):
            """Create a ledger subscription after checking the payment amount."""
            if body.tier not in {tier.value for tier in SubscriptionTier}:
                raise ValidationError("Invalid subscription tier")

            feed = await self.data_service.get_active_feed(feed_id)
            required = (feed.monthly_subscription_price if body.tier == SubscriptionTier.MONTHLY
                        else feed.price_per_query)
            if body.payment_amount < required:
                raise ValidationError(
                    f"Insufficient payment. Required: {required}, Provided: {body.payment_amount}",
                    {"required": required, "provided": body.payment_amount}
                )

            consumer = body.consumer or self.ledger.get_address()
            subscription_id = await self.ledger.subscribe(consumer, feed_id, body.tier, body.payment_amount)
            return {
                "success": True,
                "data": {
                    "subscriptionId": subscription_id,
                    "feedId": feed_id,
                    "tier": body.tier,
                    "paymentAmount": body.payment_amount,
                },
            }

        @self.app.get("/api/subscriptions/{subscription_id}")
        async def get_subscription(subscription_id: str):
            subscription = await self.ledger.get_subscription(subscription_id)
            if subscription is None:
                raise NotFoundError("Subscription not found", {"subscriptionId": subscription_id})
            return {"success": True, "data": subscription.to_dict()}

        @self.app.post("/api/subscriptions/{subscription_id}/verify")
        async def verify_subscription(subscription_id: str, body: VerifyRequest):
            if not body.consumer:
                raise ValidationError("Consumer address required")
            has_access = await self.access.check_subscription(subscription_id, body.consumer)
            return {"success": True, "data": {"hasAccess": has_access, "subscriptionId": subscription_id}}

    def _setup_data_routes(self):

        @self.app.post("/api/data/upload")
        async def upload_data(body: UploadRequest):
            """Raw blob upload utility."""
            if body.data is None:
                raise ValidationError("Data is required")
            result = await self.blob_store.upload(body.data, encrypt=body.encrypt,
                                                  encryption_key=body.encryption_key)
            data = {"blobId": result.blob_id}
            if result.encryption_key:
                data["encryptionKey"] = result.encryption_key
            return {"success": True, "data": data}

        @self.app.get("/api/data/{feed_id}")
        async def get_feed_data(
            feed_id: str,
            request: Request,
            subscription_id: Optional[str] = Query(None, alias="subscriptionId"),
            consumer: Optional[str] = None,
            preview: Optional[str] = None,
        ):
            """Sampled preview, or the authorized full payload."""
            if preview == "true":
                result = await self.data_service.get_preview(feed_id)
                feed = result["feed"]
                return {
                    "success": True,
                    "preview": True,
                    "data": result["data"],
                    "feed": {
                        "name": feed.name,
                        "category": feed.category,
                        "description": feed.description,
                        "location": feed.location,
                    },
                }

            context = await resolve_auth_context(request, self.validator,
                                                 subscription_id=subscription_id, consumer=consumer)
            result = await self.data_service.get_data(feed_id, context,
                                                      request.headers.get(DECRYPTION_KEY_HEADER))
            return {
                "success": True,
                "data": result.payload,
                "feed": {
                    "id": result.feed.id,
                    "name": result.feed.name,
                    "category": result.feed.category,
                    "lastUpdated": result.feed.last_updated,
                },
            }

        @self.app.get("/api/data/{feed_id}/history")
        async def get_feed_history(
            feed_id: str,
            request: Request,
            subscription_id: Optional[str] = Query(None, alias="subscriptionId"),
            consumer: Optional[str] = None,
            limit: Optional[int] = None,
            start_date: Optional[str] = Query(None, alias="startDate"),
            end_date: Optional[str] = Query(None, alias="endDate"),
        ):
            """Past payloads, newest first."""
            start = _parse_date(start_date, "startDate")
            end = _parse_date(end_date, "endDate")
            context = await resolve_auth_context(request, self.validator,
                                                 subscription_id=subscription_id, consumer=consumer)
            records = await self.data_service.get_history(
                feed_id, context, limit=limit, start=start, end=end,
                decryption_key=request.headers.get(DECRYPTION_KEY_HEADER),
            )
            return _listing(records)

    def _setup_iot_routes(self):

        def ingestion_response(result) -> JSONResponse:
            content = {
                "success": True,
                "message": "Data updated successfully",
                "data": {
                    "feedId": result.feed_id,
                    "blobId": result.blob_id,
                    "ledgerSynced": result.ledger_synced,
                },
                "timestamp": _now_ms(),
            }
            status_code = 200
            if result.warning:
                content["warning"] = result.warning
                status_code = 202
            return JSONResponse(status_code=status_code, content=content)

        @self.app.post("/api/iot/update")
        async def iot_update(body: IoTUpdateRequest, request: Request):
            """Legacy device ingestion endpoint."""
            if not body.feed_id or body.data is None:
                raise ValidationError("feedId and data are required")
            context = await resolve_auth_context(request, self.validator, provider=body.provider)
            result = await self.publisher.ingest(body.feed_id, body.device_id, body.data, context)
            return ingestion_response(result)

        @self.app.post("/api/iot/feeds/{feed_id}/update")
        async def iot_feed_update(feed_id: str, body: IoTFeedUpdateRequest, request: Request):
            """Feed-scoped device ingestion, authenticated by a provider API key."""
            if body.data is None:
                raise ValidationError("data is required")
            context = await resolve_auth_context(request, self.validator)
            if context.credential is None:
                raise AuthenticationError("Provider API key required")
            if context.credential.type != CredentialType.PROVIDER:
                raise AuthorizationError("Provider API key required")
            result = await self.publisher.ingest(feed_id, body.device_id, body.data, context)
            return ingestion_response(result)

        @self.app.get("/api/iot/status")
        async def iot_status():
            return {
                "success": True,
                "status": "online",
                "endpoint": "/api/iot/update",
                "timestamp": _now_ms(),
            }

    def _setup_api_key_routes(self):

        @self.app.post("/api/api-keys/provider")
        async def create_provider_key(body: ProviderKeyRequest):
            """Issue a provider key for a feed the address owns."""
            if not body.feed_id or not body.provider_address:
                raise ValidationError("feedId and providerAddress are required")
            feed = await self.data_service.get_feed(body.feed_id)
            if feed.provider != body.provider_address:
                raise AuthorizationError("Unauthorized: Not the feed provider")

            issued = await self.validator.issue(
                CredentialType.PROVIDER,
                feed_id=body.feed_id,
                provider_address=body.provider_address,
                name=body.name,
                description=body.description,
                expires_at=body.expires_at,
                rate_limit=body.rate_limit,
            )
            return {"success": True, "data": issued.to_dict()}

        @self.app.post("/api/api-keys/subscriber")
        async def create_subscriber_key(body: SubscriberKeyRequest):
            """Issue a subscriber key for a subscription the address owns."""
            if not body.subscription_id or not body.consumer_address:
                raise ValidationError("subscriptionId and consumerAddress are required")
            subscription = await self.ledger.get_subscription(body.subscription_id)
            if subscription is None:
                raise NotFoundError("Subscription not found", {"subscriptionId": body.subscription_id})
            if subscription.consumer != body.consumer_address:
                raise AuthorizationError("Subscription does not belong to this consumer")

            issued = await self.validator.issue(
                CredentialType.SUBSCRIBER,
                subscription_id=body.subscription_id,
                consumer_address=body.consumer_address,
                name=body.name,
                description=body.description,
                expires_at=body.expires_at,
            )
            return {"success": True, "data": issued.to_dict()}

        @self.app.get("/api/api-keys/provider/{address}")
        async def list_provider_keys(address: str):
            keys = await self.validator.list_for_provider(address)
            return _listing([key.to_public_dict() for key in keys])

        @self.app.get("/api/api-keys/subscriber/{address}")
        async def list_subscriber_keys(address: str):
            keys = await self.validator.list_for_subscriber(address)
            return _listing([key.to_public_dict() for key in keys])

        @self.app.get("/api/api-keys/feed/{feed_id}")
        async def list_feed_keys(feed_id: str):
            keys = await self.validator.list_for_feed(feed_id)
            return _listing([key.to_public_dict() for key in keys])

        @self.app.get("/api/api-keys/{key_id}")
        async def get_key(key_id: str):
            return {"success": True, "data": await self.validator.details(key_id)}

        @self.app.delete("/api/api-keys/{key_id}")
        async def revoke_key(key_id: str):
            await self.validator.revoke(key_id)
            return {"success": True, "message": "API key revoked successfully"}

    def _setup_subscriber_routes(self):

        @self.app.get("/api/subscriber/{address}/subscriptions")
        async def subscriber_subscriptions(address: str):
            """Ledger subscriptions of an address, enriched with their API keys."""
            subscriptions = await self.ledger.list_subscriptions_by_consumer(address)
            keys_by_subscription = {}
            try:
                keys = await self.validator.list_for_subscriber(address)
                keys_by_subscription = {k.subscription_id: k for k in keys if k.subscription_id}
            except Exception as e:
                self.logger.warning("Skipping API key enrichment", address=address, error=str(e))

            enriched = []
            for subscription in subscriptions:
                item = subscription.to_dict()
                key = keys_by_subscription.get(subscription.id)
                item["apiKeyId"] = key.id if key else None
                item["apiKeyPrefix"] = key.key_prefix if key else None
                enriched.append(item)
            return _listing(enriched)

        @self.app.get("/api/subscriber/{address}/api-keys")
        async def subscriber_keys(address: str):
            keys = await self.validator.list_for_subscriber(address)
            return _listing([key.to_public_dict() for key in keys])

        @self.app.get("/api/subscriber/{address}/usage")
        async def subscriber_usage(
            address: str,
            start_date: Optional[str] = Query(None, alias="startDate"),
            end_date: Optional[str] = Query(None, alias="endDate"),
            feed_id: Optional[str] = Query(None, alias="feedId"),
        ):
            """Usage totals with per-feed and per-day aggregates."""
            start = _parse_date(start_date, "startDate")
            end = _parse_date(end_date, "endDate")
            try:
                keys = await self.validator.list_for_subscriber(address)
            except Exception as e:
                self.logger.warning("Usage stats unavailable", address=address, error=str(e))
                return {"success": True, "data": empty_stats()}
            if not keys:
                return {"success": True, "data": empty_stats()}

            records = await self.store.query_usage([k.id for k in keys], feed_id=feed_id, start=start, end=end)
            return {"success": True, "data": aggregate_usage(records)}

        @self.app.get("/api/subscriber/{address}/feeds")
        async def subscriber_feeds(address: str):
            """Feeds reachable through the address's API keys."""
            keys = await self.validator.list_for_subscriber(address)
            feed_ids = []
            for key in keys:
                if not key.subscription_id:
                    continue
                subscription = await self.ledger.get_subscription(key.subscription_id)
                if subscription and subscription.feed_id and subscription.feed_id not in feed_ids:
                    feed_ids.append(subscription.feed_id)

            feeds = []
            for feed_id in feed_ids:
                feed = await self.ledger.get_feed(feed_id)
                if feed is not None:
                    feeds.append(feed.to_dict())
            return _listing(feeds)

    def _setup_live_routes(self):

        @self.app.websocket("/ws")
        async def live_updates(websocket: WebSocket):
            """Live update channel."""
            await websocket.accept()
            try:
                connection = await self.broadcaster.add_connection(websocket)
            except ConnectionLimitExceeded as e:
                self.logger.warning("Rejecting live connection", error=str(e))
                await websocket.close(code=WS_TRY_AGAIN_LATER)
                return

            try:
                while True:
                    message_text = await websocket.receive_text()
                    reply = await self.ws_handler.handle_message(connection.connection_id, message_text)
                    if reply:
                        await self.broadcaster.send(connection, reply)
            except WebSocketDisconnect:
                pass
            except Exception as e:
                self.logger.error("Live connection error", connection_id=connection.connection_id, error=str(e))
            finally:
                await self.broadcaster.remove_connection(connection.connection_id)

    async def _check_dependencies(self) -> Dict[str, Any]:
        """Check marketplace dependencies."""
        dependencies = {
            "ledger": "ok" if await self.ledger.ping() else "error",
            "cache": self.config.cache_backend,
            "live_connections": len(self.broadcaster),
        }
        if self.store is None:
            dependencies["database"] = "not_started"
        else:
            try:
                dependencies["database"] = "ok" if await self.store.ping() else "error"
            except Exception:
                dependencies["database"] = "error"
        return dependencies


def create_app(config: Optional[MarketplaceConfig] = None):
    """Create marketplace gateway application."""
    service = MarketplaceService(config)
    return service.app


def run():
    """Console entry point."""
    MarketplaceService().run()


if __name__ == "__main__":
    run()
