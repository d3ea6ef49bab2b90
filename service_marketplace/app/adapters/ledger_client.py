"""
Sui ledger client for the marketplace gateway.

Reads go through JSON-RPC with a fixed-delay retry and a circuit breaker.
Mutations are built server-side with the ``unsafe_*`` builders, signed
locally with the configured Ed25519 key and executed exactly once: a
failed or timed-out mutation is reported as such, never retried.
"""

import base64
import hashlib
import itertools
from typing import Dict, Any, List, Optional, Callable, Awaitable

import httpx
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from shared.config import MarketplaceConfig
from shared.logging import get_logger
from shared.errors import UpstreamError
from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.retry import RetryConfig, RetryError, retry_call
from shared.metrics import MetricsCollector

from ..models import Feed, Subscription

ED25519_FLAG = 0x00
TRANSACTION_INTENT = bytes([0, 0, 0])
INVALID_PARAMS = -32602


class LedgerRPCError(Exception):
    """JSON-RPC error object returned by the fullnode."""

    def __init__(self, code: int, message: str):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code


def blake2b_256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


class SuiSigner:
    """Ed25519 keypair producing Sui serialized signatures."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key
        self.public_key = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        self.address = "0x" + blake2b_256(bytes([ED25519_FLAG]) + self.public_key).hex()

    @classmethod
    def from_hex(cls, secret: str) -> "SuiSigner":
        """Load from a hex seed; a 64 byte secret key (seed + public key) is also accepted."""
        raw = bytes.fromhex(secret[2:] if secret.startswith("0x") else secret)
        if len(raw) not in (32, 64):
            raise ValueError("Ed25519 secret must be 32 or 64 bytes")
        return cls(Ed25519PrivateKey.from_private_bytes(raw[:32]))

    def sign_transaction(self, tx_bytes_b64: str) -> str:
        """Sign transaction bytes under the transaction intent."""
        tx_bytes = base64.b64decode(tx_bytes_b64)
        digest = blake2b_256(TRANSACTION_INTENT + tx_bytes)
        signature = self._private_key.sign(digest)
        return base64.b64encode(bytes([ED25519_FLAG]) + signature + self.public_key).decode()


class LedgerClient:
    """Client for the Sui fullnode JSON-RPC API."""

    RETRYABLE = (httpx.TransportError, httpx.HTTPStatusError, LedgerRPCError)

    def __init__(self, config: MarketplaceConfig,
                 http_client: Optional[httpx.AsyncClient] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.config = config
        self.rpc_url = config.ledger_rpc_url()
        self.package_id = config.sui_package_id
        self.metrics = metrics or MetricsCollector(config.service_name)
        self.logger = get_logger("marketplace.ledger_client")
        self.http = http_client or httpx.AsyncClient(timeout=config.upstream_timeout)
        self.retry_config = RetryConfig.fixed(config.upstream_retries, config.upstream_retry_delay)
        self.circuit_breaker = CircuitBreaker(failure_threshold=5, recovery_timeout=30.0, name="ledger")
        self._ids = itertools.count(1)

        self.signer: Optional[SuiSigner] = None
        if config.sui_private_key:
            try:
                self.signer = SuiSigner.from_hex(config.sui_private_key)
            except ValueError as e:
                self.logger.warning("Invalid SUI_PRIVATE_KEY provided", error=str(e))

    async def close(self):
        await self.http.aclose()

    # ------------------------------------------------------------------ transport

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        response = await self.http.post(self.rpc_url, json=payload)
        response.raise_for_status()
        body = response.json()
        if body.get("error"):
            error = body["error"]
            raise LedgerRPCError(error.get("code", 0), error.get("message", "unknown error"))
        return body.get("result")

    async def _read(self, operation: str, func: Callable[..., Awaitable[Any]], *args) -> Any:
        """Run an idempotent read with retry and circuit breaker."""
        try:
            with self.metrics.time_upstream("ledger", operation):
                return await retry_call(self.circuit_breaker.call, func, *args,
                                        exceptions=self.RETRYABLE, config=self.retry_config,
                                        name=f"ledger.{operation}")
        except RetryError as e:
            raise UpstreamError("ledger", str(e.last_exception), {"operation": operation}) from e
        except CircuitBreakerOpenException as e:
            raise UpstreamError("ledger", str(e), {"operation": operation}) from e

    async def _object_content(self, object_id: str) -> Optional[Dict[str, Any]]:
        try:
            result = await self._rpc("sui_getObject", [object_id, {"showContent": True, "showType": True}])
        except LedgerRPCError as e:
            if e.code == INVALID_PARAMS:
                return None
            raise
        if not result or result.get("error") or not result.get("data"):
            return None
        content = result["data"].get("content") or {}
        return content.get("fields")

    # ------------------------------------------------------------------ reads

    async def get_feed(self, feed_id: str) -> Optional[Feed]:
        """Fetch a feed object, or None when it does not exist."""
        fields = await self._read("get_feed", self._object_content, feed_id)
        if not fields or "walrus_blob_id" not in fields:
            return None
        return Feed.from_fields(feed_id, fields)

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        fields = await self._read("get_subscription", self._object_content, subscription_id)
        if not fields or "consumer" not in fields or "feed_id" not in fields:
            return None
        return Subscription.from_fields(subscription_id, fields)

    async def get_current_epoch(self) -> int:
        """The ledger's own clock. Never approximate this from wall-clock time."""
        state = await self._read("get_current_epoch", self._rpc, "suix_getLatestSuiSystemState", [])
        return int(state["epoch"])

    async def list_feeds(self, limit: int = 50) -> List[Feed]:
        """Feeds announced by registration events, newest first."""
        event_type = f"{self.package_id}::data_marketplace::FeedRegistered"
        page = await self._read("list_feeds", self._rpc, "suix_queryEvents",
                                [{"MoveEventType": event_type}, None, limit, True])

        feeds: List[Feed] = []
        seen = set()
        for event in (page or {}).get("data", []):
            feed_id = (event.get("parsedJson") or {}).get("feed_id")
            if not feed_id or feed_id in seen:
                continue
            seen.add(feed_id)
            feed = await self.get_feed(feed_id)
            if feed:
                feeds.append(feed)
        return feeds

    async def list_subscriptions_by_consumer(self, address: str) -> List[Subscription]:
        struct_type = f"{self.package_id}::subscription::Subscription"
        query = {"filter": {"StructType": struct_type}, "options": {"showContent": True}}
        subscriptions: List[Subscription] = []
        cursor = None

        while True:
            page = await self._read("list_subscriptions", self._rpc, "suix_getOwnedObjects",
                                    [address, query, cursor, 50])
            for item in (page or {}).get("data", []):
                data = item.get("data") or {}
                fields = (data.get("content") or {}).get("fields")
                if fields:
                    subscriptions.append(Subscription.from_fields(data["objectId"], fields))
            if not page or not page.get("hasNextPage"):
                break
            cursor = page.get("nextCursor")

        return subscriptions

    # ------------------------------------------------------------------ mutations

    def get_address(self) -> str:
        """Address of the gateway's signing key."""
        return self._require_signer().address

    def _require_signer(self) -> SuiSigner:
        if self.signer is None:
            raise UpstreamError("ledger", "signing key not configured")
        return self.signer

    def _require(self, value: str, name: str) -> str:
        if not value:
            raise UpstreamError("ledger", f"{name} not configured")
        return value

    async def _execute(self, operation: str, builder: str, params: List[Any]) -> Dict[str, Any]:
        """Build, sign and execute one transaction. Single attempt."""
        signer = self._require_signer()
        try:
            built = await self._rpc(builder, [signer.address] + params)
            tx_bytes = built["txBytes"]
            signature = signer.sign_transaction(tx_bytes)
            result = await self._rpc("sui_executeTransactionBlock", [
                tx_bytes,
                [signature],
                {"showEffects": True, "showObjectChanges": True},
                "WaitForLocalExecution",
            ])
        except (httpx.HTTPError, LedgerRPCError, KeyError) as e:
            self.logger.error("Ledger transaction failed", operation=operation, error=str(e))
            raise UpstreamError("ledger", str(e), {"operation": operation}) from e

        status = ((result or {}).get("effects") or {}).get("status") or {}
        if status.get("status") != "success":
            reason = status.get("error", "transaction not successful")
            self.logger.error("Ledger transaction aborted", operation=operation, error=reason,
                              digest=(result or {}).get("digest"))
            raise UpstreamError("ledger", reason, {"operation": operation, "digest": (result or {}).get("digest")})

        self.logger.info("Ledger transaction executed", operation=operation, digest=result.get("digest"))
        return result

    async def _move_call(self, operation: str, module: str, function: str, arguments: List[Any]) -> Dict[str, Any]:
        package_id = self._require(self.package_id, "SUI_PACKAGE_ID")
        return await self._execute(operation, "unsafe_moveCall", [
            package_id, module, function, [], arguments, None, str(self.config.sui_gas_budget),
        ])

    @staticmethod
    def _created_object(result: Dict[str, Any], type_marker: Optional[str] = None) -> Optional[str]:
        created = [c for c in result.get("objectChanges") or [] if c.get("type") == "created"]
        if type_marker:
            created = [c for c in created if type_marker in c.get("objectType", "")]
        return created[0].get("objectId") if created else None

    async def register_feed(self, provider: str, metadata: Dict[str, Any], blob_id: str) -> str:
        """Register a feed and return its object id."""
        self._require_signer()
        registry_id = self._require(self.config.sui_registry_id, "SUI_REGISTRY_ID")
        result = await self._move_call("register_feed", "data_marketplace", "register_data_feed", [
            registry_id,
            metadata["name"],
            metadata["category"],
            metadata["description"],
            metadata["location"],
            str(metadata.get("price_per_query", 0)),
            str(metadata.get("monthly_subscription_price", 0)),
            bool(metadata.get("is_premium", False)),
            blob_id,
            str(metadata.get("update_frequency", 300)),
        ])
        feed_id = self._created_object(result, "DataFeed") or self._created_object(result)
        if not feed_id:
            raise UpstreamError("ledger", "no feed object created", {"digest": result.get("digest")})
        self.logger.info("Feed registered", feed_id=feed_id, provider=provider)
        return feed_id

    async def update_feed_data(self, feed_id: str, blob_id: str) -> bool:
        """Move a feed's blob pointer."""
        await self._move_call("update_feed_data", "data_marketplace", "update_feed_data", [feed_id, blob_id])
        return True

    async def subscribe(self, consumer: str, feed_id: str, tier: int, payment_amount: int) -> str:
        """Create a subscription paid from a freshly split coin.

        The split and the subscribe call are two transactions; a failure of
        the second leaves the split coin with the gateway address.
        """
        signer = self._require_signer()
        registry_id = self._require(self.config.sui_registry_id, "SUI_REGISTRY_ID")
        treasury_id = self._require(self.config.sui_treasury_id, "SUI_TREASURY_ID")

        coins = await self._read("get_coins", self._rpc, "suix_getCoins",
                                 [signer.address, "0x2::sui::SUI", None, 50])
        candidates = [c for c in (coins or {}).get("data", []) if int(c.get("balance", 0)) > payment_amount]
        if not candidates:
            raise UpstreamError("ledger", "no coin large enough for payment", {"required": payment_amount})
        source = max(candidates, key=lambda c: int(c["balance"]))

        split = await self._execute("split_coin", "unsafe_splitCoin", [
            source["coinObjectId"], [str(payment_amount)], None, str(self.config.sui_gas_budget),
        ])
        payment_coin = self._created_object(split, "::coin::Coin")
        if not payment_coin:
            raise UpstreamError("ledger", "payment coin not created", {"digest": split.get("digest")})

        result = await self._move_call("subscribe", "subscription", "subscribe_to_feed", [
            feed_id, registry_id, treasury_id, payment_coin, tier,
        ])
        subscription_id = self._created_object(result, "Subscription")
        if not subscription_id:
            raise UpstreamError("ledger", "no subscription object created", {"digest": result.get("digest")})
        self.logger.info("Subscription created", subscription_id=subscription_id, feed_id=feed_id,
                         consumer=consumer, tier=tier)
        return subscription_id

    async def submit_rating(self, feed_id: str, stars: int, comment: str) -> str:
        result = await self._move_call("submit_rating", "reputation", "submit_rating", [feed_id, stars, comment])
        rating_id = self._created_object(result)
        if not rating_id:
            raise UpstreamError("ledger", "no rating object created", {"digest": result.get("digest")})
        return rating_id

    async def ping(self) -> bool:
        try:
            await self._rpc("sui_getChainIdentifier", [])
            return True
        except Exception as e:
            self.logger.warning("Ledger ping failed", error=str(e))
            return False
