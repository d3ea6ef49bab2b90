"""
Unit tests for the Sui ledger client.
"""

import base64
import json

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from shared.config import get_config
from shared.errors import UpstreamError

from service_marketplace.app.adapters.ledger_client import (
    INVALID_PARAMS,
    TRANSACTION_INTENT,
    LedgerClient,
    SuiSigner,
    blake2b_256,
)

SEED = "11" * 32
RPC_URL = "http://ledger.test"

FEED_FIELDS = {
    "provider": "0x" + "01" * 32,
    "name": "Air quality",
    "category": "environment",
    "description": "PM2.5",
    "location": "Lagos",
    "price_per_query": "10",
    "monthly_subscription_price": "1000",
    "is_premium": False,
    "walrus_blob_id": "blob-a",
    "created_at": "1700000000000",
    "last_updated": "1700000000500",
    "is_active": True,
    "update_frequency": "300",
}


def object_response(fields, object_type="0xpkg::data_marketplace::DataFeed"):
    return {"data": {"content": {"dataType": "moveObject", "type": object_type, "fields": fields}}}


class FakeFullnode:
    """JSON-RPC fullnode behind an httpx mock transport.

    Results are keyed by method; a value may be a list to return one
    entry per call, and an exception entry is raised as a transport error.
    """

    def __init__(self):
        self.results = {}
        self.errors = {}
        self.calls = []

    def methods(self):
        return [call["method"] for call in self.calls]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append(body)
        method = body["method"]

        if method in self.errors:
            code, message = self.errors[method]
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"],
                                             "error": {"code": code, "message": message}})

        result = self.results.get(method)
        if isinstance(result, list):
            result = result.pop(0)
        if isinstance(result, int) and not isinstance(result, bool):
            return httpx.Response(result)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


def make_client(fullnode, metrics, **overrides):
    values = {
        "sui_rpc_url": RPC_URL,
        "sui_private_key": SEED,
        "sui_package_id": "0xpkg",
        "sui_registry_id": "0xregistry",
        "sui_treasury_id": "0xtreasury",
        "upstream_retries": 2,
        "upstream_retry_delay": 0,
    }
    values.update(overrides)
    http = httpx.AsyncClient(transport=httpx.MockTransport(fullnode))
    return LedgerClient(get_config(**values), http_client=http, metrics=metrics)


def executed(digest="0xdigest", created=None, status="success", error=None):
    effects_status = {"status": status}
    if error:
        effects_status["error"] = error
    return {
        "digest": digest,
        "effects": {"status": effects_status},
        "objectChanges": created or [],
    }


class TestSuiSigner:
    """Test cases for SuiSigner."""

    def test_address_derivation(self):
        signer = SuiSigner.from_hex(SEED)

        expected = "0x" + blake2b_256(bytes([0x00]) + signer.public_key).hex()
        assert signer.address == expected
        assert len(signer.address) == 66

    def test_accepts_prefixed_and_full_secret(self):
        base = SuiSigner.from_hex(SEED)

        assert SuiSigner.from_hex("0x" + SEED).address == base.address
        assert SuiSigner.from_hex(SEED + base.public_key.hex()).address == base.address

    def test_rejects_wrong_length(self):
        with pytest.raises(ValueError):
            SuiSigner.from_hex("11" * 16)

    def test_signature_layout(self):
        signer = SuiSigner.from_hex(SEED)
        tx_bytes = b"transaction-bytes"

        serialized = base64.b64decode(signer.sign_transaction(base64.b64encode(tx_bytes).decode()))

        assert serialized[0] == 0x00
        assert serialized[65:] == signer.public_key
        public_key = Ed25519PublicKey.from_public_bytes(signer.public_key)
        public_key.verify(serialized[1:65], blake2b_256(TRANSACTION_INTENT + tx_bytes))


class TestLedgerReads:
    """Test cases for LedgerClient reads."""

    @pytest.fixture
    def fullnode(self):
        return FakeFullnode()

    @pytest.fixture
    def client(self, fullnode, metrics):
        return make_client(fullnode, metrics)

    @pytest.mark.asyncio
    async def test_get_feed_parses_u64_strings(self, client, fullnode):
        fullnode.results["sui_getObject"] = object_response(FEED_FIELDS)

        feed = await client.get_feed("0xfeed1")

        assert feed.id == "0xfeed1"
        assert feed.price_per_query == 10
        assert feed.monthly_subscription_price == 1000
        assert feed.update_frequency == 300
        assert feed.walrus_blob_id == "blob-a"
        assert fullnode.calls[0]["params"][0] == "0xfeed1"

    @pytest.mark.asyncio
    async def test_get_feed_invalid_id_is_absent(self, client, fullnode):
        fullnode.errors["sui_getObject"] = (INVALID_PARAMS, "invalid object id")

        assert await client.get_feed("not-an-id") is None
        assert len(fullnode.calls) == 1

    @pytest.mark.asyncio
    async def test_get_feed_deleted_object(self, client, fullnode):
        fullnode.results["sui_getObject"] = {"error": {"code": "notExists"}}

        assert await client.get_feed("0xgone") is None

    @pytest.mark.asyncio
    async def test_object_of_other_type_is_not_a_feed(self, client, fullnode):
        fullnode.results["sui_getObject"] = object_response({"balance": "5"}, "0x2::coin::Coin")

        assert await client.get_feed("0xcoin") is None

    @pytest.mark.asyncio
    async def test_get_subscription(self, client, fullnode):
        fullnode.results["sui_getObject"] = object_response({
            "consumer": "0x" + "02" * 32, "feed_id": "0xfeed1", "tier": 1,
            "start_epoch": "90", "expiry_epoch": "100", "payment_amount": "1000",
            "queries_used": "0", "is_active": True,
        }, "0xpkg::subscription::Subscription")

        subscription = await client.get_subscription("0xsub1")

        assert subscription.expiry_epoch == 100
        assert subscription.is_valid_at(100)
        assert not subscription.is_valid_at(101)

    @pytest.mark.asyncio
    async def test_get_current_epoch(self, client, fullnode):
        fullnode.results["suix_getLatestSuiSystemState"] = {"epoch": "412"}

        assert await client.get_current_epoch() == 412

    @pytest.mark.asyncio
    async def test_reads_retry_transient_failures(self, client, fullnode):
        fullnode.results["suix_getLatestSuiSystemState"] = [503, 502, {"epoch": "7"}]

        assert await client.get_current_epoch() == 7
        assert len(fullnode.calls) == 3

    @pytest.mark.asyncio
    async def test_reads_give_up(self, client, fullnode):
        fullnode.results["suix_getLatestSuiSystemState"] = [503, 503, 503]

        with pytest.raises(UpstreamError):
            await client.get_current_epoch()

    @pytest.mark.asyncio
    async def test_list_feeds_dedups_events(self, client, fullnode):
        fullnode.results["suix_queryEvents"] = {"data": [
            {"parsedJson": {"feed_id": "0xfeed1"}},
            {"parsedJson": {"feed_id": "0xfeed1"}},
            {"parsedJson": {"feed_id": "0xfeed2"}},
            {"parsedJson": {}},
        ]}
        fullnode.results["sui_getObject"] = [object_response(FEED_FIELDS), object_response(FEED_FIELDS)]

        feeds = await client.list_feeds()

        assert [f.id for f in feeds] == ["0xfeed1", "0xfeed2"]
        event_filter = fullnode.calls[0]["params"][0]
        assert event_filter == {"MoveEventType": "0xpkg::data_marketplace::FeedRegistered"}

    @pytest.mark.asyncio
    async def test_list_subscriptions_follows_cursor(self, client, fullnode):
        item = {"data": {"objectId": "0xsubA", "content": {"fields": {"consumer": "0xc", "feed_id": "0xf"}}}}
        fullnode.results["suix_getOwnedObjects"] = [
            {"data": [item], "hasNextPage": True, "nextCursor": "c1"},
            {"data": [dict(item, data=dict(item["data"], objectId="0xsubB"))], "hasNextPage": False},
        ]

        subscriptions = await client.list_subscriptions_by_consumer("0xc")

        assert [s.id for s in subscriptions] == ["0xsubA", "0xsubB"]
        assert fullnode.calls[1]["params"][2] == "c1"

    @pytest.mark.asyncio
    async def test_ping(self, client, fullnode):
        fullnode.results["sui_getChainIdentifier"] = "4c78adac"
        assert await client.ping() is True

        fullnode.results["sui_getChainIdentifier"] = 500
        assert await client.ping() is False


class TestLedgerMutations:
    """Test cases for LedgerClient transactions."""

    @pytest.fixture
    def fullnode(self):
        fullnode = FakeFullnode()
        fullnode.results["unsafe_moveCall"] = {"txBytes": base64.b64encode(b"tx").decode()}
        return fullnode

    @pytest.fixture
    def client(self, fullnode, metrics):
        return make_client(fullnode, metrics)

    @pytest.mark.asyncio
    async def test_register_feed(self, client, fullnode):
        fullnode.results["sui_executeTransactionBlock"] = executed(created=[
            {"type": "created", "objectType": "0x2::dynamic_field::Field", "objectId": "0xfield"},
            {"type": "created", "objectType": "0xpkg::data_marketplace::DataFeed", "objectId": "0xnewfeed"},
        ])
        metadata = {"name": "Air", "category": "env", "description": "d", "location": "Lagos",
                    "price_per_query": 10, "monthly_subscription_price": 1000, "is_premium": True}

        feed_id = await client.register_feed(client.get_address(), metadata, "blob-a")

        assert feed_id == "0xnewfeed"
        assert fullnode.methods() == ["unsafe_moveCall", "sui_executeTransactionBlock"]
        builder_params = fullnode.calls[0]["params"]
        assert builder_params[0] == client.get_address()
        assert builder_params[1:4] == ["0xpkg", "data_marketplace", "register_data_feed"]
        assert builder_params[5][0] == "0xregistry"
        assert builder_params[5][8] == "blob-a"
        signatures = fullnode.calls[1]["params"][1]
        assert len(base64.b64decode(signatures[0])) == 97

    @pytest.mark.asyncio
    async def test_aborted_transaction_raises(self, client, fullnode):
        fullnode.results["sui_executeTransactionBlock"] = executed(status="failure", error="MoveAbort 3")

        with pytest.raises(UpstreamError) as exc_info:
            await client.update_feed_data("0xfeed1", "blob-b")

        assert exc_info.value.details["digest"] == "0xdigest"

    @pytest.mark.asyncio
    async def test_mutations_are_never_retried(self, client, fullnode):
        fullnode.results["sui_executeTransactionBlock"] = [503, executed()]

        with pytest.raises(UpstreamError):
            await client.update_feed_data("0xfeed1", "blob-b")

        assert fullnode.methods() == ["unsafe_moveCall", "sui_executeTransactionBlock"]

    @pytest.mark.asyncio
    async def test_mutation_without_signer_makes_no_request(self, fullnode, metrics):
        client = make_client(fullnode, metrics, sui_private_key="")

        with pytest.raises(UpstreamError):
            await client.update_feed_data("0xfeed1", "blob-b")
        with pytest.raises(UpstreamError):
            client.get_address()

        assert fullnode.calls == []

    @pytest.mark.asyncio
    async def test_register_without_registry_makes_no_request(self, fullnode, metrics):
        client = make_client(fullnode, metrics, sui_registry_id="")

        with pytest.raises(UpstreamError):
            await client.register_feed(client.get_address(), {"name": "x"}, "blob-a")

        assert fullnode.calls == []

    @pytest.mark.asyncio
    async def test_subscribe_splits_payment_then_subscribes(self, client, fullnode):
        fullnode.results["suix_getCoins"] = {"data": [
            {"coinObjectId": "0xsmall", "balance": "500"},
            {"coinObjectId": "0xbig", "balance": "50000"},
        ]}
        fullnode.results["unsafe_splitCoin"] = {"txBytes": base64.b64encode(b"split").decode()}
        fullnode.results["sui_executeTransactionBlock"] = [
            executed(created=[{"type": "created", "objectType": "0x2::coin::Coin<0x2::sui::SUI>",
                               "objectId": "0xpayment"}]),
            executed(created=[{"type": "created", "objectType": "0xpkg::subscription::Subscription",
                               "objectId": "0xnewsub"}]),
        ]

        subscription_id = await client.subscribe("0xconsumer", "0xfeed1", 1, 1000)

        assert subscription_id == "0xnewsub"
        split_params = fullnode.calls[1]["params"]
        assert split_params[1] == "0xbig"
        assert split_params[2] == ["1000"]
        move_params = fullnode.calls[3]["params"]
        assert move_params[5] == ["0xfeed1", "0xregistry", "0xtreasury", "0xpayment", 1]

    @pytest.mark.asyncio
    async def test_subscribe_without_large_enough_coin(self, client, fullnode):
        fullnode.results["suix_getCoins"] = {"data": [{"coinObjectId": "0xsmall", "balance": "500"}]}

        with pytest.raises(UpstreamError):
            await client.subscribe("0xconsumer", "0xfeed1", 1, 1000)

        assert fullnode.methods() == ["suix_getCoins"]
