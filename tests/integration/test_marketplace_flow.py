"""
End-to-end flows through the marketplace gateway.

The ledger and blob store are in-process fakes; everything between the
HTTP surface and those adapters is the real service.
"""

import pytest
from fastapi.testclient import TestClient

from shared.background import BackgroundTaskSet
from shared.config import get_config
from shared.metrics import MetricsCollector
from shared.test_helpers import CONSUMER_ADDRESS, PROVIDER_ADDRESS, FakeBlobStore, FakeLedgerClient, test_environment

from service_marketplace.app.main import MarketplaceService
from service_marketplace.app.persistence import MemoryStore


class TestMarketplaceFlow:
    """Provider registers, consumer subscribes, reads and follows updates."""

    @pytest.fixture
    def ledger(self):
        return FakeLedgerClient(epoch=10)

    @pytest.fixture
    def blob_store(self):
        return FakeBlobStore()

    @pytest.fixture
    def client(self, ledger, blob_store):
        service = MarketplaceService(
            get_config(**test_environment.get_mock_config()),
            ledger=ledger,
            blob_store=blob_store,
            store=MemoryStore(),
            metrics=MetricsCollector("marketplace-flow"),
            background=BackgroundTaskSet("flow"),
        )
        with TestClient(service.app) as test_client:
            yield test_client

    def _register(self, client, **overrides):
        body = {
            "provider": PROVIDER_ADDRESS,
            "name": "Cold chain",
            "category": "logistics",
            "description": "Reefer container temperatures",
            "location": "Mombasa",
            "pricePerQuery": 2,
            "monthlySubscriptionPrice": 300,
            "initialData": [{"container": "C1", "t": -18.2}, {"container": "C2", "t": -17.9}],
        }
        body.update(overrides)
        response = client.post("/api/feeds", json=body)
        assert response.status_code == 200
        return response.json()["data"]

    def _subscribe(self, client, feed_id):
        response = client.post(f"/api/subscribe/{feed_id}",
                               json={"consumer": CONSUMER_ADDRESS, "tier": 1, "paymentAmount": 300})
        assert response.status_code == 200
        return response.json()["data"]["subscriptionId"]

    def test_register_subscribe_read_update(self, client, ledger):
        feed_id = self._register(client)["feedId"]

        preview = client.get(f"/api/data/{feed_id}", params={"preview": "true"}).json()
        assert preview["data"] == [{"container": "C1", "t": -18.2}, {"container": "C2", "t": -17.9}]

        subscription_id = self._subscribe(client, feed_id)
        key = client.post("/api/api-keys/subscriber", json={
            "subscriptionId": subscription_id, "consumerAddress": CONSUMER_ADDRESS,
        }).json()["data"]["key"]

        first = client.get(f"/api/data/{feed_id}", headers={"X-API-Key": key})
        assert first.status_code == 200
        assert len(first.json()["data"]) == 2

        provider_key = client.post("/api/api-keys/provider", json={
            "feedId": feed_id, "providerAddress": PROVIDER_ADDRESS,
        }).json()["data"]["key"]
        update = client.put(f"/api/feeds/{feed_id}/data", json={"data": [{"container": "C1", "t": -19.0}]},
                            headers={"X-API-Key": provider_key})
        assert update.status_code == 200

        second = client.get(f"/api/data/{feed_id}", headers={"X-API-Key": key})
        assert second.json()["data"] == [{"container": "C1", "t": -19.0}]

        history = client.get(f"/api/data/{feed_id}/history", headers={"X-API-Key": key}).json()
        assert history["count"] == 2
        assert history["data"][0]["data"] == [{"container": "C1", "t": -19.0}]

        ledger.epoch = 10 + 31
        expired = client.get(f"/api/data/{feed_id}", headers={"X-API-Key": key})
        assert expired.status_code == 403

    def test_live_update_reaches_subscriber(self, client):
        feed_id = self._register(client)["feedId"]
        subscription_id = self._subscribe(client, feed_id)

        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"type": "subscribe", "feedId": feed_id,
                                 "subscriptionId": subscription_id, "consumer": CONSUMER_ADDRESS})
            assert websocket.receive_json()["type"] == "subscribed"
            assert websocket.receive_json()["type"] == "data"

            response = client.post("/api/iot/update", json={
                "feedId": feed_id, "deviceId": "reefer-7", "data": {"t": -16.5},
                "provider": PROVIDER_ADDRESS,
            })
            assert response.json()["data"]["ledgerSynced"] is True

            pushed = websocket.receive_json()

        assert pushed["type"] == "data"
        assert pushed["feedId"] == feed_id
        assert pushed["data"]["t"] == -16.5
        assert pushed["data"]["deviceId"] == "reefer-7"

    def test_premium_feed_needs_decryption_key(self, client):
        registered = self._register(client, isPremium=True)
        feed_id = registered["feedId"]
        subscription_id = self._subscribe(client, feed_id)
        params = {"subscriptionId": subscription_id, "consumer": CONSUMER_ADDRESS}

        sealed = client.get(f"/api/data/{feed_id}", params=params).json()["data"]
        opened = client.get(f"/api/data/{feed_id}", params=params,
                            headers={"X-Decryption-Key": registered["encryptionKey"]}).json()["data"]
        wrong = client.get(f"/api/data/{feed_id}", params=params, headers={"X-Decryption-Key": "nope"})

        assert sealed["encrypted"] is True
        assert opened[0]["container"] == "C1"
        assert wrong.status_code == 400

    def test_usage_dashboard(self, client):
        feed_id = self._register(client)["feedId"]
        subscription_id = self._subscribe(client, feed_id)
        key = client.post("/api/api-keys/subscriber", json={
            "subscriptionId": subscription_id, "consumerAddress": CONSUMER_ADDRESS,
        }).json()["data"]["key"]

        for _ in range(3):
            client.get(f"/api/data/{feed_id}", headers={"X-API-Key": key})

        stats = client.get(f"/api/subscriber/{CONSUMER_ADDRESS}/usage").json()["data"]
        feeds = client.get(f"/api/subscriber/{CONSUMER_ADDRESS}/feeds").json()["data"]

        assert stats["totalRequests"] == 3
        assert [f["id"] for f in feeds] == [feed_id]
