"""
Shared fixtures for marketplace gateway tests.
"""

import pytest
from fastapi.testclient import TestClient

from shared.background import BackgroundTaskSet
from shared.config import get_config
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeBlobStore, FakeLedgerClient, test_data_factory, test_environment

from service_marketplace.app.main import MarketplaceService
from service_marketplace.app.persistence import MemoryStore


@pytest.fixture
def config():
    """Gateway settings for in-process tests."""
    return get_config(**test_environment.get_mock_config())


@pytest.fixture
def metrics():
    return MetricsCollector("marketplace-test")


@pytest.fixture
def ledger():
    return FakeLedgerClient(epoch=95)


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def background():
    return BackgroundTaskSet("test")


@pytest.fixture
def readings():
    return test_data_factory.create_readings(5)


@pytest.fixture
def feed(ledger, blob_store, readings):
    """Active feed F1 whose current blob holds five readings."""
    feed = ledger.add_feed(test_data_factory.create_feed("0xfeed1"))
    blob_store.put(feed.walrus_blob_id, readings)
    return feed


@pytest.fixture
def other_feed(ledger, blob_store):
    """Active feed F2 with a mapping payload."""
    feed = ledger.add_feed(test_data_factory.create_feed("0xfeed2", name="Soil moisture"))
    blob_store.put(feed.walrus_blob_id, {"moisture": 31})
    return feed


@pytest.fixture
def subscription(ledger, feed):
    """Subscription S on F1, active until epoch 100."""
    return ledger.add_subscription(test_data_factory.create_subscription("0xsub1", feed.id))


@pytest.fixture
def service(config, ledger, blob_store, store, metrics, background):
    return MarketplaceService(config, ledger=ledger, blob_store=blob_store, store=store,
                              metrics=metrics, background=background)


@pytest.fixture
def client(service):
    """Test client with startup and shutdown hooks run."""
    with TestClient(service.app) as test_client:
        yield test_client
