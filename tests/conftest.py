"""Shared fixtures: an in-memory store, a coordinator and a Flask test client."""

import pytest
from cryptography.fernet import Fernet

from app import create_app
from codec import SnapshotCodec
from config import StoreSettings
from coordinator import MarketCoordinator
from database import SnapshotStorage
from security import build_cipher
from store import MarketStore

TEST_BCRYPT_ROUNDS = 4
PASSWORD = "noodles42"
PNG_DATA_URL = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAE="
JPEG_DATA_URL = "data:image/jpeg;base64,/9j/4AAQSkZJRgABAQ=="


@pytest.fixture
def settings():
    return StoreSettings(database_url="sqlite://", sensitive_key_file=None, bcrypt_rounds=TEST_BCRYPT_ROUNDS)


@pytest.fixture
def cipher():
    return build_cipher(Fernet.generate_key())


@pytest.fixture
def codec(cipher):
    return SnapshotCodec(cipher, bcrypt_rounds=TEST_BCRYPT_ROUNDS)


@pytest.fixture
def storage(settings):
    slot_storage = SnapshotStorage(settings.database_url)
    yield slot_storage
    slot_storage.dispose()


@pytest.fixture
def store(storage, codec, settings):
    market_store = MarketStore(storage, codec, settings=settings)
    market_store.load()
    return market_store


@pytest.fixture
def coordinator(store):
    return MarketCoordinator(store)


@pytest.fixture
def seller(coordinator):
    return coordinator.register_user("somchai", PASSWORD, display_name="Somchai Kitchen")


@pytest.fixture
def buyer(coordinator):
    return coordinator.register_user("pim", PASSWORD, display_name="Pim")


@pytest.fixture
def product(coordinator, seller):
    return coordinator.list_product(
        seller.uid,
        name="Pad Thai",
        price=60.0,
        stock=5,
        image=PNG_DATA_URL,
        description="Rice noodles, tamarind, peanuts.",
    )


@pytest.fixture
def app(store):
    flask_app = create_app(store=store)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


def complete_order(coordinator, order_id, seller_uid):
    """Walk an order through every forward status."""
    for status in ("ACCEPTED", "PREPARING", "DELIVERING", "COMPLETED"):
        coordinator.advance_order(order_id, status, actor_uid=seller_uid)
