"""Test fixtures for the fulfillment service tests."""

import pytest

from fulfillment_service.checkout import CheckoutCoordinator
from fulfillment_service.schemas import LineItem
from fulfillment_service.sql_storage import SqlAlchemyBackend
from fulfillment_service.storage import InMemoryBackend


@pytest.fixture
def backend():
    """In-memory backend seeded with one product holding three keys."""
    backend = InMemoryBackend()
    backend.put("inventory", "sku-1", {"keys": ["K1", "K2", "K3"]})
    return backend


@pytest.fixture
def sql_backend(tmp_path):
    """SQLite-backed backend seeded like ``backend``."""
    backend = SqlAlchemyBackend.from_url(f"sqlite:///{tmp_path / 'fulfillment.db'}")
    backend.put("inventory", "sku-1", {"keys": ["K1", "K2", "K3"]})
    return backend


@pytest.fixture
def coordinator(backend):
    return CheckoutCoordinator(backend, max_attempts=3, retry_backoff=0)


@pytest.fixture
def two_keys():
    """A single line item asking for two keys of sku-1."""
    return [LineItem(product_id="sku-1", quantity=2, description="Space Game")]
