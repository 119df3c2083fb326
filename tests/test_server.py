"""Tests for the webhook server."""

from http import HTTPStatus
from unittest.mock import Mock

import pytest
from confluent_kafka import KafkaError, KafkaException
from fastapi.testclient import TestClient

from fulfillment_service import __version__
from fulfillment_service.checkout import CheckoutCoordinator
from fulfillment_service.config import Settings
from fulfillment_service.errors import LedgerUnavailable, StoreUnavailable
from fulfillment_service.schemas import OrderPaidEvent
from fulfillment_service.server import app, handle_order_paid, state


def test_version():
    assert __version__ == "0.1.0"


@pytest.fixture
def test_client():
    """Fixture for creating a test client."""
    return TestClient(app)


@pytest.fixture(autouse=True)
def service_state(backend, monkeypatch):
    """Point the server at a fresh in-memory backend and a mock notifier."""
    monkeypatch.setattr(state, "backend", backend)
    monkeypatch.setattr(state, "coordinator", CheckoutCoordinator(backend, max_attempts=2, retry_backoff=0))
    monkeypatch.setattr(state, "notifier", Mock())
    monkeypatch.setattr(state, "producer", None)
    state.notifier.send_keys.return_value = True
    return state


@pytest.fixture
def payment_succeeded():
    """Fixture for a Stripe order.payment_succeeded event."""
    return {
        "id": "evt_123",
        "type": "order.payment_succeeded",
        "data": {
            "object": {
                "id": "or_123",
                "email": "player@example.com",
                "items": [
                    {"type": "sku", "parent": "sku-1", "quantity": 2, "description": "Space Game"},
                    {"type": "tax", "parent": None, "quantity": None, "description": "Taxes"},
                    {"type": "shipping", "parent": "ship_free", "quantity": None, "description": "Free shipping"},
                ],
            }
        },
    }


def test_health_check(test_client):
    """Test the basic health check endpoint."""
    response = test_client.get("/health")
    assert response.status_code == HTTPStatus.OK
    assert response.json() == {"status": "healthy"}


def test_readiness_check_success(test_client, mocker):
    """Test the readiness check when Kafka and storage are available."""
    mock_admin_client = mocker.patch("fulfillment_service.server.AdminClient")
    mock_admin_client.return_value.list_topics.return_value = {"topics": ["orders.paid"]}

    response = test_client.get("/health/ready")
    assert response.status_code == HTTPStatus.OK
    assert response.json() == {"status": "ready", "kafka": "connected", "storage": "connected"}


def test_readiness_check_kafka_down(test_client, mocker):
    mock_admin_client = mocker.patch("fulfillment_service.server.AdminClient")
    mock_admin_client.return_value.list_topics.side_effect = Exception("broker down")

    response = test_client.get("/health/ready")
    assert response.json()["status"] == "not ready"
    assert response.json()["kafka"] == "disconnected"


def test_webhook_allocates_and_sends_keys(test_client, payment_succeeded, service_state):
    """Without a producer the order is checked out in-process after the response."""
    response = test_client.post("/webhook", json=payment_succeeded)

    assert response.status_code == HTTPStatus.OK
    assert response.json() == {"received": True}
    assert service_state.backend.get("inventory", "sku-1").data == {"keys": ["K1"]}
    service_state.notifier.send_keys.assert_called_once()
    email, key_items = service_state.notifier.send_keys.call_args.args
    assert email == "player@example.com"
    assert [(item.description, item.keys) for item in key_items] == [("Space Game", ["K3", "K2"])]


def test_webhook_redelivery_does_not_allocate_twice(test_client, payment_succeeded, service_state):
    test_client.post("/webhook", json=payment_succeeded)
    response = test_client.post("/webhook", json=payment_succeeded)

    assert response.status_code == HTTPStatus.OK
    assert service_state.backend.get("inventory", "sku-1").data == {"keys": ["K1"]}
    assert service_state.notifier.send_keys.call_count == 1


def test_webhook_acknowledges_insufficient_inventory(test_client, payment_succeeded, service_state):
    payment_succeeded["data"]["object"]["items"][0]["quantity"] = 5

    response = test_client.post("/webhook", json=payment_succeeded)

    assert response.status_code == HTTPStatus.OK
    assert service_state.backend.get("orders", "or_123") is None
    service_state.notifier.send_keys.assert_not_called()


def test_webhook_publishes_to_queue(test_client, payment_succeeded, service_state):
    producer = Mock()
    service_state.producer = producer

    response = test_client.post("/webhook", json=payment_succeeded)

    assert response.status_code == HTTPStatus.OK
    producer.publish_order_paid.assert_called_once()
    event = producer.publish_order_paid.call_args.args[0]
    assert event.event_id == "evt_123"
    assert event.order_id == "or_123"
    assert [(item.product_id, item.quantity) for item in event.items] == [("sku-1", 2)]
    assert service_state.backend.get("inventory", "sku-1").data == {"keys": ["K1", "K2", "K3"]}


@pytest.mark.parametrize("error", [BufferError("queue full"), KafkaException(KafkaError(KafkaError._MSG_TIMED_OUT))])
def test_webhook_processes_order_when_queue_fails(test_client, payment_succeeded, service_state, error):
    """An order the queue did not accept is still checked out in-process."""
    service_state.producer = Mock()
    service_state.producer.publish_order_paid.side_effect = error

    response = test_client.post("/webhook", json=payment_succeeded)

    assert response.status_code == HTTPStatus.OK
    assert response.json() == {"received": True}
    assert service_state.backend.get("orders", "or_123").data["processed"] is True
    assert service_state.backend.get("inventory", "sku-1").data == {"keys": ["K1"]}
    service_state.notifier.send_keys.assert_called_once()


@pytest.mark.parametrize(
    "payload",
    [
        {"id": "evt_1", "type": "charge.succeeded", "data": {"object": {}}},
        {"type": "order.payment_succeeded"},
        {"id": "evt_2", "type": "order.payment_succeeded", "data": {"object": {"id": "or_1"}}},
        {"id": "evt_3", "type": "order.payment_succeeded", "data": {"object": {"id": "or_1", "email": "not-an-email"}}},
    ],
)
def test_webhook_ignores_irrelevant_or_invalid_events(test_client, payload, service_state):
    response = test_client.post("/webhook", json=payload)

    assert response.status_code == HTTPStatus.OK
    assert response.json() == {"received": True}
    service_state.notifier.send_keys.assert_not_called()


def test_webhook_ignores_non_json_body(test_client):
    response = test_client.post("/webhook", content=b"not json", headers={"Content-Type": "application/json"})

    assert response.status_code == HTTPStatus.OK
    assert response.json() == {"received": True}


def test_order_status(test_client, service_state):
    assert test_client.get("/orders/o1").json() == {"order_id": "o1", "processed": False}

    service_state.backend.put("orders", "o1", {"processed": True})
    assert test_client.get("/orders/o1").json() == {"order_id": "o1", "processed": True}


def test_order_status_ledger_unavailable(test_client, service_state, mocker):
    mocker.patch.object(service_state.backend, "get", side_effect=StoreUnavailable("down"))

    response = test_client.get("/orders/o1")
    assert response.status_code == HTTPStatus.SERVICE_UNAVAILABLE


def test_inventory_status(test_client):
    response = test_client.get("/inventory/sku-1")
    assert response.status_code == HTTPStatus.OK
    assert response.json() == {"product_id": "sku-1", "remaining": 3}

    assert test_client.get("/inventory/sku-404").status_code == HTTPStatus.NOT_FOUND


def test_handle_order_paid_reports_undelivered_keys(service_state):
    """A failed notification leaves the order processed and is not retried."""
    service_state.notifier.send_keys.return_value = False
    event = OrderPaidEvent(order_id="o9", email="player@example.com", items=[{"product_id": "sku-1", "quantity": 1}])

    handle_order_paid(event)
    handle_order_paid(event)

    assert service_state.coordinator.ledger.is_processed("o9") is True
    assert service_state.backend.get("inventory", "sku-1").data == {"keys": ["K1", "K2"]}
    service_state.notifier.send_keys.assert_called_once()


def test_handle_order_paid_propagates_retryable_errors(service_state, mocker):
    mocker.patch.object(service_state.backend, "get", side_effect=StoreUnavailable("down"))
    event = OrderPaidEvent(order_id="o10", email="player@example.com", items=[])

    with pytest.raises(LedgerUnavailable) as exc_info:
        handle_order_paid(event)

    assert exc_info.value.retryable is True


def test_lifespan_stops_consumer_thread(monkeypatch, mocker):
    """Shutdown waits for the consumer loop to exit and close the Kafka consumer."""
    mock_consumer_class = mocker.patch("fulfillment_service.consumer.Consumer")
    mock_consumer_class.return_value.poll.return_value = None
    mock_producer_class = mocker.patch("fulfillment_service.producer.Producer")
    mock_producer_class.return_value.flush.return_value = 0
    monkeypatch.setattr(state, "settings", Settings(mock_mode=False, kafka_bootstrap_servers="dummy:9092"))
    monkeypatch.setattr(state, "consumer", None)
    monkeypatch.setattr(state, "consumer_thread", None)

    with TestClient(app):
        assert state.consumer_thread.is_alive()
        mock_consumer_class.return_value.subscribe.assert_called_once_with(["orders.paid"])

    assert not state.consumer_thread.is_alive()
    mock_consumer_class.return_value.close.assert_called_once()
    mock_producer_class.return_value.flush.assert_called()
