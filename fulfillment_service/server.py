"""FastAPI server implementation for the Fulfillment Service."""

import threading
from contextlib import asynccontextmanager
from typing import Optional

from confluent_kafka import KafkaException
from confluent_kafka.admin import AdminClient
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from .checkout import CheckoutCoordinator
from .config import Settings, load_settings
from .consumer import OrderEventConsumer
from .errors import InsufficientInventory, LedgerUnavailable, OrderAlreadyProcessed, StoreUnavailable
from .logger import logger
from .notifier import EmailServiceClient
from .producer import OrderEventProducer
from .schemas import OrderPaidEvent, StripeEvent, StripeOrder
from .sql_storage import SqlAlchemyBackend
from .storage import InMemoryBackend

PAYMENT_SUCCEEDED = "order.payment_succeeded"
CONSUMER_SHUTDOWN_TIMEOUT = 30.0


class FulfillmentState:
    """Class to manage fulfillment service state."""

    def __init__(self, settings: Settings):
        """Initialize storage, checkout and notification from settings."""
        self.settings = settings
        if settings.mock_mode:
            logger.info("🛈 Starting fulfillment service in MOCK mode")

        if settings.database_url:
            self.backend = SqlAlchemyBackend.from_url(settings.database_url)
        else:
            logger.warning("DATABASE_URL not set, using in-memory storage")
            self.backend = InMemoryBackend()

        self.coordinator = CheckoutCoordinator(
            self.backend,
            max_attempts=settings.checkout_max_attempts,
            retry_backoff=settings.checkout_retry_backoff,
        )
        self.notifier = EmailServiceClient(settings.email_service_url, api_key=settings.email_service_api_key)
        self.producer: Optional[OrderEventProducer] = None
        self.consumer: Optional[OrderEventConsumer] = None
        self.consumer_thread: Optional[threading.Thread] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage the lifecycle of the FastAPI application.

    Args:
        app: The FastAPI application instance
    """
    settings = state.settings
    if not settings.mock_mode:
        state.producer = OrderEventProducer(settings.kafka_bootstrap_servers, topic=settings.orders_paid_topic)
        state.consumer = OrderEventConsumer(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            group_id=settings.kafka_consumer_group,
            retry_backoff=max(settings.checkout_retry_backoff, 1.0),
        )
        state.consumer.subscribe([settings.orders_paid_topic])

        state.consumer_thread = threading.Thread(
            target=state.consumer.process_messages, args=(handle_order_paid,), daemon=True
        )
        state.consumer_thread.start()
        logger.info("Consumer thread started")

    yield

    logger.info("Shutting down fulfillment service...")
    if state.consumer:
        state.consumer.close()
    if state.consumer_thread is not None:
        # The loop finishes the message in hand and settles its offset before exiting.
        state.consumer_thread.join(timeout=CONSUMER_SHUTDOWN_TIMEOUT)
        if state.consumer_thread.is_alive():
            logger.warning("Consumer thread did not stop within the shutdown timeout")
    if state.producer:
        state.producer.close()
    logger.info("Shutdown complete")


app = FastAPI(title="Fulfillment Service", lifespan=lifespan)
state = FulfillmentState(load_settings())


def handle_order_paid(event: OrderPaidEvent) -> None:
    """Check out a paid order and deliver its keys.

    Retryable checkout errors propagate so the queue redelivers the event.

    Args:
        event: The queued paid-order event
    """
    logger.info(f"Start processing order | order_id={event.order_id} | items={len(event.items)}")
    try:
        key_items = state.coordinator.process_order(event.order_id, event.items)
    except OrderAlreadyProcessed:
        logger.info(f"Order already processed, skipping | order_id={event.order_id}")
        return
    except InsufficientInventory as e:
        logger.error(
            f"Order cannot be fulfilled | order_id={event.order_id} | product_id={e.product_id} | "
            f"requested={e.requested} | available={e.available}"
        )
        return

    logger.info(f"Order processed successfully | order_id={event.order_id}")
    if not state.notifier.send_keys(event.email, key_items):
        logger.error(f"Keys committed but not delivered | order_id={event.order_id} | email={event.email}")


@app.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy"}


@app.get("/health/ready")
async def readiness_check():
    """Check that storage and, outside mock mode, Kafka are reachable."""
    storage_ok = state.backend.ping()
    if state.settings.mock_mode:
        kafka = "mock"
    else:
        try:
            admin = AdminClient({"bootstrap.servers": state.settings.kafka_bootstrap_servers})
            cluster_metadata = admin.list_topics(timeout=10)
            kafka = "connected" if cluster_metadata is not None else "disconnected"
        except Exception as e:
            logger.error(f"Kafka connection failed: {e}")
            kafka = "disconnected"

    ready = storage_ok and kafka != "disconnected"
    return {
        "status": "ready" if ready else "not ready",
        "kafka": kafka,
        "storage": "connected" if storage_ok else "disconnected",
    }


@app.post("/webhook")
async def stripe_webhook(request: Request, background_tasks: BackgroundTasks):
    """Accept Stripe webhook events.

    Always acknowledges: failures are logged and never turned into an error
    response, so the event source does not start a redelivery storm.
    """
    logger.info("Stripe webhook triggered")
    try:
        payload = await request.json()
        stripe_event = StripeEvent.model_validate(payload)
    except (ValueError, ValidationError) as e:
        logger.warning(f"Ignoring malformed webhook payload: {e}")
        return {"received": True}

    if stripe_event.type != PAYMENT_SUCCEEDED:
        logger.debug(f"Ignoring webhook event | event_id={stripe_event.id} | type={stripe_event.type}")
        return {"received": True}

    try:
        order = StripeOrder.model_validate(stripe_event.data.object)
        event = OrderPaidEvent(
            event_id=stripe_event.id,
            order_id=order.id,
            email=order.email,
            items=order.line_items(),
        )
    except ValidationError as e:
        logger.error(f"Invalid paid order in webhook | event_id={stripe_event.id} | error={e}")
        return {"received": True}

    if state.producer is not None:
        try:
            await run_in_threadpool(state.producer.publish_order_paid, event)
            logger.info(f"Order queued for checkout | order_id={event.order_id} | event_id={event.event_id}")
            return {"received": True}
        except (BufferError, KafkaException) as e:
            logger.exception(f"Failed to queue order, processing in-process | order_id={event.order_id} | error={e}")

    background_tasks.add_task(handle_order_paid, event)
    logger.info(f"Order scheduled in-process | order_id={event.order_id} | event_id={event.event_id}")
    return {"received": True}


@app.get("/orders/{order_id}")
def get_order_status(order_id: str):
    """Report whether an order's keys were already allocated.

    Raises:
        HTTPException: If the ledger cannot be read
    """
    try:
        processed = state.coordinator.ledger.is_processed(order_id)
    except LedgerUnavailable:
        raise HTTPException(status_code=503, detail="Ledger unavailable")
    return {"order_id": order_id, "processed": processed}


@app.get("/inventory/{product_id}")
def get_inventory(product_id: str):
    """Report how many keys a product has left.

    Raises:
        HTTPException: If the product has no inventory record or storage is down
    """
    try:
        remaining = state.coordinator.inventory.remaining(product_id)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Storage unavailable")
    if remaining is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"product_id": product_id, "remaining": remaining}
