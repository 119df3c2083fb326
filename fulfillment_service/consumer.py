"""Kafka consumer running checkouts for paid-order events."""

import json
import time
from collections.abc import Callable

from confluent_kafka import Consumer, KafkaError, KafkaException, TopicPartition
from logging_utils.config import get_kafka_logger
from pydantic import ValidationError

from .errors import CheckoutError
from .schemas import OrderPaidEvent

logger = get_kafka_logger("fulfillment-service")

DEFAULT_CONSUMER_CONFIG = {
    "auto.offset.reset": "earliest",
    "enable.auto.commit": False,
    "session.timeout.ms": 30000,
    "max.poll.interval.ms": 300000,
}

STATUS_LOG_INTERVAL = 300


class OrderEventConsumer:
    """At-least-once consumer of paid-order events.

    Offsets are committed only once the handler is done with a message. A
    retryable checkout failure rewinds to the message so it is delivered
    again; the idempotency ledger keeps that redelivery from allocating twice.
    """

    def __init__(
        self,
        bootstrap_servers: str,
        group_id: str,
        auto_offset_reset: str = "earliest",
        retry_backoff: float = 1.0,
    ):
        """Initialize the order event consumer.

        Args:
            bootstrap_servers: Kafka bootstrap servers
            group_id: Consumer group ID
            auto_offset_reset: Where to start consuming from if no offset is stored
            retry_backoff: Seconds to wait before redelivering a failed message
        """
        self.stats = {"messages_processed": 0, "redeliveries": 0, "errors": 0, "start_time": time.time()}
        self.retry_backoff = retry_backoff
        self._running = False

        logger.info(f"Initializing consumer | bootstrap_servers={bootstrap_servers} | group_id={group_id}")

        config = DEFAULT_CONSUMER_CONFIG.copy()
        config.update(
            {
                "bootstrap.servers": bootstrap_servers,
                "group.id": group_id,
                "auto.offset.reset": auto_offset_reset,
            }
        )
        self.consumer = Consumer(config)

    def subscribe(self, topics: list[str]) -> None:
        """Subscribe to the specified Kafka topics.

        Args:
            topics: List of topic names to subscribe to
        """
        logger.info(f"Subscribing to topics: {topics}")
        self.consumer.subscribe(topics)

    def process_messages(self, handler: Callable[[OrderPaidEvent], None]) -> None:
        """Poll and handle messages until ``stop`` is called.

        Args:
            handler: Callback running the checkout for one event
        """
        logger.info("Starting message processing loop")
        self._running = True
        last_status_log = time.time()

        try:
            while self._running:
                msg = self.consumer.poll(timeout=1.0)

                now = time.time()
                if now - last_status_log >= STATUS_LOG_INTERVAL:
                    self._log_status()
                    last_status_log = now

                if msg is None:
                    continue

                if msg.error():
                    if msg.error().code() == KafkaError._PARTITION_EOF:
                        logger.debug("Reached end of partition")
                        continue
                    logger.error(f"Kafka error: {msg.error()}")
                    self.stats["errors"] += 1
                    raise KafkaException(msg.error())

                self.handle_message(msg, handler)
        except KeyboardInterrupt:
            logger.info("Shutting down consumer...")
        finally:
            self._log_status()
            self.consumer.close()

    def handle_message(self, msg, handler: Callable[[OrderPaidEvent], None]) -> None:
        """Decode one message, run the handler and settle its offset."""
        try:
            event = OrderPaidEvent.model_validate(json.loads(msg.value().decode("utf-8")))
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
            logger.error(
                f"Dropping undecodable order event | error={e} | topic={msg.topic()} | "
                f"partition={msg.partition()} | offset={msg.offset()}"
            )
            self.stats["errors"] += 1
            self._commit(msg)
            return

        try:
            handler(event)
        except CheckoutError as e:
            if e.retryable:
                logger.warning(
                    f"Checkout failed, redelivering | order_id={event.order_id} | "
                    f"error_type={type(e).__name__} | error={e} | offset={msg.offset()}"
                )
                self.stats["redeliveries"] += 1
                self._rewind(msg)
                return
            logger.error(f"Checkout rejected order | order_id={event.order_id} | error={e}")
            self.stats["errors"] += 1
        except Exception:
            logger.exception(f"Unexpected error handling order event | order_id={event.order_id}")
            self.stats["errors"] += 1

        self.stats["messages_processed"] += 1
        self._commit(msg)

    def stop(self) -> None:
        self._running = False

    def _commit(self, msg) -> None:
        self.consumer.commit(message=msg, asynchronous=False)

    def _rewind(self, msg) -> None:
        time.sleep(self.retry_backoff)
        self.consumer.seek(TopicPartition(msg.topic(), msg.partition(), msg.offset()))

    def _log_status(self) -> None:
        """Log consumer status and statistics."""
        runtime = time.time() - self.stats["start_time"]
        msg_rate = self.stats["messages_processed"] / runtime if runtime > 0 else 0

        logger.info(
            f"Consumer status | messages_processed={self.stats['messages_processed']} | "
            f"redeliveries={self.stats['redeliveries']} | errors={self.stats['errors']} | "
            f"runtime_seconds={runtime:.2f} | messages_per_second={msg_rate:.2f}"
        )

    def close(self) -> None:
        """Stop the loop; the loop closes the Kafka consumer on exit."""
        self.stop()
        logger.info("Consumer stopping")
