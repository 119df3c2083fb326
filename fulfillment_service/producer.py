"""Kafka producer for queueing paid-order events."""

from typing import Optional

from confluent_kafka import KafkaError, KafkaException, Producer
from logging_utils.config import get_kafka_logger

from .schemas import OrderPaidEvent

logger = get_kafka_logger("fulfillment-service")


class OrderEventProducer:
    """Publishes accepted webhook orders for the checkout worker.

    Messages are keyed by order id so redeliveries of the same order land
    on the same partition and are consumed in order.
    """

    def __init__(
        self,
        bootstrap_servers: str,
        topic: str = "orders.paid",
        client_id: str = "fulfillment-service",
        delivery_timeout: float = 10.0,
    ):
        """Initialize the Kafka producer.

        Args:
            bootstrap_servers: Comma-separated list of Kafka broker addresses
            topic: Topic carrying paid-order events
            client_id: Producer client ID
            delivery_timeout: Seconds to wait for the broker to acknowledge a publish
        """
        self.topic = topic
        self.delivery_timeout = delivery_timeout
        self._producer = Producer(
            {
                "bootstrap.servers": bootstrap_servers,
                "client.id": client_id,
                "acks": "all",
                "enable.idempotence": True,
                "message.timeout.ms": 5000,
            }
        )

    @property
    def producer(self):
        return self._producer

    def _delivery_callback(self, err: Optional[Exception], msg) -> None:
        """Handle delivery reports from Kafka.

        Args:
            err: Error that occurred during delivery
            msg: The delivered message
        """
        if err:
            logger.error(f"Order event delivery failed | error={err} | topic={msg.topic()} | key={msg.key()}")
        else:
            logger.debug(f"Order event delivered | topic={msg.topic()} | partition={msg.partition()} | offset={msg.offset()}")

    def publish_order_paid(self, event: OrderPaidEvent) -> None:
        """Queue a paid order for checkout and wait for the broker to confirm it.

        Raises:
            BufferError: If the producer's internal buffer is full
            KafkaException: If the message cannot be enqueued, delivery failed
                or was not confirmed within ``delivery_timeout``
        """
        reports = []

        def on_delivery(err, msg):
            self._delivery_callback(err, msg)
            reports.append(err)

        try:
            self._producer.produce(
                topic=self.topic,
                key=event.order_id.encode("utf-8"),
                value=event.model_dump_json().encode("utf-8"),
                on_delivery=on_delivery,
            )
        except BufferError:
            logger.warning("Producer buffer full, flushing...")
            self._producer.flush()
            raise

        self._producer.flush(self.delivery_timeout)
        if not reports:
            raise KafkaException(KafkaError(KafkaError._MSG_TIMED_OUT, "Order event delivery not confirmed"))
        if reports[0] is not None:
            raise KafkaException(reports[0])

    def flush(self, timeout: float = 10.0) -> None:
        """Wait for all messages to be delivered.

        Args:
            timeout: Maximum time to wait in seconds
        """
        remaining = self._producer.flush(timeout)
        if remaining > 0:
            logger.warning(f"{remaining} order events still pending delivery")

    def close(self) -> None:
        self.flush()
        logger.info("Producer closed")
