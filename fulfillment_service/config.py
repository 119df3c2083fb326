"""Environment-driven settings for the Fulfillment Service."""

import os
from typing import Optional

from pydantic import BaseModel, Field


class Settings(BaseModel):
    """Runtime configuration.

    Attributes:
        log_level: Loguru level for all sinks
        log_file: Optional rotating log file
        mock_mode: Process webhooks in-process instead of through Kafka
        kafka_bootstrap_servers: Kafka bootstrap servers
        kafka_consumer_group: Consumer group of the checkout worker
        orders_paid_topic: Topic carrying accepted paid-order events
        database_url: SQLAlchemy URL; in-memory storage when unset
        email_service_url: EmailService endpoint; stub delivery when unset
        email_service_api_key: Optional bearer token for the EmailService
        checkout_max_attempts: Attempts per checkout before giving up
        checkout_retry_backoff: Seconds of backoff, multiplied by the attempt number
    """

    log_level: str = "INFO"
    log_file: Optional[str] = None
    mock_mode: bool = False
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_consumer_group: str = "fulfillment-service"
    orders_paid_topic: str = "orders.paid"
    database_url: Optional[str] = None
    email_service_url: Optional[str] = None
    email_service_api_key: Optional[str] = None
    checkout_max_attempts: int = Field(3, ge=1)
    checkout_retry_backoff: float = Field(0.1, ge=0)


def load_settings() -> Settings:
    """Build settings from the process environment."""
    return Settings(
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE") or None,
        mock_mode=os.getenv("MOCK_MODE", "false").lower() == "true",
        kafka_bootstrap_servers=os.getenv("KAFKA_BOOTSTRAP_SERVERS", "kafka:9092"),
        kafka_consumer_group=os.getenv("KAFKA_CONSUMER_GROUP", "fulfillment-service"),
        orders_paid_topic=os.getenv("ORDERS_PAID_TOPIC", "orders.paid"),
        database_url=os.getenv("DATABASE_URL") or None,
        email_service_url=os.getenv("EMAIL_SERVICE_URL") or None,
        email_service_api_key=os.getenv("EMAIL_SERVICE_API_KEY") or None,
        checkout_max_attempts=int(os.getenv("CHECKOUT_MAX_ATTEMPTS", "3")),
        checkout_retry_backoff=float(os.getenv("CHECKOUT_RETRY_BACKOFF", "0.1")),
    )
