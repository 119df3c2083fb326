"""Logger module for logging messages."""

from logging_utils.config import setup_service_logger

from .config import Settings, load_settings

SERVICE_NAME = "fulfillment-service"


def build_logger(settings: Settings):
    """Configure the service logger from the log settings."""
    return setup_service_logger(SERVICE_NAME, log_level=settings.log_level, log_file=settings.log_file)


logger = build_logger(load_settings())

__all__ = ["logger"]
