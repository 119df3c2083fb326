"""Fulfillment Service: exactly-once license key checkout for paid orders."""

__version__ = "0.1.0"
