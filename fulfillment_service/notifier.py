"""Delivery of allocated keys to the purchaser through the EmailService."""

from typing import Optional

import requests

from .logger import logger
from .schemas import EmailServiceRequest, KeyItem


class EmailServiceClient:
    """HTTP client for the EmailService.

    Delivery failures are reported, never raised: the keys are already
    committed, and redelivering the order would not allocate them again.
    """

    def __init__(self, url: Optional[str], api_key: Optional[str] = None, timeout: float = 10.0):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    def send_keys(self, email: str, key_items: list[KeyItem]) -> bool:
        """Send the allocated keys to the purchaser.

        Args:
            email: Purchaser address
            key_items: Allocated keys per line item

        Returns:
            bool: True if the EmailService accepted the request
        """
        body = EmailServiceRequest(email=email, items=key_items)
        num_keys = sum(len(item.keys) for item in key_items)

        if not self.url:
            logger.info(f"[STUB] Would send {num_keys} keys to {email} | items={len(key_items)}")
            return True

        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = requests.post(self.url, headers=headers, json=body.payload(), timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Request to EmailService failed | email={email} | error={e}")
            return False

        logger.info(f"Request to EmailService was successful | email={email} | keys={num_keys}")
        return True
