"""Pydantic models for webhook payloads, queue events and allocation results."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class LineItem(BaseModel):
    """One purchased product within an order."""

    product_id: str = Field(..., min_length=1, description="Product (SKU) identifier.")
    quantity: int = Field(..., ge=1, description="Number of keys requested.")
    description: Optional[str] = Field(None, description="Display name used in the key email.")


class KeyItem(BaseModel):
    """Keys allocated for a single line item."""

    product_id: str
    description: str
    keys: list[str]


class StripeOrderItem(BaseModel):
    """An entry of a Stripe order's ``items`` list.

    Only ``type == "sku"`` entries carry a product; tax, shipping and
    discount entries are ignored.
    """

    model_config = ConfigDict(extra="ignore")

    type: str
    parent: Optional[str] = None
    quantity: Optional[int] = None
    description: Optional[str] = None


class StripeOrder(BaseModel):
    """The order object carried by an ``order.payment_succeeded`` event."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    email: EmailStr
    items: list[StripeOrderItem] = []

    def line_items(self) -> list[LineItem]:
        """Convert the order's SKU items to line items."""
        return [
            LineItem(product_id=item.parent, quantity=item.quantity, description=item.description)
            for item in self.items
            if item.type == "sku"
        ]


class StripeEventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: dict


class StripeEvent(BaseModel):
    """Envelope of a Stripe webhook event."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    type: str
    data: StripeEventData


class OrderPaidEvent(BaseModel):
    """Queue message for an order whose keys must be checked out.

    Attributes:
        event_id: Identifier of the webhook event that produced this message
        order_id: Order identifier; the idempotency key of the checkout
        email: Purchaser address the keys are delivered to
        items: Line items to allocate keys for
        received_at: When the webhook was accepted
    """

    event_id: str = Field(default_factory=lambda: f"evt-{uuid.uuid4().hex[:12]}")
    order_id: str = Field(..., min_length=1)
    email: EmailStr
    items: list[LineItem] = []
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "event_id": "evt_1CiPtv2eZvKYlo2CcUZsDcO6",
                "order_id": "or_1CiPtv2eZvKYlo2C",
                "email": "player@example.com",
                "items": [{"product_id": "sku_game_001", "quantity": 2, "description": "Space Game"}],
            }
        }
    )


class EmailServiceRequest(BaseModel):
    """Body posted to the EmailService."""

    email: EmailStr
    items: list[KeyItem]

    def payload(self) -> dict:
        """Serialize to the wire format the EmailService expects."""
        return {
            "email": self.email,
            "items": [{"description": item.description, "keys": item.keys} for item in self.items],
        }
