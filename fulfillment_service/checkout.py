"""Checkout coordinator: exactly-once key allocation for a paid order."""

import time
from collections.abc import Sequence

from .errors import BatchCommitConflict, CheckoutError, InsufficientInventory, OrderAlreadyProcessed
from .inventory import InventoryStore
from .ledger import IdempotencyLedger
from .logger import logger
from .schemas import KeyItem, LineItem
from .storage import StorageBackend


class CheckoutCoordinator:
    """Allocates keys for every line item of an order inside one atomic batch.

    The ledger check happens before any batch is opened, and the ledger
    entry is committed together with the inventory writes. A second
    delivery of the same order therefore either sees the entry up front or
    loses the commit; it never receives keys.

    Attributes:
        inventory: Key inventory per product
        ledger: Idempotency ledger per order
        max_attempts: Attempts made by ``process_order`` for retryable errors
        retry_backoff: Seconds of backoff, multiplied by the attempt number
    """

    def __init__(self, backend: StorageBackend, max_attempts: int = 3, retry_backoff: float = 0.1):
        self._backend = backend
        self.inventory = InventoryStore(backend)
        self.ledger = IdempotencyLedger(backend)
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff

    def process_order(self, order_id: str, line_items: Sequence[LineItem]) -> list[KeyItem]:
        """Check out an order, retrying transient failures.

        Every attempt starts again from the ledger check, which is safe
        because a failed attempt committed nothing.

        Raises:
            OrderAlreadyProcessed: The order was fulfilled before
            InsufficientInventory: A product cannot cover the order
            CheckoutError: The last retryable error once attempts run out
        """
        attempt = 1
        while True:
            try:
                return self.checkout(order_id, line_items)
            except CheckoutError as e:
                if not e.retryable or attempt >= self.max_attempts:
                    raise
                logger.warning(
                    f"Checkout attempt failed, retrying | order_id={order_id} | attempt={attempt} | "
                    f"error_type={type(e).__name__} | error={e}"
                )
                time.sleep(self.retry_backoff * attempt)
                attempt += 1

    def checkout(self, order_id: str, line_items: Sequence[LineItem]) -> list[KeyItem]:
        """Run a single checkout attempt.

        Args:
            order_id: Order identifier supplied by the payment provider
            line_items: Products and quantities, validated upstream

        Returns:
            Allocated keys per line item, in input order
        """
        if self.ledger.is_processed(order_id):
            raise OrderAlreadyProcessed(order_id)

        batch = self._backend.batch()
        requested = _quantities_by_product(line_items)

        popped: dict[str, list[str]] = {}
        for product_id, quantity in requested.items():
            keys = self.inventory.get_keys(product_id, batch=batch)
            available = len(keys) if keys is not None else 0
            if available < quantity:
                raise InsufficientInventory(product_id, quantity, available)
            popped[product_id] = [keys.pop() for _ in range(quantity)]
            self.inventory.stage_key_update(batch, product_id, keys)

        self.ledger.mark_processed(batch, order_id)

        try:
            batch.commit()
        except BatchCommitConflict:
            if self.ledger.is_processed(order_id):
                raise OrderAlreadyProcessed(order_id)
            raise

        logger.info(
            f"Checkout committed | order_id={order_id} | line_items={len(line_items)} | "
            f"keys={sum(requested.values())}"
        )
        return _distribute(line_items, popped)


def _quantities_by_product(line_items: Sequence[LineItem]) -> dict[str, int]:
    """Sum quantities of line items sharing a product, keeping first-seen order."""
    totals: dict[str, int] = {}
    for item in line_items:
        totals[item.product_id] = totals.get(item.product_id, 0) + item.quantity
    return totals


def _distribute(line_items: Sequence[LineItem], popped: dict[str, list[str]]) -> list[KeyItem]:
    """Hand popped keys back to the line items in input order."""
    cursors = {product_id: 0 for product_id in popped}
    result = []
    for item in line_items:
        start = cursors[item.product_id]
        cursors[item.product_id] = start + item.quantity
        result.append(
            KeyItem(
                product_id=item.product_id,
                description=item.description or item.product_id,
                keys=popped[item.product_id][start : start + item.quantity],
            )
        )
    return result
