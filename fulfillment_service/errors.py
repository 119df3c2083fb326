"""Checkout error taxonomy.

Every error says whether retrying the whole checkout from scratch is safe.
None of them leaves staged writes behind: a batch either commits in full or
not at all.
"""


class CheckoutError(Exception):
    """Base class for checkout failures."""

    retryable = False


class OrderAlreadyProcessed(CheckoutError):
    """The order's keys were already allocated; nothing else to do."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order already processed: {order_id}")


class InsufficientInventory(CheckoutError):
    """A product has fewer keys than the order requested."""

    def __init__(self, product_id: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient inventory for {product_id}: requested={requested}, available={available}"
        )


class LedgerUnavailable(CheckoutError):
    """The idempotency ledger could not be consulted."""

    retryable = True

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Idempotency ledger unavailable for order {order_id}")


class StoreUnavailable(CheckoutError):
    """The storage backend failed to read or commit."""

    retryable = True


class BatchCommitConflict(CheckoutError):
    """A concurrent writer changed a document read by the batch."""

    retryable = True
