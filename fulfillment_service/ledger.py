"""Idempotency ledger: one write-once record per fulfilled order."""

from datetime import datetime, timezone

from .errors import LedgerUnavailable, OrderAlreadyProcessed, StoreUnavailable
from .storage import Batch, StorageBackend

ORDERS_COLLECTION = "orders"


class IdempotencyLedger:
    """Tracks which orders already had their keys allocated."""

    def __init__(self, backend: StorageBackend):
        self._backend = backend

    def is_processed(self, order_id: str) -> bool:
        """Check whether the order's checkout already committed.

        A missing entry means the order was never processed.

        Raises:
            LedgerUnavailable: If the backend cannot be read
        """
        try:
            document = self._backend.get(ORDERS_COLLECTION, order_id)
        except StoreUnavailable as e:
            raise LedgerUnavailable(order_id) from e
        if document is None:
            return False
        return bool(document.data.get("processed", False))

    def mark_processed(self, batch: Batch, order_id: str) -> None:
        """Stage the ledger entry into the checkout batch.

        A missing entry is staged as a create, so a concurrent checkout that
        already committed the same order makes this batch conflict. An entry
        that exists but is not marked processed is updated under the version
        the batch read.

        Raises:
            OrderAlreadyProcessed: If the batch reads an entry already marked processed
        """
        entry = {"processed": True, "processed_at": datetime.now(timezone.utc).isoformat()}
        existing = batch.get(ORDERS_COLLECTION, order_id)
        if existing is None:
            batch.create(ORDERS_COLLECTION, order_id, entry)
        elif existing.get("processed", False):
            raise OrderAlreadyProcessed(order_id)
        else:
            batch.update(ORDERS_COLLECTION, order_id, {**existing, **entry})
