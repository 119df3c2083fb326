"""Inventory of unallocated license keys, one record per product."""

from typing import Optional

from .storage import Batch, StorageBackend

INVENTORY_COLLECTION = "inventory"


class InventoryStore:
    """Reads and stages writes of per-product key sequences.

    The store never retries; a failing backend raises ``StoreUnavailable``
    and the caller decides what to do.
    """

    def __init__(self, backend: StorageBackend):
        self._backend = backend

    def get_keys(self, product_id: str, batch: Optional[Batch] = None) -> Optional[list[str]]:
        """Return the product's remaining keys, or None if the product is unknown.

        Args:
            product_id: Product identifier
            batch: When given, the read goes through the batch so a later
                staged update is conditional on what was read here

        Returns:
            The key sequence, last element allocated first
        """
        if batch is not None:
            data = batch.get(INVENTORY_COLLECTION, product_id)
        else:
            document = self._backend.get(INVENTORY_COLLECTION, product_id)
            data = document.data if document else None
        if data is None:
            return None
        return list(data.get("keys", []))

    def stage_key_update(self, batch: Batch, product_id: str, remaining_keys: list[str]) -> None:
        """Stage the shortened key sequence into the checkout batch."""
        batch.update(INVENTORY_COLLECTION, product_id, {"keys": list(remaining_keys)})

    def remaining(self, product_id: str) -> Optional[int]:
        keys = self.get_keys(product_id)
        return None if keys is None else len(keys)

    def put_keys(self, product_id: str, keys: list[str]) -> None:
        """Provision a product's keys outside of any checkout."""
        self._backend.put(INVENTORY_COLLECTION, product_id, {"keys": list(keys)})
