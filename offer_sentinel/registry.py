"""Batch-scoped supplier registry.

Created for one ingestion run and dropped afterwards, so concurrent runs
never share state. Guarantees at most one store read and one store write
per distinct supplier per run.
"""

from __future__ import annotations

import logging

from .catalog_store import CatalogStore
from .models import Supplier

logger = logging.getLogger("offers.registry")


class SupplierRegistry:
    """Lazily populated supplier key -> Supplier map for one batch."""

    def __init__(self, store: CatalogStore) -> None:
        self._store = store
        self._cache: dict[str, Supplier] = {}
        self.lookups = 0
        self.writes = 0

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: str) -> bool:
        return key in self._cache

    def resolve(self, key: str, display_name: str | None = None) -> Supplier:
        """Return the supplier for key, creating it in the store if needed.

        An existing supplier whose display name differs from a non-empty
        ``display_name`` gets its name refreshed.
        """
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        self.lookups += 1
        supplier = self._store.find_supplier(key)
        if supplier is None:
            supplier = Supplier(key=key, name=display_name or key)
            self._save(supplier)
            logger.debug("Created supplier %s", key)
        elif display_name and supplier.name != display_name:
            supplier = supplier.model_copy(update={"name": display_name})
            self._save(supplier)
            logger.debug("Refreshed display name for supplier %s", key)

        self._cache[key] = supplier
        return supplier

    def _save(self, supplier: Supplier) -> None:
        self._store.save_supplier(supplier)
        self.writes += 1
