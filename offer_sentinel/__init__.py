"""Offer Sentinel — supplier offer consolidation and least-cost fulfillment.

Merges heterogeneous supplier price lists into one offer catalog keyed by
(supplier key, barcode), then answers "how do I buy N units of this
product as cheaply as possible" across every supplier that stocks it.

Usage:
    from offer_sentinel import (
        AllocationRequest, FulfillmentAllocator, InMemoryCatalogStore,
        OfferConsolidator,
    )
    from offer_sentinel.spreadsheet import read_supplier_rows

    store = InMemoryCatalogStore()
    report = OfferConsolidator(store).consolidate(read_supplier_rows(data, "prices.xlsx"))
    print(report.message)

    plans = FulfillmentAllocator(store).allocate(
        [AllocationRequest(product_id="4601234567890", quantity=6)]
    )
"""

__version__ = "0.4.0"

from .allocator import FulfillmentAllocator, allocate_requests
from .catalog_store import (
    CatalogStore,
    CatalogTransaction,
    InMemoryCatalogStore,
    StorageError,
    SupabaseCatalogStore,
    WriteConflict,
    create_catalog_store,
)
from .config import OfferSettings, get_settings
from .consolidator import OfferConsolidator, ingest_file, ingest_rows
from .errors import IngestionError, SpreadsheetError
from .identity import SupplierKeyRule, normalize_supplier_name, offer_identity
from .models import (
    AllocationLine,
    AllocationRequest,
    ConsolidationReport,
    FulfillmentPlan,
    NormalizedRow,
    Offer,
    OfferStatus,
    RowOutcome,
    Supplier,
    is_valid_barcode,
)
from .registry import SupplierRegistry

__all__ = [
    "__version__",
    # Core
    "OfferConsolidator",
    "FulfillmentAllocator",
    "SupplierRegistry",
    "ingest_rows",
    "ingest_file",
    "allocate_requests",
    # Store
    "CatalogStore",
    "CatalogTransaction",
    "InMemoryCatalogStore",
    "SupabaseCatalogStore",
    "StorageError",
    "WriteConflict",
    "create_catalog_store",
    # Config
    "OfferSettings",
    "get_settings",
    # Identity
    "SupplierKeyRule",
    "normalize_supplier_name",
    "offer_identity",
    # Errors
    "IngestionError",
    "SpreadsheetError",
    # Models
    "AllocationLine",
    "AllocationRequest",
    "ConsolidationReport",
    "FulfillmentPlan",
    "NormalizedRow",
    "Offer",
    "OfferStatus",
    "RowOutcome",
    "Supplier",
    "is_valid_barcode",
]
