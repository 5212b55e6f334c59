"""Pydantic models shared by ingestion and allocation.

Suppliers and offers are the persisted catalog; NormalizedRow and
AllocationRequest are what the spreadsheet adapter hands to the core;
RowOutcome, ConsolidationReport and FulfillmentPlan are what the core
hands back.
"""

from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel, Field, field_validator

BARCODE_PATTERN = re.compile(r"^[0-9]{8,14}$")
WHOLE_NUMBER = re.compile(r"^[+-]?[0-9]+$")


def is_valid_barcode(value: str | None) -> bool:
    """True when value is 8 to 14 ASCII digits and nothing else."""
    return value is not None and BARCODE_PATTERN.fullmatch(value) is not None


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class Supplier(BaseModel):
    """A supplier, identified by its key."""

    key: str
    name: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.key


class Offer(BaseModel):
    """A supplier's current price and available quantity for one barcode."""

    supplier: Supplier
    barcode: str
    external_code: str | None = None
    product_name: str | None = None
    price: float = 0.0
    quantity: int = 0

    @property
    def supplier_key(self) -> str:
        return self.supplier.key

    @property
    def identity(self) -> tuple[str, str]:
        """Catalog identity: at most one current offer per (supplier key, barcode)."""
        return (self.supplier.key, self.barcode)


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class NormalizedRow(BaseModel):
    """One supplier-list row after cell decoding.

    Every field is optional here; the consolidator decides what is
    required.
    """

    row_number: int | None = None
    supplier_key: str | None = None
    supplier_name: str | None = None
    barcode: str | None = None
    external_code: str | None = None
    product_name: str | None = None
    price: float | None = None
    quantity: int | None = None


class OfferStatus(str, Enum):
    """What consolidation did with a single row."""

    NEW = "new"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class RowOutcome(BaseModel):
    """Per-row result collected into the consolidation report."""

    row_number: int | None = None
    status: OfferStatus
    message: str | None = None
    offer: Offer | None = None

    @property
    def needs_write(self) -> bool:
        return self.status in (OfferStatus.NEW, OfferStatus.UPDATED)


class ConsolidationReport(BaseModel):
    """Result of consolidating one uploaded supplier list."""

    success: bool = True
    message: str = ""
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    duplicate_examples: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    elapsed_ms: int = 0

    @property
    def processed(self) -> int:
        """Rows that reached the catalog comparison step."""
        return self.new + self.updated + self.unchanged

    @property
    def written(self) -> int:
        return self.new + self.updated


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------


class AllocationRequest(BaseModel):
    """A wanted (product, quantity) pair.

    Lenient on input: a non-text product id is turned into text and a
    quantity that is not a whole number becomes None, so one bad entry
    gets its own manual-processing plan instead of failing the batch.
    """

    product_id: str | None = None
    quantity: int | None = None
    row_number: int | None = None

    @field_validator("product_id", mode="before")
    @classmethod
    def product_id_as_text(cls, value: object) -> object:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @field_validator("quantity", mode="before")
    @classmethod
    def whole_quantity(cls, value: object) -> int | None:
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            return int(value) if value.is_integer() else None
        if isinstance(value, str) and WHOLE_NUMBER.fullmatch(value.strip()):
            return int(value.strip())
        return None


class AllocationLine(BaseModel):
    """Units taken from one supplier."""

    supplier_key: str
    supplier_name: str
    price: float
    quantity_taken: int
    supplier_available_quantity: int

    @property
    def cost(self) -> float:
        return self.quantity_taken * self.price


class FulfillmentPlan(BaseModel):
    """Least-cost plan for one requested product.

    ``total_cost`` is None when nothing was taken. ``lines`` are in
    ascending price order.
    """

    product_id: str | None = None
    requested_quantity: int | None = None
    product_name: str
    lines: list[AllocationLine] = Field(default_factory=list)
    total_cost: float | None = None
    requires_manual_processing: bool = False
    message: str = ""
    covered_quantity: int = 0
    shortfall: int = 0
    product_name_suspect: bool = False

    @property
    def is_satisfied(self) -> bool:
        return not self.requires_manual_processing

    @property
    def supplier_count(self) -> int:
        return len(self.lines)
