"""Fulfillment Allocator.

For each wanted (barcode, quantity) pair, fill the quantity from the
cheapest offers first, across as many suppliers as it takes. Offers are
ordered by price, then supplier key, so equal prices always resolve the
same way.

The catalog is read once per allocate() call for every valid barcode in
the request list.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Sequence

from .catalog_store import CatalogStore
from .config import OfferSettings
from .models import (
    AllocationLine,
    AllocationRequest,
    FulfillmentPlan,
    Offer,
    is_valid_barcode,
)

logger = logging.getLogger("offers.allocator")

NOT_FOUND = "Product not found in catalog"
NO_STOCK = "No available quantity from any supplier"
MISSING_BARCODE = "Barcode is missing or empty"
BAD_QUANTITY = "Quantity must be a positive integer"


def _format_line(line: AllocationLine) -> str:
    return f"{line.quantity_taken} pcs from {line.supplier_name} at {line.price:.2f}"


def render_message(
    requested: int, lines: list[AllocationLine], shortfall: int
) -> str:
    """Human-readable explanation of a plan with at least one line."""
    taken = "; ".join(_format_line(line) for line in lines)
    if shortfall > 0:
        return (
            f"Insufficient quantity. Only {requested - shortfall} of {requested} pcs "
            f"available. Taken: {taken}. Short by {shortfall} pcs."
        )
    if len(lines) == 1:
        line = lines[0]
        return (
            f"Took {requested} pcs from supplier {line.supplier_name} "
            f"at {line.price:.2f} per unit"
        )
    return f"Taken from multiple suppliers: {taken}"


def greedy_fill(offers: Sequence[Offer], quantity: int) -> tuple[list[AllocationLine], int]:
    """Take units from offers in order until quantity is met.

    Returns the lines taken and the remaining (uncovered) quantity.
    """
    remaining = quantity
    lines: list[AllocationLine] = []
    for offer in offers:
        if remaining <= 0:
            break
        if offer.quantity <= 0:
            continue
        take = min(remaining, offer.quantity)
        lines.append(
            AllocationLine(
                supplier_key=offer.supplier.key,
                supplier_name=offer.supplier.display_name,
                price=offer.price,
                quantity_taken=take,
                supplier_available_quantity=offer.quantity,
            )
        )
        remaining -= take
    return lines, remaining


def sort_offers(offers: Sequence[Offer]) -> list[Offer]:
    return sorted(offers, key=lambda o: (o.price, o.supplier.key))


class FulfillmentAllocator:
    """Computes a least-cost multi-supplier plan per requested item."""

    def __init__(
        self,
        store: CatalogStore,
        *,
        unnamed_product_label: str = "Unnamed product",
    ) -> None:
        self._store = store
        self._unnamed = unnamed_product_label

    @classmethod
    def from_settings(
        cls, store: CatalogStore, settings: OfferSettings
    ) -> FulfillmentAllocator:
        return cls(store, unnamed_product_label=settings.unnamed_product_label)

    def allocate(self, requests: Sequence[AllocationRequest]) -> list[FulfillmentPlan]:
        """One plan per request, in request order."""
        start = time.monotonic()
        plans: list[FulfillmentPlan | None] = []
        valid: list[tuple[int, AllocationRequest, str]] = []

        for index, request in enumerate(requests):
            product_id = (request.product_id or "").strip()
            rejection = self._reject(request, product_id)
            if rejection is not None:
                plans.append(rejection)
                continue
            plans.append(None)
            valid.append((index, request, product_id))

        if valid:
            catalog = self._store.find_offers_for_product_ids(
                {product_id for _, _, product_id in valid}
            )
            logger.info(
                "Found offers for %d of %d requested barcodes",
                len(catalog),
                len({product_id for _, _, product_id in valid}),
            )
            for index, request, product_id in valid:
                plans[index] = self.plan_for(
                    product_id, request.quantity, catalog.get(product_id, [])
                )
            _log_supplier_statistics(catalog)

        result = [plan for plan in plans if plan is not None]
        logger.info(
            "Allocation completed in %d ms for %d requests (%d need manual processing)",
            int((time.monotonic() - start) * 1000),
            len(result),
            sum(1 for p in result if p.requires_manual_processing),
        )
        return result

    def plan_for(
        self, product_id: str, quantity: int, offers: Sequence[Offer]
    ) -> FulfillmentPlan:
        """Plan for one validated request against its offers."""
        if not offers:
            return self._manual(product_id, quantity, NOT_FOUND)

        ordered = sort_offers(offers)
        if all(o.quantity <= 0 for o in ordered):
            return self._manual(product_id, quantity, NO_STOCK)

        lines, shortfall = greedy_fill(ordered, quantity)
        product_name, suspect = self._product_name(ordered[0])
        return FulfillmentPlan(
            product_id=product_id,
            requested_quantity=quantity,
            product_name=product_name,
            product_name_suspect=suspect,
            lines=lines,
            total_cost=sum(line.cost for line in lines),
            requires_manual_processing=shortfall > 0,
            message=render_message(quantity, lines, shortfall),
            covered_quantity=quantity - shortfall,
            shortfall=shortfall,
        )

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _reject(
        self, request: AllocationRequest, product_id: str
    ) -> FulfillmentPlan | None:
        row = f"Row {request.row_number}: " if request.row_number is not None else ""
        if not product_id:
            return self._manual(None, request.quantity, row + MISSING_BARCODE)
        if not is_valid_barcode(product_id):
            return self._manual(
                product_id,
                request.quantity,
                f"{row}Invalid barcode format: {product_id}",
            )
        if request.quantity is None or request.quantity <= 0:
            return self._manual(product_id, request.quantity, row + BAD_QUANTITY)
        return None

    def _manual(
        self, product_id: str | None, quantity: int | None, reason: str
    ) -> FulfillmentPlan:
        return FulfillmentPlan(
            product_id=product_id,
            requested_quantity=quantity,
            product_name=self._unnamed,
            requires_manual_processing=True,
            message=reason,
            shortfall=quantity if quantity and quantity > 0 else 0,
        )

    def _product_name(self, cheapest: Offer) -> tuple[str, bool]:
        """Name from the cheapest offer; placeholder when missing or equal to the supplier name."""
        name = cheapest.product_name
        if not name:
            return self._unnamed, False
        if name.strip().casefold() == cheapest.supplier.display_name.strip().casefold():
            logger.warning(
                "Product name equals supplier name for barcode %s (%s)",
                cheapest.barcode,
                name,
            )
            return self._unnamed, True
        return name, False


def _log_supplier_statistics(catalog: dict[str, list[Offer]]) -> None:
    counts = Counter(len(offers) for offers in catalog.values())
    for supplier_count, barcodes in sorted(counts.items()):
        if supplier_count > 1:
            logger.info("Barcodes with %d suppliers: %d", supplier_count, barcodes)


def allocate_requests(
    store: CatalogStore,
    requests: Sequence[AllocationRequest],
    settings: OfferSettings | None = None,
) -> list[FulfillmentPlan]:
    """Allocate with configuration taken from settings."""
    return FulfillmentAllocator.from_settings(
        store, settings or OfferSettings()
    ).allocate(requests)
