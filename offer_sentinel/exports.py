"""xlsx exports: catalog dump, allocation result, request template."""

from __future__ import annotations

import io
import logging
from collections.abc import Sequence

import pandas as pd
from openpyxl.utils import get_column_letter

from .models import FulfillmentPlan, Offer

logger = logging.getLogger("offers.exports")

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

CATALOG_COLUMNS = [
    "Supplier code",
    "Supplier name",
    "Barcode",
    "External code",
    "Product name",
    "Price",
    "Quantity",
]
ALLOCATION_COLUMNS = [
    "Barcode",
    "Quantity",
    "Product name",
    "Manual processing",
    "Total cost",
    "Message",
    "Suppliers",
]
TEMPLATE_COLUMNS = ["Barcode", "Quantity"]
TEMPLATE_EXAMPLES = [("4606068663735", 10), ("4600905000264", 2)]


def _to_xlsx(frame: pd.DataFrame, sheet_name: str) -> bytes:
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        frame.to_excel(writer, sheet_name=sheet_name, index=False)
        sheet = writer.sheets[sheet_name]
        for index, column in enumerate(frame.columns):
            values = [str(column)] + [str(v) for v in frame[column].tolist()]
            width = min(max(len(v) for v in values) + 2, 80)
            sheet.column_dimensions[get_column_letter(index + 1)].width = width
    return buffer.getvalue()


def export_catalog(offers: Sequence[Offer]) -> bytes:
    """Every stored offer, one row each."""
    frame = pd.DataFrame(
        [
            [
                o.supplier.key,
                o.supplier.name or "",
                o.barcode,
                o.external_code or "",
                o.product_name or "",
                o.price,
                o.quantity,
            ]
            for o in offers
        ],
        columns=CATALOG_COLUMNS,
    )
    logger.info("Exporting catalog: %d offers", len(frame))
    return _to_xlsx(frame, "Offers")


def describe_lines(plan: FulfillmentPlan) -> str:
    return "; ".join(
        f"{line.supplier_name}: {line.quantity_taken} x {line.price:.2f}"
        for line in plan.lines
    )


def export_allocation(plans: Sequence[FulfillmentPlan]) -> bytes:
    """Allocation result sheet; manual-processing rows flagged."""
    frame = pd.DataFrame(
        [
            [
                p.product_id or "",
                p.requested_quantity if p.requested_quantity is not None else "",
                p.product_name,
                "yes" if p.requires_manual_processing else "no",
                round(p.total_cost, 2) if p.total_cost is not None else "",
                p.message,
                describe_lines(p),
            ]
            for p in plans
        ],
        columns=ALLOCATION_COLUMNS,
    )
    logger.info("Exporting allocation result: %d rows", len(frame))
    return _to_xlsx(frame, "Price analysis")


def request_template() -> bytes:
    """Empty request list with two example rows."""
    frame = pd.DataFrame(TEMPLATE_EXAMPLES, columns=TEMPLATE_COLUMNS)
    return _to_xlsx(frame, "Template")
