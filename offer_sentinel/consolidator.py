"""Ingestion Consolidator.

Merges one uploaded supplier list into the offer catalog:

    1. validate   — supplier key and barcode present, barcode is 8-14 digits
    2. dedupe     — a (supplier key, barcode) seen earlier in the same file is skipped
    3. supplier   — resolved once per batch through SupplierRegistry
    4. compare    — new / updated / unchanged against the stored offer
    5. write      — new and updated offers buffered and flushed in bulk to the
                    transaction, which the store commits when the file is done

Row problems never abort the batch; they come back as RowOutcome values
and are counted. Whole-file problems (unreadable file, missing columns,
store failure) abort the transaction and produce a failed report.

Usage:
    consolidator = OfferConsolidator(store)
    report = consolidator.consolidate(rows)
    print(report.message)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field

from .catalog_store import CatalogStore, CatalogTransaction, StorageError
from .config import OfferSettings
from .errors import IngestionError
from .identity import KeyRule, SupplierKeyRule, offer_identity, resolve_key_rule
from .models import (
    ConsolidationReport,
    NormalizedRow,
    Offer,
    OfferStatus,
    RowOutcome,
    Supplier,
    is_valid_barcode,
)
from .registry import SupplierRegistry
from .spreadsheet import read_supplier_rows

logger = logging.getLogger("offers.consolidator")

COMPARED_FIELDS = ("external_code", "product_name", "price", "quantity")


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _same(a: object, b: object) -> bool:
    """Null-safe exact equality; no float tolerance."""
    if a is None or b is None:
        return a is None and b is None
    return a == b


def changed_fields(existing: Offer, candidate: dict) -> list[str]:
    """Names of compared fields whose values differ."""
    return [
        name
        for name in COMPARED_FIELDS
        if not _same(getattr(existing, name), candidate[name])
    ]


# ---------------------------------------------------------------------------
# Per-run state
# ---------------------------------------------------------------------------


@dataclass
class _BatchState:
    """Everything scoped to one consolidate() call."""

    tx: CatalogTransaction
    registry: SupplierRegistry
    seen: set[str] = field(default_factory=set)
    buffer: list[RowOutcome] = field(default_factory=list)
    written: dict[tuple[str, str], RowOutcome] = field(default_factory=dict)
    suspect_names: int = 0
    report: ConsolidationReport = field(default_factory=ConsolidationReport)
    rows_seen: int = 0


class OfferConsolidator:
    """Deduplicates a batch of rows and upserts the minimal write-set."""

    def __init__(
        self,
        store: CatalogStore,
        *,
        key_rule: SupplierKeyRule | str | KeyRule = SupplierKeyRule.CODE,
        batch_size: int = 1000,
        max_duplicate_examples: int = 3,
        max_logged_failures: int = 10,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._store = store
        self._key_rule = resolve_key_rule(key_rule)
        self._batch_size = batch_size
        self._max_examples = max_duplicate_examples
        self._max_failures = max_logged_failures

    @classmethod
    def from_settings(
        cls, store: CatalogStore, settings: OfferSettings
    ) -> OfferConsolidator:
        return cls(
            store,
            key_rule=settings.supplier_key_rule,
            batch_size=settings.write_batch_size,
            max_duplicate_examples=settings.max_duplicate_examples,
            max_logged_failures=settings.max_logged_failures,
        )

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def consolidate(self, rows: Iterable[NormalizedRow]) -> ConsolidationReport:
        """Consolidate rows into the catalog as one logical transaction."""
        start = time.monotonic()
        rows_seen = 0

        try:
            with self._store.transaction() as tx:
                state = _BatchState(tx=tx, registry=SupplierRegistry(tx))
                for ordinal, row in enumerate(rows, start=1):
                    state.rows_seen = rows_seen = ordinal
                    outcome = self._evaluate_row(row, ordinal, state)
                    self._record(outcome, state)
                    if outcome.needs_write:
                        state.buffer.append(outcome)
                        if len(state.buffer) >= self._batch_size:
                            self._flush(state)
                self._flush(state)
        except (IngestionError, StorageError) as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.exception("Ingestion aborted after %d rows", rows_seen)
            return failed_report(str(e), elapsed_ms)

        for offer, error in tx.rejected:
            self._drop(state.written[offer.identity], error, state)
        if state.suspect_names > self._max_failures:
            logger.warning(
                "Possible product name problems in %d rows (first %d logged)",
                state.suspect_names,
                self._max_failures,
            )

        report = state.report
        report.elapsed_ms = int((time.monotonic() - start) * 1000)
        report.message = _summary_message(report)
        logger.info(
            "Consolidation completed. Total: %d, New: %d, Updated: %d, "
            "Unchanged: %d, Skipped duplicates in file: %d, Failed: %d, "
            "Suppliers: %d, Time: %d ms",
            state.rows_seen,
            report.new,
            report.updated,
            report.unchanged,
            report.skipped,
            report.failed,
            len(state.registry),
            report.elapsed_ms,
        )
        return report

    def _evaluate_row(
        self, row: NormalizedRow, ordinal: int, state: _BatchState
    ) -> RowOutcome:
        """Decide what to do with one row. Touches the store only for valid, first-seen rows."""
        row_number = row.row_number if row.row_number is not None else ordinal
        supplier_key = self._key_rule(row)
        barcode = _clean(row.barcode)

        problem = _validate(supplier_key, barcode)
        if problem:
            return RowOutcome(
                row_number=row_number,
                status=OfferStatus.FAILED,
                message=f"Row {row_number}: {problem}",
            )

        dup_key = offer_identity(supplier_key, barcode)
        if dup_key in state.seen:
            return RowOutcome(
                row_number=row_number,
                status=OfferStatus.DUPLICATE,
                message=(
                    f"Row {row_number}: supplier {supplier_key}, "
                    f"product {_clean(row.product_name) or 'N/A'}, barcode {barcode}"
                ),
            )
        state.seen.add(dup_key)

        supplier = state.registry.resolve(
            supplier_key, display_name=_clean(row.supplier_name)
        )
        candidate = {
            "external_code": _clean(row.external_code),
            "product_name": _clean(row.product_name),
            "price": row.price if row.price is not None else 0.0,
            "quantity": row.quantity if row.quantity is not None else 0,
        }
        if _suspect_name(supplier, candidate["product_name"]):
            state.suspect_names += 1
            if state.suspect_names <= self._max_failures:
                logger.warning(
                    "Possible product name problem: supplier=%s, barcode=%s, product_name=%s",
                    supplier.display_name,
                    barcode,
                    candidate["product_name"],
                )

        existing = state.tx.find_offer(supplier_key, barcode)
        if existing is None:
            return RowOutcome(
                row_number=row_number,
                status=OfferStatus.NEW,
                offer=Offer(supplier=supplier, barcode=barcode, **candidate),
            )

        changes = changed_fields(existing, candidate)
        if not changes:
            return RowOutcome(row_number=row_number, status=OfferStatus.UNCHANGED)

        logger.debug(
            "Offer %s/%s changed: %s", supplier_key, barcode, ", ".join(changes)
        )
        return RowOutcome(
            row_number=row_number,
            status=OfferStatus.UPDATED,
            offer=existing.model_copy(update={"supplier": supplier, **candidate}),
        )

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _record(self, outcome: RowOutcome, state: _BatchState) -> None:
        report = state.report
        if outcome.status is OfferStatus.NEW:
            report.new += 1
        elif outcome.status is OfferStatus.UPDATED:
            report.updated += 1
        elif outcome.status is OfferStatus.UNCHANGED:
            report.unchanged += 1
        elif outcome.status is OfferStatus.DUPLICATE:
            report.skipped += 1
            if len(report.duplicate_examples) < self._max_examples:
                report.duplicate_examples.append(outcome.message)
                logger.info("Duplicate example: %s", outcome.message)
        else:
            self._record_failure(outcome.message, state)

    def _record_failure(self, message: str, state: _BatchState) -> None:
        report = state.report
        report.failed += 1
        if report.failed <= self._max_failures:
            report.errors.append(message)
            logger.warning("Row rejected: %s", message)

    def _flush(self, state: _BatchState) -> None:
        if not state.buffer:
            return

        pending = state.buffer
        state.buffer = []
        state.tx.bulk_upsert_offers([o.offer for o in pending])
        for outcome in pending:
            state.written[outcome.offer.identity] = outcome

        logger.info(
            "Staged %d offers (%d rows read so far)", len(pending), state.rows_seen
        )

    def _drop(
        self, outcome: RowOutcome, error: StorageError, state: _BatchState
    ) -> None:
        report = state.report
        if outcome.status is OfferStatus.NEW:
            report.new -= 1
        else:
            report.updated -= 1
        offer = outcome.offer
        self._record_failure(
            f"Row {outcome.row_number}: could not save offer "
            f"{offer.supplier.key}/{offer.barcode}: {error}",
            state,
        )


def _validate(supplier_key: str | None, barcode: str | None) -> str | None:
    if not supplier_key:
        return "supplier is not specified"
    if not barcode:
        return "barcode is not specified"
    if not is_valid_barcode(barcode):
        return f"invalid barcode format: {barcode}"
    return None


def _suspect_name(supplier: Supplier, product_name: str | None) -> bool:
    return product_name is None or product_name.casefold() == supplier.display_name.casefold()


def _summary_message(report: ConsolidationReport) -> str:
    message = (
        f"Processed records: {report.processed} "
        f"(new {report.new}, updated {report.updated}, unchanged {report.unchanged}), "
        f"duplicates skipped in file: {report.skipped}, errors: {report.failed}. "
        f"Elapsed: {report.elapsed_ms} ms"
    )
    if report.duplicate_examples:
        message += ". Duplicate examples: " + "; ".join(report.duplicate_examples)
    return message


def failed_report(reason: str, elapsed_ms: int = 0) -> ConsolidationReport:
    """Report for a whole-file failure. Nothing was committed."""
    return ConsolidationReport(
        success=False,
        message=f"File processing failed: {reason}",
        elapsed_ms=elapsed_ms,
    )


def ingest_rows(
    store: CatalogStore,
    rows: Iterable[NormalizedRow],
    settings: OfferSettings | None = None,
) -> ConsolidationReport:
    """Consolidate rows with configuration taken from settings."""
    return OfferConsolidator.from_settings(store, settings or OfferSettings()).consolidate(
        rows
    )


def ingest_file(
    store: CatalogStore,
    content: bytes,
    filename: str,
    settings: OfferSettings | None = None,
) -> ConsolidationReport:
    """Read an uploaded supplier list and consolidate it.

    Never raises for bad input: an unreadable file or missing columns
    comes back as a report with success=False.
    """
    try:
        rows = read_supplier_rows(content, filename)
    except IngestionError as e:
        logger.error("Cannot read supplier list %s: %s", filename, e)
        return failed_report(str(e))
    return ingest_rows(store, rows, settings)
