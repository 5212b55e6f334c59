"""Offer catalog persistence layer.

One current offer per (supplier key, barcode), plus the supplier records
the offers point at. The consolidator writes through this interface, the
allocator reads through it.

Uses the Supabase PostgREST API (same pattern as the analysis store).
Falls back to an in-memory store when Supabase is not configured.

Tables: suppliers(key, name), offers(supplier_key, barcode, external_code,
product_name, price, quantity) with a unique key on (supplier_key, barcode).
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

import httpx

from .models import Offer, Supplier

logger = logging.getLogger("offers.catalog_store")


class StorageError(Exception):
    """Raised when a persistence operation fails."""


class WriteConflict(StorageError):
    """Raised when a bulk write hits a unique-key violation."""


def _price_order(offer: Offer) -> tuple[float, str]:
    return (offer.price, offer.supplier.key)


def _chunks(items: list, size: int | None) -> Iterator[list]:
    if not size:
        yield items
        return
    for start in range(0, len(items), size):
        yield items[start : start + size]


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------


class CatalogStore(ABC):
    """Abstract interface for the offer catalog."""

    backend_name = "abstract"
    # Staged offer batches are split to at most this many rows per write.
    commit_chunk_size: int | None = None

    @abstractmethod
    def find_supplier(self, key: str) -> Supplier | None:
        """Point lookup of a supplier by key."""
        ...

    @abstractmethod
    def save_supplier(self, supplier: Supplier) -> Supplier:
        """Insert or update a supplier."""
        ...

    @abstractmethod
    def find_offer(self, supplier_key: str, barcode: str) -> Offer | None:
        """Point lookup of the current offer for (supplier key, barcode)."""
        ...

    @abstractmethod
    def bulk_upsert_offers(self, offers: list[Offer]) -> None:
        """Write many offers at once.

        Raises WriteConflict on a unique-key violation; nothing from the
        failed call is applied.
        """
        ...

    @abstractmethod
    def upsert_offer(self, offer: Offer) -> None:
        """Insert or, on a (supplier key, barcode) conflict, update one offer."""
        ...

    @abstractmethod
    def find_offers_for_product_ids(
        self, product_ids: Iterable[str]
    ) -> dict[str, list[Offer]]:
        """All offers for the given barcodes in one call.

        Grouped by barcode, each group ordered by price ascending.
        """
        ...

    @abstractmethod
    def all_offers(self) -> list[Offer]:
        """Every offer in the catalog (for exports)."""
        ...

    @abstractmethod
    def count_offers(self) -> int:
        ...

    def offer_exists(self, supplier_key: str, barcode: str) -> bool:
        return self.find_offer(supplier_key, barcode) is not None

    # ----- transactions -----

    @contextmanager
    def transaction(self) -> Iterator[CatalogTransaction]:
        """Unit of work: either every staged write lands or none does.

        Each call gets its own CatalogTransaction, so concurrent callers
        never see or discard each other's staged writes. Writes must go
        through the yielded object; it is sent to the store when the block
        exits cleanly and dropped when it raises.
        """
        tx = CatalogTransaction(self)
        try:
            yield tx
        except BaseException:
            logger.info(
                "%s: discarding %d staged offers", type(self).__name__, tx.offer_count
            )
            raise
        self._commit(tx)

    def _commit(self, tx: CatalogTransaction) -> None:
        self._write_staged(tx)

    def _write_staged(self, tx: CatalogTransaction) -> None:
        if tx.suppliers:
            self._write_suppliers(list(tx.suppliers.values()))
        for batch in tx.batches:
            for chunk in _chunks(batch, self.commit_chunk_size):
                self._write_offers(chunk, tx)
        logger.info(
            "%s: committed %d suppliers, %d offers (%d rejected)",
            type(self).__name__,
            len(tx.suppliers),
            tx.offer_count,
            len(tx.rejected),
        )

    def _write_suppliers(self, suppliers: list[Supplier]) -> None:
        for supplier in suppliers:
            self.save_supplier(supplier)

    def _write_offers(self, offers: list[Offer], tx: CatalogTransaction) -> None:
        """Bulk write; on a conflict, retry one offer at a time."""
        try:
            self.bulk_upsert_offers(offers)
        except WriteConflict as e:
            logger.warning(
                "Bulk write of %d offers conflicted (%s), retrying row by row",
                len(offers),
                e,
            )
            for offer in offers:
                try:
                    self.upsert_offer(offer)
                except StorageError as row_error:
                    logger.warning(
                        "Dropping offer %s/%s: %s",
                        offer.supplier.key,
                        offer.barcode,
                        row_error,
                    )
                    tx.rejected.append((offer, row_error))


class CatalogTransaction(CatalogStore):
    """Writes staged for one transaction() block.

    Point reads see staged records first, then the store. Bulk reads
    (find_offers_for_product_ids, all_offers, count_offers) see committed
    data only. Offers keep the batch grouping they were written with, so
    the store receives one bulk write per staged batch.
    """

    def __init__(self, store: CatalogStore) -> None:
        self._store = store
        self.suppliers: dict[str, Supplier] = {}
        self.batches: list[list[Offer]] = []
        self.rejected: list[tuple[Offer, StorageError]] = []
        self._staged: dict[tuple[str, str], Offer] = {}

    @property
    def backend_name(self) -> str:
        return self._store.backend_name

    @property
    def offer_count(self) -> int:
        return sum(len(batch) for batch in self.batches)

    def find_supplier(self, key: str) -> Supplier | None:
        if key in self.suppliers:
            return self.suppliers[key].model_copy()
        return self._store.find_supplier(key)

    def save_supplier(self, supplier: Supplier) -> Supplier:
        self.suppliers[supplier.key] = supplier.model_copy()
        return supplier

    def find_offer(self, supplier_key: str, barcode: str) -> Offer | None:
        staged = self._staged.get((supplier_key, barcode))
        if staged is not None:
            return staged.model_copy(deep=True)
        return self._store.find_offer(supplier_key, barcode)

    def bulk_upsert_offers(self, offers: list[Offer]) -> None:
        seen: set[tuple[str, str]] = set()
        for offer in offers:
            if offer.identity in seen:
                raise WriteConflict(f"duplicate key {offer.identity} in bulk write")
            seen.add(offer.identity)
        batch = [offer.model_copy(deep=True) for offer in offers]
        for offer in batch:
            self._staged[offer.identity] = offer
        if batch:
            self.batches.append(batch)

    def upsert_offer(self, offer: Offer) -> None:
        self.bulk_upsert_offers([offer])

    def find_offers_for_product_ids(
        self, product_ids: Iterable[str]
    ) -> dict[str, list[Offer]]:
        return self._store.find_offers_for_product_ids(product_ids)

    def all_offers(self) -> list[Offer]:
        return self._store.all_offers()

    def count_offers(self) -> int:
        return self._store.count_offers()

    @contextmanager
    def transaction(self) -> Iterator[CatalogTransaction]:
        # Nested blocks join the outer transaction.
        yield self


# ---------------------------------------------------------------------------
# In-memory implementation (dev/testing)
# ---------------------------------------------------------------------------


class InMemoryCatalogStore(CatalogStore):
    """Ephemeral in-memory catalog.

    Records are copied on the way in and out, so callers never alias
    stored state. A lock serializes writes and commits; a failed commit
    restores only the records it touched.
    """

    backend_name = "memory"

    def __init__(self) -> None:
        self._suppliers: dict[str, Supplier] = {}
        self._offers: dict[tuple[str, str], Offer] = {}
        self._lock = threading.RLock()
        self.write_calls = 0

    def _attach(self, offer: Offer) -> Offer:
        supplier = self._suppliers.get(offer.supplier.key, offer.supplier)
        return offer.model_copy(update={"supplier": supplier.model_copy()})

    def find_supplier(self, key: str) -> Supplier | None:
        supplier = self._suppliers.get(key)
        return supplier.model_copy() if supplier else None

    def save_supplier(self, supplier: Supplier) -> Supplier:
        with self._lock:
            self.write_calls += 1
            self._suppliers[supplier.key] = supplier.model_copy()
        return supplier

    def find_offer(self, supplier_key: str, barcode: str) -> Offer | None:
        offer = self._offers.get((supplier_key, barcode))
        return self._attach(offer) if offer else None

    def bulk_upsert_offers(self, offers: list[Offer]) -> None:
        with self._lock:
            self.write_calls += 1
            seen: set[tuple[str, str]] = set()
            for offer in offers:
                if offer.identity in seen:
                    raise WriteConflict(
                        f"duplicate key {offer.identity} in bulk write"
                    )
                seen.add(offer.identity)
            for offer in offers:
                self._offers[offer.identity] = offer.model_copy(deep=True)

    def upsert_offer(self, offer: Offer) -> None:
        with self._lock:
            self.write_calls += 1
            self._offers[offer.identity] = offer.model_copy(deep=True)

    def find_offers_for_product_ids(
        self, product_ids: Iterable[str]
    ) -> dict[str, list[Offer]]:
        wanted = set(product_ids)
        grouped: dict[str, list[Offer]] = defaultdict(list)
        with self._lock:
            for (_, barcode), offer in self._offers.items():
                if barcode in wanted:
                    grouped[barcode].append(self._attach(offer))
        for offers in grouped.values():
            offers.sort(key=_price_order)
        return dict(grouped)

    def all_offers(self) -> list[Offer]:
        with self._lock:
            return [self._attach(o) for _, o in sorted(self._offers.items())]

    def count_offers(self) -> int:
        return len(self._offers)

    def count_suppliers(self) -> int:
        return len(self._suppliers)

    def _commit(self, tx: CatalogTransaction) -> None:
        with self._lock:
            journal_suppliers = {key: self._suppliers.get(key) for key in tx.suppliers}
            journal_offers = {
                offer.identity: self._offers.get(offer.identity)
                for batch in tx.batches
                for offer in batch
            }
            try:
                self._write_staged(tx)
            except BaseException:
                _restore(self._suppliers, journal_suppliers)
                _restore(self._offers, journal_offers)
                logger.info("InMemoryCatalogStore: transaction rolled back")
                raise


def _restore(records: dict, journal: dict) -> None:
    for key, previous in journal.items():
        if previous is None:
            records.pop(key, None)
        else:
            records[key] = previous


# ---------------------------------------------------------------------------
# Supabase implementation (production)
# ---------------------------------------------------------------------------


class SupabaseCatalogStore(CatalogStore):
    """Persistent catalog using the Supabase PostgREST API.

    PostgREST cannot hold a transaction open across requests, so
    ``transaction()`` stages writes locally and sends them when the block
    exits cleanly: suppliers in one request, then offers in chunks.

    Bulk reads are split into chunks of ``read_chunk_size`` barcodes and
    paged ``page_size`` rows at a time, since PostgREST caps a single
    response at its ``max_rows`` setting.
    """

    backend_name = "supabase"
    SUPPLIERS = "suppliers"
    OFFERS = "offers"
    OFFER_SELECT = (
        "supplier_key,barcode,external_code,product_name,price,quantity,"
        "supplier:suppliers(key,name)"
    )

    def __init__(
        self,
        url: str,
        service_key: str,
        *,
        commit_chunk_size: int = 1000,
        page_size: int = 1000,
        read_chunk_size: int = 200,
    ) -> None:
        self._rest_url = f"{url}/rest/v1"
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
        }
        self.commit_chunk_size = commit_chunk_size
        self._page_size = page_size
        self._read_chunk_size = read_chunk_size
        logger.info("SupabaseCatalogStore: initialized with %s", url)

    def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict | None = None,
        json_data: dict | list | None = None,
        extra_headers: dict | None = None,
    ) -> httpx.Response:
        headers = {**self._headers, **(extra_headers or {})}
        try:
            return httpx.request(
                method,
                f"{self._rest_url}/{table}",
                headers=headers,
                params=params,
                json=json_data,
                timeout=30.0,
            )
        except httpx.HTTPError as e:
            raise StorageError(f"SupabaseCatalogStore: {method} {table} failed: {e}") from e

    def _check(self, resp: httpx.Response, action: str) -> None:
        if resp.status_code in (200, 201, 204, 206):
            return
        logger.error(
            "SupabaseCatalogStore: %s failed (%s): %s",
            action,
            resp.status_code,
            resp.text,
        )
        if resp.status_code == 409:
            raise WriteConflict(f"{action} conflict: {resp.text}")
        raise StorageError(f"{action} failed ({resp.status_code}): {resp.text}")

    def _select_all(self, table: str, params: dict, action: str) -> list[dict]:
        """Every row matching params, fetched page by page."""
        rows: list[dict] = []
        offset = 0
        while True:
            resp = self._request(
                "GET",
                table,
                params={**params, "limit": str(self._page_size), "offset": str(offset)},
            )
            self._check(resp, action)
            page = resp.json()
            rows.extend(page)
            if len(page) < self._page_size:
                return rows
            offset += self._page_size

    @staticmethod
    def _offer_from_row(row: dict) -> Offer:
        supplier = row.get("supplier") or {"key": row["supplier_key"]}
        return Offer(
            supplier=Supplier(key=supplier["key"], name=supplier.get("name")),
            barcode=row["barcode"],
            external_code=row.get("external_code"),
            product_name=row.get("product_name"),
            price=row.get("price") or 0.0,
            quantity=row.get("quantity") or 0,
        )

    @staticmethod
    def _offer_to_row(offer: Offer) -> dict:
        return {
            "supplier_key": offer.supplier.key,
            "barcode": offer.barcode,
            "external_code": offer.external_code,
            "product_name": offer.product_name,
            "price": offer.price,
            "quantity": offer.quantity,
        }

    # ----- suppliers -----

    def find_supplier(self, key: str) -> Supplier | None:
        resp = self._request(
            "GET", self.SUPPLIERS, params={"key": f"eq.{key}", "limit": "1"}
        )
        self._check(resp, "find_supplier")
        rows = resp.json()
        return Supplier(**rows[0]) if rows else None

    def save_supplier(self, supplier: Supplier) -> Supplier:
        self._write_suppliers([supplier])
        return supplier

    def _write_suppliers(self, suppliers: list[Supplier]) -> None:
        resp = self._request(
            "POST",
            self.SUPPLIERS,
            params={"on_conflict": "key"},
            json_data=[s.model_dump() for s in suppliers],
            extra_headers={"Prefer": "resolution=merge-duplicates"},
        )
        self._check(resp, "save_supplier")

    # ----- offers -----

    def find_offer(self, supplier_key: str, barcode: str) -> Offer | None:
        resp = self._request(
            "GET",
            self.OFFERS,
            params={
                "supplier_key": f"eq.{supplier_key}",
                "barcode": f"eq.{barcode}",
                "select": self.OFFER_SELECT,
                "limit": "1",
            },
        )
        self._check(resp, "find_offer")
        rows = resp.json()
        return self._offer_from_row(rows[0]) if rows else None

    def bulk_upsert_offers(self, offers: list[Offer]) -> None:
        resp = self._request(
            "POST",
            self.OFFERS,
            params={"on_conflict": "supplier_key,barcode"},
            json_data=[self._offer_to_row(o) for o in offers],
            extra_headers={"Prefer": "resolution=merge-duplicates"},
        )
        self._check(resp, "bulk_upsert_offers")

    def upsert_offer(self, offer: Offer) -> None:
        self.bulk_upsert_offers([offer])

    def find_offers_for_product_ids(
        self, product_ids: Iterable[str]
    ) -> dict[str, list[Offer]]:
        ids = sorted(set(product_ids))
        grouped: dict[str, list[Offer]] = defaultdict(list)
        for chunk in _chunks(ids, self._read_chunk_size):
            if not chunk:
                continue
            rows = self._select_all(
                self.OFFERS,
                {
                    "barcode": f"in.({','.join(chunk)})",
                    "select": self.OFFER_SELECT,
                    "order": "barcode.asc,price.asc,supplier_key.asc",
                },
                "find_offers_for_product_ids",
            )
            for row in rows:
                offer = self._offer_from_row(row)
                grouped[offer.barcode].append(offer)
        return dict(grouped)

    def all_offers(self) -> list[Offer]:
        rows = self._select_all(
            self.OFFERS,
            {"select": self.OFFER_SELECT, "order": "supplier_key.asc,barcode.asc"},
            "all_offers",
        )
        return [self._offer_from_row(row) for row in rows]

    def count_offers(self) -> int:
        resp = self._request(
            "GET",
            self.OFFERS,
            params={"select": "barcode", "limit": "1"},
            extra_headers={"Prefer": "count=exact"},
        )
        self._check(resp, "count_offers")
        # PostgREST returns count in Content-Range header
        content_range = resp.headers.get("Content-Range", "")
        if "/" in content_range:
            total_str = content_range.split("/")[-1]
            if total_str != "*":
                return int(total_str)
        return len(resp.json())


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_catalog_store(
    supabase_url: str = "",
    supabase_service_key: str = "",
) -> CatalogStore:
    """Create a catalog store.

    Returns SupabaseCatalogStore if credentials are provided,
    InMemoryCatalogStore otherwise.
    """
    if supabase_url and supabase_service_key:
        logger.info("Using Supabase-backed catalog store")
        return SupabaseCatalogStore(supabase_url, supabase_service_key)

    logger.info("Using in-memory catalog store (non-persistent)")
    return InMemoryCatalogStore()
