"""Tests for the offer catalog stores.

Covers:
    - InMemoryCatalogStore CRUD, grouping and ordering
    - transaction() staging, rollback, nesting and independence
    - SupabaseCatalogStore request shapes, paging and error mapping (httpx mocked)
    - create_catalog_store factory
"""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from offer_sentinel.catalog_store import (
    InMemoryCatalogStore,
    StorageError,
    SupabaseCatalogStore,
    WriteConflict,
    create_catalog_store,
)
from offer_sentinel.models import Offer, Supplier


def _make_offer(key="S1", barcode="4601234567890", price=10.0, quantity=5, name=None, **extra):
    return Offer(
        supplier=Supplier(key=key, name=name or key),
        barcode=barcode,
        price=price,
        quantity=quantity,
        **extra,
    )


def _response(status_code=200, json_data=None, headers=None, text=""):
    resp = MagicMock(spec=httpx.Response)
    resp.status_code = status_code
    resp.json.return_value = json_data if json_data is not None else []
    resp.headers = headers or {}
    resp.text = text
    return resp


# ---------------------------------------------------------------------------
# InMemoryCatalogStore
# ---------------------------------------------------------------------------


class TestInMemoryCatalogStore:
    def test_save_and_find_supplier(self, store):
        store.save_supplier(Supplier(key="S1", name="Alpha"))
        found = store.find_supplier("S1")
        assert found == Supplier(key="S1", name="Alpha")
        assert store.find_supplier("S2") is None

    def test_upsert_and_find_offer(self, store):
        store.save_supplier(Supplier(key="S1", name="Alpha"))
        store.upsert_offer(_make_offer(product_name="Tea"))

        found = store.find_offer("S1", "4601234567890")
        assert found is not None
        assert found.product_name == "Tea"
        assert found.supplier.name == "Alpha"
        assert store.offer_exists("S1", "4601234567890")
        assert not store.offer_exists("S2", "4601234567890")

    def test_returned_offers_are_copies(self, store):
        store.upsert_offer(_make_offer(quantity=5))
        found = store.find_offer("S1", "4601234567890")
        found.quantity = 999
        assert store.find_offer("S1", "4601234567890").quantity == 5

    def test_upsert_replaces_by_identity(self, store):
        store.upsert_offer(_make_offer(price=10.0))
        store.upsert_offer(_make_offer(price=12.0))
        assert store.count_offers() == 1
        assert store.find_offer("S1", "4601234567890").price == 12.0

    def test_bulk_upsert(self, store):
        store.bulk_upsert_offers(
            [_make_offer(key="S1"), _make_offer(key="S2"), _make_offer(barcode="4607000000011")]
        )
        assert store.count_offers() == 3
        assert store.write_calls == 1

    def test_bulk_upsert_duplicate_keys_conflict(self, store):
        with pytest.raises(WriteConflict):
            store.bulk_upsert_offers([_make_offer(price=1.0), _make_offer(price=2.0)])
        assert store.count_offers() == 0

    def test_find_offers_grouped_and_ordered(self, store):
        store.bulk_upsert_offers(
            [
                _make_offer(key="S1", price=10.0),
                _make_offer(key="S3", price=8.0),
                _make_offer(key="S2", price=8.0),
                _make_offer(key="S1", barcode="4607000000011", price=1.0),
                _make_offer(key="S1", barcode="4600000000000", price=1.0),
            ]
        )
        grouped = store.find_offers_for_product_ids(["4601234567890", "4607000000011", "4609999999999"])

        assert set(grouped) == {"4601234567890", "4607000000011"}
        assert [o.supplier.key for o in grouped["4601234567890"]] == ["S2", "S3", "S1"]

    def test_all_offers_sorted(self, store):
        store.bulk_upsert_offers([_make_offer(key="S2"), _make_offer(key="S1")])
        assert [o.supplier.key for o in store.all_offers()] == ["S1", "S2"]


class TestInMemoryTransaction:
    def test_commit_keeps_writes(self, store):
        with store.transaction() as tx:
            tx.save_supplier(Supplier(key="S1"))
            tx.upsert_offer(_make_offer())
            assert store.count_offers() == 0
        assert store.count_offers() == 1
        assert store.count_suppliers() == 1

    def test_staged_writes_visible_to_point_reads(self, store):
        with store.transaction() as tx:
            tx.save_supplier(Supplier(key="S1", name="Alpha"))
            tx.upsert_offer(_make_offer(price=7.0))
            assert tx.find_supplier("S1").name == "Alpha"
            assert tx.find_offer("S1", "4601234567890").price == 7.0
            assert store.find_offer("S1", "4601234567890") is None

    def test_rollback_on_error(self, store):
        store.upsert_offer(_make_offer(price=10.0))

        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.save_supplier(Supplier(key="S9"))
                tx.upsert_offer(_make_offer(price=99.0))
                tx.upsert_offer(_make_offer(key="S9"))
                raise RuntimeError("boom")

        assert store.count_offers() == 1
        assert store.find_offer("S1", "4601234567890").price == 10.0
        assert store.find_supplier("S9") is None

    def test_nested_blocks_join_outer(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                with tx.transaction() as inner:
                    assert inner is tx
                    inner.upsert_offer(_make_offer())
                raise RuntimeError("outer fails")
        assert store.count_offers() == 0

    def test_abort_keeps_other_transactions_writes(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction() as first:
                first.upsert_offer(_make_offer(key="A"))
                with store.transaction() as second:
                    second.upsert_offer(_make_offer(key="B"))
                raise RuntimeError("first fails")

        assert store.offer_exists("B", "4601234567890")
        assert not store.offer_exists("A", "4601234567890")

    def test_failed_commit_restores_touched_records(self, store):
        store.save_supplier(Supplier(key="S1", name="Old"))
        store.upsert_offer(_make_offer(price=10.0))

        with patch.object(store, "bulk_upsert_offers", side_effect=StorageError("disk full")):
            with pytest.raises(StorageError):
                with store.transaction() as tx:
                    tx.save_supplier(Supplier(key="S1", name="New"))
                    tx.save_supplier(Supplier(key="S2"))
                    tx.bulk_upsert_offers([_make_offer(price=1.0)])

        assert store.find_supplier("S1").name == "Old"
        assert store.find_supplier("S2") is None
        assert store.find_offer("S1", "4601234567890").price == 10.0

    def test_conflicting_batch_retried_row_by_row(self, store):
        upsert = store.upsert_offer

        def fail_one(offer):
            if offer.supplier.key == "S2":
                raise StorageError("value too long")
            upsert(offer)

        with patch.object(store, "bulk_upsert_offers", side_effect=WriteConflict("dup")), \
                patch.object(store, "upsert_offer", side_effect=fail_one):
            with store.transaction() as tx:
                tx.bulk_upsert_offers([_make_offer(key="S1"), _make_offer(key="S2")])

        assert [offer.supplier.key for offer, _ in tx.rejected] == ["S2"]
        assert store.offer_exists("S1", "4601234567890")
        assert not store.offer_exists("S2", "4601234567890")

    def test_duplicate_keys_in_staged_batch_conflict(self, store):
        with store.transaction() as tx:
            with pytest.raises(WriteConflict):
                tx.bulk_upsert_offers([_make_offer(price=1.0), _make_offer(price=2.0)])
        assert store.count_offers() == 0


# ---------------------------------------------------------------------------
# SupabaseCatalogStore
# ---------------------------------------------------------------------------


@pytest.fixture
def supabase():
    return SupabaseCatalogStore(
        "https://example.supabase.co",
        "service-key",
        commit_chunk_size=2,
        page_size=3,
        read_chunk_size=2,
    )


class TestSupabaseCatalogStore:
    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_find_supplier(self, mock_request, supabase):
        mock_request.return_value = _response(json_data=[{"key": "S1", "name": "Alpha"}])

        supplier = supabase.find_supplier("S1")

        assert supplier == Supplier(key="S1", name="Alpha")
        method, url = mock_request.call_args.args
        assert method == "GET"
        assert url == "https://example.supabase.co/rest/v1/suppliers"
        assert mock_request.call_args.kwargs["params"]["key"] == "eq.S1"
        headers = mock_request.call_args.kwargs["headers"]
        assert headers["apikey"] == "service-key"
        assert headers["Authorization"] == "Bearer service-key"

    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_find_offer_parses_embedded_supplier(self, mock_request, supabase):
        mock_request.return_value = _response(
            json_data=[
                {
                    "supplier_key": "S1",
                    "barcode": "4601234567890",
                    "external_code": "A-1",
                    "product_name": "Tea",
                    "price": 10.5,
                    "quantity": 4,
                    "supplier": {"key": "S1", "name": "Alpha"},
                }
            ]
        )

        offer = supabase.find_offer("S1", "4601234567890")

        assert offer.supplier.name == "Alpha"
        assert offer.price == 10.5
        assert offer.quantity == 4
        params = mock_request.call_args.kwargs["params"]
        assert params["supplier_key"] == "eq.S1"
        assert params["barcode"] == "eq.4601234567890"

    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_bulk_upsert_outside_transaction_posts(self, mock_request, supabase):
        mock_request.return_value = _response(status_code=201)

        supabase.bulk_upsert_offers([_make_offer(), _make_offer(key="S2")])

        assert mock_request.call_count == 1
        kwargs = mock_request.call_args.kwargs
        assert kwargs["params"] == {"on_conflict": "supplier_key,barcode"}
        assert kwargs["headers"]["Prefer"] == "resolution=merge-duplicates"
        assert [row["supplier_key"] for row in kwargs["json"]] == ["S1", "S2"]

    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_409_maps_to_write_conflict(self, mock_request, supabase):
        mock_request.return_value = _response(status_code=409, text="duplicate key")
        with pytest.raises(WriteConflict):
            supabase.upsert_offer(_make_offer())

    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_server_error_maps_to_storage_error(self, mock_request, supabase):
        mock_request.return_value = _response(status_code=500, text="oops")
        with pytest.raises(StorageError) as exc_info:
            supabase.find_supplier("S1")
        assert not isinstance(exc_info.value, WriteConflict)

    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_transport_error_maps_to_storage_error(self, mock_request, supabase):
        mock_request.side_effect = httpx.ConnectError("unreachable")
        with pytest.raises(StorageError):
            supabase.count_offers()

    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_find_offers_for_product_ids_single_call(self, mock_request, supabase):
        mock_request.return_value = _response(
            json_data=[
                {"supplier_key": "S2", "barcode": "4601234567890", "price": 8, "quantity": 3,
                 "supplier": {"key": "S2", "name": "Beta"}},
                {"supplier_key": "S1", "barcode": "4601234567890", "price": 10, "quantity": 5,
                 "supplier": {"key": "S1", "name": "Alpha"}},
            ]
        )

        grouped = supabase.find_offers_for_product_ids(["4601234567890", "4607000000011"])

        assert mock_request.call_count == 1
        params = mock_request.call_args.kwargs["params"]
        assert params["barcode"] == "in.(4601234567890,4607000000011)"
        assert params["order"] == "barcode.asc,price.asc,supplier_key.asc"
        assert [o.supplier.key for o in grouped["4601234567890"]] == ["S2", "S1"]

    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_find_offers_for_no_ids_skips_request(self, mock_request, supabase):
        assert supabase.find_offers_for_product_ids([]) == {}
        mock_request.assert_not_called()

    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_count_offers_reads_content_range(self, mock_request, supabase):
        mock_request.return_value = _response(
            json_data=[{"barcode": "4601234567890"}],
            headers={"Content-Range": "0-0/42"},
        )
        assert supabase.count_offers() == 42


class TestSupabasePaging:
    @staticmethod
    def _row(key, barcode="4601234567890", price=10):
        return {"supplier_key": key, "barcode": barcode, "price": price, "quantity": 1,
                "supplier": {"key": key, "name": key}}

    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_all_offers_reads_every_page(self, mock_request, supabase):
        mock_request.side_effect = [
            _response(json_data=[self._row("S1"), self._row("S2"), self._row("S3")]),
            _response(json_data=[self._row("S4")]),
        ]

        offers = supabase.all_offers()

        assert [o.supplier.key for o in offers] == ["S1", "S2", "S3", "S4"]
        offsets = [c.kwargs["params"]["offset"] for c in mock_request.call_args_list]
        assert offsets == ["0", "3"]
        assert all(c.kwargs["params"]["limit"] == "3" for c in mock_request.call_args_list)

    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_full_last_page_needs_one_empty_read(self, mock_request, supabase):
        mock_request.side_effect = [
            _response(json_data=[self._row("S1"), self._row("S2"), self._row("S3")]),
            _response(json_data=[]),
        ]
        assert len(supabase.all_offers()) == 3
        assert mock_request.call_count == 2

    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_find_offers_pages_within_a_chunk(self, mock_request, supabase):
        mock_request.side_effect = [
            _response(json_data=[self._row("S1", price=1), self._row("S2", price=2),
                                 self._row("S3", price=3)]),
            _response(json_data=[self._row("S4", price=4)]),
        ]

        grouped = supabase.find_offers_for_product_ids(["4601234567890"])

        assert [o.supplier.key for o in grouped["4601234567890"]] == ["S1", "S2", "S3", "S4"]
        assert mock_request.call_count == 2

    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_find_offers_splits_barcodes_into_chunks(self, mock_request, supabase):
        mock_request.side_effect = [
            _response(json_data=[self._row("S1", barcode="4600000000001")]),
            _response(json_data=[self._row("S1", barcode="4600000000003")]),
        ]

        grouped = supabase.find_offers_for_product_ids(
            ["4600000000003", "4600000000001", "4600000000002"]
        )

        filters = [c.kwargs["params"]["barcode"] for c in mock_request.call_args_list]
        assert filters == [
            "in.(4600000000001,4600000000002)",
            "in.(4600000000003)",
        ]
        assert set(grouped) == {"4600000000001", "4600000000003"}


class TestSupabaseTransaction:
    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_writes_are_staged_until_exit(self, mock_request, supabase):
        mock_request.return_value = _response(status_code=201)

        with supabase.transaction() as tx:
            tx.save_supplier(Supplier(key="S1", name="Alpha"))
            tx.bulk_upsert_offers(
                [_make_offer(), _make_offer(barcode="4607000000011"), _make_offer(barcode="4600000000000")]
            )
            mock_request.assert_not_called()
            # Staged state is visible to point reads inside the block.
            assert tx.find_supplier("S1").name == "Alpha"
            assert tx.find_offer("S1", "4607000000011") is not None

        # suppliers, then offers in chunks of 2
        tables = [c.args[1].rsplit("/", 1)[-1] for c in mock_request.call_args_list]
        assert tables == ["suppliers", "offers", "offers"]

    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_aborted_block_sends_nothing(self, mock_request, supabase):
        with pytest.raises(RuntimeError):
            with supabase.transaction() as tx:
                tx.save_supplier(Supplier(key="S1"))
                tx.upsert_offer(_make_offer())
                raise RuntimeError("abort")

        mock_request.assert_not_called()

    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_aborted_block_does_not_discard_another_block(self, mock_request, supabase):
        mock_request.return_value = _response(status_code=201)

        with pytest.raises(RuntimeError):
            with supabase.transaction() as first:
                first.upsert_offer(_make_offer(key="A"))
                with supabase.transaction() as second:
                    second.upsert_offer(_make_offer(key="B"))
                raise RuntimeError("first fails")

        posted = [row["supplier_key"] for c in mock_request.call_args_list for row in c.kwargs["json"]]
        assert posted == ["B"]

    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_conflicting_chunk_retried_row_by_row(self, mock_request, supabase):
        def respond(method, url, **kwargs):
            rows = kwargs["json"]
            if len(rows) > 1:
                return _response(status_code=409, text="duplicate key")
            if rows[0]["barcode"] == "4607000000011":
                return _response(status_code=400, text="value too long")
            return _response(status_code=201)

        mock_request.side_effect = respond

        with supabase.transaction() as tx:
            tx.bulk_upsert_offers([_make_offer(), _make_offer(barcode="4607000000011")])

        sizes = [len(c.kwargs["json"]) for c in mock_request.call_args_list]
        assert sizes == [2, 1, 1]
        assert [offer.barcode for offer, _ in tx.rejected] == ["4607000000011"]

    @patch("offer_sentinel.catalog_store.httpx.request")
    def test_each_block_starts_with_an_empty_stage(self, mock_request, supabase):
        mock_request.return_value = _response(status_code=201)
        with supabase.transaction() as tx:
            tx.upsert_offer(_make_offer())

        mock_request.reset_mock()
        mock_request.return_value = _response(json_data=[])
        with supabase.transaction() as tx:
            assert tx.find_offer("S1", "4601234567890") is None
        assert mock_request.call_count == 1


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestFactory:
    def test_memory_without_credentials(self):
        assert isinstance(create_catalog_store(), InMemoryCatalogStore)
        assert isinstance(create_catalog_store("https://x.supabase.co", ""), InMemoryCatalogStore)

    def test_supabase_with_credentials(self):
        store = create_catalog_store("https://x.supabase.co", "key")
        assert isinstance(store, SupabaseCatalogStore)
        assert store.backend_name == "supabase"
