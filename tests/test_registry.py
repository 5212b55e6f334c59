"""Tests for the batch-scoped SupplierRegistry."""

from offer_sentinel.models import Supplier
from offer_sentinel.registry import SupplierRegistry


class TestSupplierRegistry:
    def test_creates_missing_supplier_once(self, store):
        registry = SupplierRegistry(store)

        first = registry.resolve("S1", display_name="Alpha")
        second = registry.resolve("S1", display_name="Alpha")

        assert first == second == Supplier(key="S1", name="Alpha")
        assert registry.lookups == 1
        assert registry.writes == 1
        assert store.find_supplier("S1").name == "Alpha"
        assert "S1" in registry
        assert len(registry) == 1

    def test_missing_name_defaults_to_key(self, store):
        supplier = SupplierRegistry(store).resolve("S7")
        assert supplier.name == "S7"

    def test_existing_supplier_not_rewritten(self, store):
        store.save_supplier(Supplier(key="S1", name="Alpha"))
        store.write_calls = 0
        registry = SupplierRegistry(store)

        supplier = registry.resolve("S1", display_name="Alpha")

        assert supplier.name == "Alpha"
        assert registry.writes == 0
        assert store.write_calls == 0

    def test_existing_supplier_without_name_in_row(self, store):
        store.save_supplier(Supplier(key="S1", name="Alpha"))
        registry = SupplierRegistry(store)

        assert registry.resolve("S1").name == "Alpha"
        assert registry.writes == 0

    def test_display_name_refreshed_once(self, store):
        store.save_supplier(Supplier(key="S1", name="Alpha"))
        registry = SupplierRegistry(store)

        registry.resolve("S1", display_name="Alpha Trade LLC")
        registry.resolve("S1", display_name="Something else")

        assert registry.writes == 1
        assert store.find_supplier("S1").name == "Alpha Trade LLC"

    def test_registries_do_not_share_state(self, store):
        a = SupplierRegistry(store)
        b = SupplierRegistry(store)
        a.resolve("S1")
        assert "S1" not in b
