"""Supplier key rules and the canonical offer identity.

Offers are identified by (supplier key, barcode). How the supplier key is
derived from a row is pluggable: some feeds carry a stable business code,
others only a display name.
"""

from __future__ import annotations

import unicodedata
from collections.abc import Callable
from enum import Enum

from .models import NormalizedRow

KeyRule = Callable[[NormalizedRow], "str | None"]


class SupplierKeyRule(str, Enum):
    """Built-in supplier key rules."""

    CODE = "code"
    NAME = "name"


def normalize_supplier_name(name: str | None) -> str | None:
    """Case-fold and collapse whitespace so cosmetic variants share a key.

    >>> normalize_supplier_name("  ООО  Ромашка ")
    'ооо ромашка'
    """
    if name is None:
        return None
    text = unicodedata.normalize("NFKC", name)
    text = " ".join(text.split()).casefold()
    return text or None


def key_from_code(row: NormalizedRow) -> str | None:
    if row.supplier_key is None:
        return None
    key = row.supplier_key.strip()
    return key or None


def key_from_name(row: NormalizedRow) -> str | None:
    return normalize_supplier_name(row.supplier_name or row.supplier_key)


_RULES: dict[SupplierKeyRule, KeyRule] = {
    SupplierKeyRule.CODE: key_from_code,
    SupplierKeyRule.NAME: key_from_name,
}


def resolve_key_rule(rule: SupplierKeyRule | str | KeyRule) -> KeyRule:
    """Turn a rule name or callable into a key function."""
    if callable(rule) and not isinstance(rule, str):
        return rule
    return _RULES[SupplierKeyRule(rule)]


def offer_identity(supplier_key: str, barcode: str) -> str:
    """Duplicate-detection key for one ingestion batch."""
    return f"{supplier_key}|{barcode}"
