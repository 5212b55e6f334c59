"""
Pytest fixtures shared across the offer_sentinel test suite.

Provides fresh in-memory catalog stores and spreadsheet bytes built with
pandas, so no test touches a real database or file on disk.
"""

import io

import pandas as pd
import pytest

from offer_sentinel.catalog_store import InMemoryCatalogStore

# =============================================================================
# STORE FIXTURES
# =============================================================================


@pytest.fixture
def store() -> InMemoryCatalogStore:
    """Fresh in-memory catalog."""
    return InMemoryCatalogStore()


# =============================================================================
# SPREADSHEET FIXTURES
# =============================================================================


def frame_to_xlsx(frame: pd.DataFrame) -> bytes:
    buffer = io.BytesIO()
    frame.to_excel(buffer, index=False)
    return buffer.getvalue()


def frame_to_csv(frame: pd.DataFrame) -> bytes:
    return frame.to_csv(index=False).encode("utf-8")


@pytest.fixture
def supplier_frame() -> pd.DataFrame:
    """Two suppliers quoting the same barcode, plus one single-source item."""
    return pd.DataFrame(
        {
            "Supplier code": ["S1", "S2", "S1"],
            "Supplier name": ["Alpha Trade", "Beta Foods", "Alpha Trade"],
            "Barcode": ["4601234567890", "4601234567890", "4607000000011"],
            "Product name": ["Green tea 100g", "Green tea 100g", "Black tea 50g"],
            "Price": ["10", "8", "3,5"],
            "Quantity": ["5", "3", "40"],
        }
    )


@pytest.fixture
def supplier_xlsx(supplier_frame) -> bytes:
    return frame_to_xlsx(supplier_frame)


@pytest.fixture
def request_csv() -> bytes:
    frame = pd.DataFrame(
        {"Barcode": ["4601234567890", "abc", "4609999999999"], "Quantity": ["6", "1", "2"]}
    )
    return frame_to_csv(frame)
