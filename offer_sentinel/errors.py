"""Whole-file ingestion errors.

Row-level problems are reported as RowOutcome values, never raised.
Storage failures live with the store (catalog_store.StorageError).
"""

from __future__ import annotations


class IngestionError(Exception):
    """A problem that makes an entire uploaded file unusable."""


class SpreadsheetError(IngestionError):
    """Unreadable file, unsupported format, or required columns missing."""
