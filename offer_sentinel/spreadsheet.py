"""Spreadsheet adapter: uploaded xlsx / xls / csv -> core input rows.

Reads the first sheet with pandas, finds columns by exact
(case-insensitive) header match against a small alias table, and coerces
cells into NormalizedRow / AllocationRequest. No column guessing happens
here; a file without the required headers is rejected.
"""

from __future__ import annotations

import io
import logging
import math
import re
import zipfile
from decimal import Decimal, InvalidOperation

import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException

from .errors import SpreadsheetError
from .models import AllocationRequest, NormalizedRow

logger = logging.getLogger("offers.spreadsheet")

ALLOWED_EXTENSIONS = {".csv", ".xlsx", ".xls"}

# Header aliases, compared after strip + casefold + whitespace collapse.
SUPPLIER_KEY_HEADERS = (
    "сап поставщик",
    "sap поставщика",
    "код поставщика",
    "supplier code",
    "supplier key",
    "supplier",
)
SUPPLIER_NAME_HEADERS = ("наименование поставщика", "поставщик", "supplier name")
BARCODE_HEADERS = ("штрих код", "штрихкод", "шк", "barcode", "ean")
EXTERNAL_CODE_HEADERS = ("товар", "сап", "sap товара", "код товара", "external code", "sku")
PRODUCT_NAME_HEADERS = ("наименование", "наименование товара", "product name", "name")
PRICE_HEADERS = ("пц с ндс опт", "цена", "price")
QUANTITY_HEADERS = ("количество", "кол-во", "quantity", "qty")

# Header row is spreadsheet row 1, so data starts at row 2.
FIRST_DATA_ROW = 2

_NUMERIC = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


# ---------------------------------------------------------------------------
# File loading
# ---------------------------------------------------------------------------


def extension_of(filename: str | None) -> str:
    if not filename or "." not in filename:
        return ""
    return "." + filename.rsplit(".", 1)[-1].lower()


def _check_signature(content: bytes, ext: str) -> None:
    """Reject content that does not look like the claimed format."""
    if ext == ".xlsx" and not content.startswith(b"PK\x03\x04"):
        raise SpreadsheetError("Invalid XLSX file: not a valid Office Open XML format")
    if ext == ".xls" and not content.startswith(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"):
        raise SpreadsheetError("Invalid XLS file: not a valid legacy Excel format")
    if ext == ".csv":
        sample = content[:1000]
        non_printable = sum(1 for byte in sample if byte < 32 and byte not in (9, 10, 13))
        if non_printable > len(sample) * 0.1:
            raise SpreadsheetError("Invalid CSV file: contains binary content")


def _read_csv(content: bytes) -> pd.DataFrame:
    read_kwargs: dict = {"dtype": str, "keep_default_na": False}
    try:
        frame = pd.read_csv(io.BytesIO(content), encoding="utf-8-sig", **read_kwargs)
    except UnicodeDecodeError:
        frame = pd.read_csv(io.BytesIO(content), encoding="cp1251", **read_kwargs)

    # Semicolon-separated exports come back as a single column.
    if len(frame.columns) == 1 and ";" in str(frame.columns[0]):
        try:
            frame = pd.read_csv(
                io.BytesIO(content), sep=";", encoding="utf-8-sig", **read_kwargs
            )
        except UnicodeDecodeError:
            frame = pd.read_csv(io.BytesIO(content), sep=";", encoding="cp1251", **read_kwargs)
    return frame


def load_frame(content: bytes, filename: str) -> pd.DataFrame:
    """First sheet of the upload as an all-string DataFrame."""
    ext = extension_of(filename)
    if ext not in ALLOWED_EXTENSIONS:
        raise SpreadsheetError(
            f"Unsupported file type '{ext or filename}'. "
            f"Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
        )
    if not content:
        raise SpreadsheetError("File is empty")
    _check_signature(content, ext)

    try:
        if ext == ".csv":
            frame = _read_csv(content)
        else:
            frame = pd.read_excel(
                io.BytesIO(content), sheet_name=0, dtype=str, keep_default_na=False
            )
    except (ValueError, KeyError, OSError, zipfile.BadZipFile, InvalidFileException) as e:
        raise SpreadsheetError(f"Cannot read {filename}: {e}") from e

    if len(frame.columns) == 0:
        raise SpreadsheetError(f"{filename} has no header row")
    logger.info("Loaded %s: %d rows, columns %s", filename, len(frame), list(frame.columns))
    return frame


# ---------------------------------------------------------------------------
# Header matching
# ---------------------------------------------------------------------------


def _normalize_header(header: object) -> str:
    return " ".join(str(header).split()).casefold()


def find_column(columns, aliases: tuple[str, ...]) -> str | None:
    """First column whose header equals one of the aliases."""
    wanted = set(aliases)
    for column in columns:
        if _normalize_header(column) in wanted:
            return column
    return None


# ---------------------------------------------------------------------------
# Cell coercion
# ---------------------------------------------------------------------------


def cell_text(value: object) -> str | None:
    """Trimmed text; empty or missing cells become None."""
    if value is None:
        return None
    if not isinstance(value, str):
        if pd.isna(value):
            return None
        value = str(value)
    value = value.strip()
    return value or None


def coerce_barcode(value: object) -> str | None:
    """Barcode text, with numeric renderings turned back into digits.

    >>> coerce_barcode("4601234567890.0")
    '4601234567890'
    >>> coerce_barcode("4.60123456789E+12")
    '4601234567890'
    """
    text = cell_text(value)
    if text is None or text.isdigit() or not _NUMERIC.match(text):
        return text
    try:
        number = Decimal(text)
    except InvalidOperation:
        return text
    if number != number.to_integral_value() or number < 0:
        return text
    return str(int(number))


def _number(text: str | None) -> Decimal | None:
    if text is None:
        return None
    cleaned = text.replace("\xa0", "").replace(" ", "").replace(",", ".")
    try:
        number = Decimal(cleaned)
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def coerce_price(value: object) -> float:
    """Decimal-comma aware price; anything unparseable is 0.0."""
    number = _number(cell_text(value))
    if number is None:
        return 0.0
    price = float(number)
    return price if math.isfinite(price) else 0.0


def coerce_quantity(
    value: object, default: int | None = 0, *, whole: bool = False
) -> int | None:
    """Quantity as an int ("5" or "5.0").

    Fractional parts are truncated, unless ``whole`` is set, in which case
    a fractional value is treated as unparseable and ``default`` returned.
    """
    number = _number(cell_text(value))
    if number is None:
        return default
    if whole and number != number.to_integral_value():
        return default
    return int(number)


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------


def _records(frame: pd.DataFrame):
    for index, record in enumerate(frame.to_dict("records")):
        if all(cell_text(v) is None for v in record.values()):
            continue
        yield index + FIRST_DATA_ROW, record


def read_supplier_rows(content: bytes, filename: str) -> list[NormalizedRow]:
    """Parse a supplier offer list.

    Requires a supplier column (code or name) and a barcode column. When
    the file has no supplier code column, the supplier name doubles as
    the key.
    """
    frame = load_frame(content, filename)
    columns = list(frame.columns)

    key_col = find_column(columns, SUPPLIER_KEY_HEADERS)
    name_col = find_column(columns, SUPPLIER_NAME_HEADERS)
    barcode_col = find_column(columns, BARCODE_HEADERS)
    code_col = find_column(columns, EXTERNAL_CODE_HEADERS)
    product_col = find_column(columns, PRODUCT_NAME_HEADERS)
    price_col = find_column(columns, PRICE_HEADERS)
    quantity_col = find_column(columns, QUANTITY_HEADERS)

    missing = []
    if key_col is None and name_col is None:
        missing.append("supplier")
    if barcode_col is None:
        missing.append("barcode")
    if missing:
        raise SpreadsheetError(
            f"Required columns not found: {', '.join(missing)}. Headers in file: {columns}"
        )

    logger.info(
        "Detected columns - supplier key: %s, supplier name: %s, barcode: %s, "
        "external code: %s, product name: %s, price: %s, quantity: %s",
        key_col,
        name_col,
        barcode_col,
        code_col,
        product_col,
        price_col,
        quantity_col,
    )

    rows = []
    for row_number, record in _records(frame):
        supplier_name = cell_text(record[name_col]) if name_col is not None else None
        supplier_key = cell_text(record[key_col]) if key_col is not None else None
        rows.append(
            NormalizedRow(
                row_number=row_number,
                supplier_key=supplier_key or supplier_name,
                supplier_name=supplier_name,
                barcode=coerce_barcode(record[barcode_col]),
                external_code=cell_text(record[code_col]) if code_col is not None else None,
                product_name=cell_text(record[product_col]) if product_col is not None else None,
                price=coerce_price(record[price_col]) if price_col is not None else 0.0,
                quantity=coerce_quantity(record[quantity_col]) if quantity_col is not None else 0,
            )
        )
    return rows


def read_allocation_requests(content: bytes, filename: str) -> list[AllocationRequest]:
    """Parse a request list with barcode and quantity columns.

    Unparseable or fractional quantities come through as None so the
    allocator can report them per row.
    """
    frame = load_frame(content, filename)
    columns = list(frame.columns)
    barcode_col = find_column(columns, BARCODE_HEADERS)
    quantity_col = find_column(columns, QUANTITY_HEADERS)
    if barcode_col is None or quantity_col is None:
        raise SpreadsheetError(
            f"Required headers 'barcode' and 'quantity' not found. Headers in file: {columns}"
        )

    return [
        AllocationRequest(
            product_id=coerce_barcode(record[barcode_col]),
            quantity=coerce_quantity(record[quantity_col], default=None, whole=True),
            row_number=row_number,
        )
        for row_number, record in _records(frame)
    ]
