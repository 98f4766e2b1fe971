"""Reading spend files (xlsx via openpyxl, csv via the csv module).

Spend extracts are loosely formatted. Each data sheet carries one payment per
row with buyer, payment date, supplier and amount columns; the columns are found
by header keywords, falling back to the positional layout
``buyer | date | supplier | amount``.
"""

from __future__ import annotations

import csv
import hashlib
import io
import json
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

import openpyxl

# Sheets that describe the publisher rather than list payments.
METADATA_SHEET_NAMES = frozenset({"trusts", "metadata", "notes", "readme", "contents"})

_HEADER_KEYWORDS: dict[str, tuple[str, ...]] = {
    "buyer": (
        "trust", "organisation", "organisation name", "body", "body name",
        "department", "council", "buyer", "entity", "authority",
    ),
    "date": ("date", "payment date", "paid date", "transaction date", "period"),
    "supplier": ("supplier", "supplier name", "vendor", "payee", "merchant", "beneficiary"),
    "amount": ("amount", "value", "net amount", "total", "amount (£)", "£"),
}

_POSITIONAL = {"buyer": 0, "date": 1, "supplier": 2, "amount": 3}

_EXCEL_EPOCH = date(1899, 12, 30)

_MONTHS = {
    m: i
    for i, names in enumerate(
        [
            ("jan", "january"), ("feb", "february"), ("mar", "march"), ("apr", "april"),
            ("may",), ("jun", "june"), ("jul", "july"), ("aug", "august"),
            ("sep", "sept", "september"), ("oct", "october"), ("nov", "november"),
            ("dec", "december"),
        ],
        start=1,
    )
    for m in names
}


@dataclass(frozen=True)
class SheetRows:
    name: str
    rows: list[list[Any]]


@dataclass(frozen=True)
class ColumnMap:
    buyer: int
    date: int
    supplier: int
    amount: int
    # 0-based index of the header row, None when positional defaults apply.
    header_index: int | None = None


def clean_string(value: Any) -> str | None:
    if value is None:
        return None
    s = re.sub(r"\s+", " ", str(value)).strip()
    return s or None


def _cell_value(value: Any) -> Any:
    """Normalize an openpyxl cell value (whole floats -> int, str trimmed)."""

    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        return clean_string(value)
    return value


def _is_xlsx(content: bytes, file_name: str | None, content_type: str | None) -> bool:
    if content[:2] == b"PK":
        return True
    name = (file_name or "").lower()
    ctype = (content_type or "").lower()
    return name.endswith((".xlsx", ".xlsm")) or "spreadsheetml" in ctype


def read_sheets(
    content: bytes,
    *,
    file_name: str | None = None,
    content_type: str | None = None,
) -> list[SheetRows]:
    """Parse a spend file into sheets of normalized cell values.

    Raises:
        ValueError: the content is neither a readable workbook nor text CSV.
    """

    if _is_xlsx(content, file_name, content_type):
        try:
            wb = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
        except Exception as e:  # openpyxl raises a mix of zipfile/KeyError/InvalidFileException
            raise ValueError(f"unreadable workbook: {e}") from e
        try:
            sheets = []
            for ws in wb.worksheets:
                rows = [[_cell_value(v) for v in row] for row in ws.iter_rows(values_only=True)]
                sheets.append(SheetRows(name=ws.title, rows=rows))
            return sheets
        finally:
            wb.close()

    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = content.decode("latin-1")
    reader = csv.reader(io.StringIO(text))
    rows = [[clean_string(v) for v in row] for row in reader]
    base = (file_name or "sheet").rsplit("/", 1)[-1]
    return [SheetRows(name=base, rows=rows)]


def is_metadata_sheet(name: str) -> bool:
    return (name or "").strip().lower() in METADATA_SHEET_NAMES


def _header_role(cell: Any) -> str | None:
    label = (clean_string(cell) or "").lower()
    if not label:
        return None
    for role, keywords in _HEADER_KEYWORDS.items():
        if label in keywords:
            return role
    for role, keywords in _HEADER_KEYWORDS.items():
        if any(kw in label for kw in keywords if len(kw) > 3):
            return role
    return None


def detect_columns(rows: list[list[Any]], *, max_search: int = 15) -> ColumnMap:
    """Find buyer/date/supplier/amount columns from a header row.

    A header row must label at least supplier and amount; otherwise the
    positional layout is used and no row is treated as a header.
    """

    for i, row in enumerate(rows[:max_search]):
        found: dict[str, int] = {}
        for col, cell in enumerate(row):
            role = _header_role(cell)
            if role and role not in found:
                found[role] = col
        if "supplier" in found and "amount" in found:
            merged = {**_POSITIONAL, **found}
            return ColumnMap(header_index=i, **merged)
    return ColumnMap(**_POSITIONAL)


def cell_at(row: list[Any], index: int) -> Any:
    return row[index] if 0 <= index < len(row) else None


def is_blank_row(row: list[Any]) -> bool:
    return all(v is None or (isinstance(v, str) and not v.strip()) for v in row)


def parse_amount(value: Any) -> Decimal | None:
    """Parse an amount cell; handles '£', thousands separators and (negatives)."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            return Decimal(str(value)).quantize(Decimal("0.01"))
        except InvalidOperation:
            return None
    if isinstance(value, (date, datetime)):
        return None

    raw = clean_string(value)
    if not raw:
        return None
    cleaned = raw.replace("£", "").replace("Â", "").replace(",", "").strip()
    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1].strip()
    if not re.fullmatch(r"-?\d+(\.\d+)?|-?\.\d+", cleaned):
        return None
    amount = Decimal(cleaned).quantize(Decimal("0.01"))
    return -amount if negative else amount


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_payment_date(value: Any) -> date | None:
    """Parse a payment date cell.

    Accepts datetime/date cells, Excel serial numbers, ISO dates, d/m/Y, d-m-Y,
    d-Mon-Y, d Mon Y, Mon-YY / Mon YYYY and YY-Mon (first of month).
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        if 1 <= value < 2958466:
            return _EXCEL_EPOCH + timedelta(days=int(value))
        return None

    raw = clean_string(value)
    if not raw:
        return None
    s = raw.split("T")[0].split(" 00:00")[0]

    m = re.fullmatch(r"(\d{4})-(\d{1,2})-(\d{1,2})", s)
    if m:
        return _safe_date(int(m[1]), int(m[2]), int(m[3]))

    m = re.fullmatch(r"(\d{1,2})[/.-](\d{1,2})[/.-](\d{4}|\d{2})", s)
    if m:
        year = int(m[3]) + (2000 if len(m[3]) == 2 else 0)
        return _safe_date(year, int(m[2]), int(m[1]))

    m = re.fullmatch(r"(\d{1,2})[\s-]([A-Za-z]{3,9})[\s-](\d{4}|\d{2})", s)
    if m and m[2].lower() in _MONTHS:
        year = int(m[3]) + (2000 if len(m[3]) == 2 else 0)
        return _safe_date(year, _MONTHS[m[2].lower()], int(m[1]))

    m = re.fullmatch(r"(\d{2})-([A-Za-z]{3})", s)
    if m and m[2].lower() in _MONTHS:
        return _safe_date(2000 + int(m[1]), _MONTHS[m[2].lower()], 1)

    m = re.fullmatch(r"([A-Za-z]{3,9})[\s-](\d{4}|\d{2})", s)
    if m and m[1].lower() in _MONTHS:
        year = int(m[2]) + (2000 if len(m[2]) == 2 else 0)
        return _safe_date(year, _MONTHS[m[1].lower()], 1)

    if s.isdigit():
        return parse_payment_date(int(s))
    return None


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def raw_row(row: list[Any]) -> list[Any]:
    """JSON-safe copy of a row for skipped-row storage."""

    return [_jsonable(v) for v in row]


def row_hash(sheet_name: str, row_number: int, row: list[Any]) -> str:
    """Stable identity of a source row within an asset."""

    payload = json.dumps([sheet_name, row_number, raw_row(row)], default=str, ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
