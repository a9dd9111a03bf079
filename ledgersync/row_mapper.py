"""Mapping between transaction records and spreadsheet rows.

The sheet layout is fixed: one header row followed by one transaction per
row.  Every function in this module is pure; decoding never raises, blank or
unreadable cells simply decode to the field default.
"""
from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ledgersync.models import CENTS, PartialRecord, SheetRow, TransactionRecord


class ColumnType(Enum):
    TEXT = "TEXT"
    AMOUNT = "AMOUNT"
    DATE = "DATE"
    SCORE = "SCORE"
    BOOLEAN = "BOOLEAN"


@dataclass(frozen=True)
class SheetColumn:
    field: str
    header: str
    type: ColumnType = ColumnType.TEXT


COLUMNS: Tuple[SheetColumn, ...] = (
    SheetColumn("date", "Date", ColumnType.DATE),
    SheetColumn("description", "Description"),
    SheetColumn("amount", "Amount", ColumnType.AMOUNT),
    SheetColumn("category", "Category"),
    SheetColumn("subcategory", "Subcategory"),
    SheetColumn("confidence_score", "Confidence", ColumnType.SCORE),
    SheetColumn("user_confirmed", "Confirmed", ColumnType.BOOLEAN),
    SheetColumn("user_notes", "Notes"),
    SheetColumn("transaction_id", "Transaction ID"),
)

HEADERS: List[str] = [column.header for column in COLUMNS]
ID_COLUMN = "transaction_id"
SYNC_FIELDS: Tuple[str, ...] = tuple(column.field for column in COLUMNS if column.field != ID_COLUMN)
# Fields a spreadsheet edit may change locally.
WRITABLE_FIELDS: Tuple[str, ...] = ("category", "subcategory", "user_confirmed", "user_notes")
# Fields owned by ingestion and categorisation.
PROTECTED_FIELDS: Tuple[str, ...] = tuple(name for name in SYNC_FIELDS if name not in WRITABLE_FIELDS)

_COLUMN_BY_FIELD: Dict[str, SheetColumn] = {column.field: column for column in COLUMNS}
_CURRENCY_RE = re.compile(r"[$€£¥\s,]")
_TRUE_VALUES = {"true", "yes", "y", "1", "x", "✓"}
_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%m/%d/%Y", "%m/%d/%y", "%d.%m.%Y")

RecordLike = Union[TransactionRecord, PartialRecord]


# ---------------------------------------------------------------------------
# Cell codecs
# ---------------------------------------------------------------------------
def parse_amount(value: Optional[str]) -> Optional[Decimal]:
    """Parse a currency cell such as ``$1,234.50`` or ``(12.00)``."""

    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    negative = text.startswith("(") and text.endswith(")")
    if negative:
        text = text[1:-1]
    text = _CURRENCY_RE.sub("", text)
    if not text:
        return None
    try:
        amount = Decimal(text)
        if not amount.is_finite():
            return None
        if negative:
            amount = -abs(amount)
        # more than 28 significant digits overflows the context precision
        return amount.quantize(CENTS)
    except InvalidOperation:
        return None


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parse a date cell, returning ``None`` when it is not recognisable."""

    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def _parse_score(text: str) -> Optional[float]:
    text = text.strip()
    if not text:
        return None
    percent = text.endswith("%")
    if percent:
        text = text[:-1].strip()
    try:
        score = float(text)
    except ValueError:
        return None
    if percent:
        score /= 100.0
    if not 0.0 <= score <= 1.0:
        return None
    return round(score, 2)


def format_cell(value: Any, column_type: ColumnType) -> str:
    if value is None:
        return "FALSE" if column_type is ColumnType.BOOLEAN else ""
    if column_type is ColumnType.AMOUNT:
        return f"{Decimal(value).quantize(CENTS):.2f}"
    if column_type is ColumnType.DATE:
        return value.isoformat() if isinstance(value, date) else str(value).strip()
    if column_type is ColumnType.SCORE:
        return f"{float(value):.2f}"
    if column_type is ColumnType.BOOLEAN:
        return "TRUE" if value else "FALSE"
    return str(value).strip()


def parse_cell(value: Optional[str], column_type: ColumnType) -> Any:
    text = "" if value is None else str(value)
    if column_type is ColumnType.AMOUNT:
        return parse_amount(text)
    if column_type is ColumnType.DATE:
        return parse_date(text)
    if column_type is ColumnType.SCORE:
        return _parse_score(text)
    if column_type is ColumnType.BOOLEAN:
        return text.strip().lower() in _TRUE_VALUES
    text = text.strip()
    return text or None


# ---------------------------------------------------------------------------
# Record <-> row
# ---------------------------------------------------------------------------
def _field_value(record: RecordLike, name: str) -> Any:
    if name == ID_COLUMN and isinstance(record, TransactionRecord):
        return record.id
    return getattr(record, name)


def encode_fields(record: RecordLike) -> Dict[str, str]:
    """Return the encoded cell text of every sync-relevant field."""

    encoded: Dict[str, str] = {}
    for name in SYNC_FIELDS:
        column = _COLUMN_BY_FIELD[name]
        encoded[name] = format_cell(_field_value(record, name), column.type)
    return encoded


def to_row(record: RecordLike, row_index: Optional[int] = None) -> SheetRow:
    """Encode ``record`` as a sheet row in :data:`HEADERS` order."""

    if row_index is None and isinstance(record, TransactionRecord) and record.remote_row_ref:
        row_index = record.remote_row_ref.row_index
    if row_index is None and isinstance(record, PartialRecord):
        row_index = record.row_index
    cells = [format_cell(_field_value(record, column.field), column.type) for column in COLUMNS]
    return SheetRow(cells=tuple(cells), row_index=row_index)


def from_row(row: SheetRow) -> PartialRecord:
    """Decode a sheet row. Short rows are padded; extra cells are ignored."""

    cells = list(row.cells[: len(COLUMNS)])
    cells.extend([""] * (len(COLUMNS) - len(cells)))
    values = {column.field: parse_cell(cell, column.type) for column, cell in zip(COLUMNS, cells)}
    return PartialRecord(row_index=row.row_index, **values)


def from_values(values: Mapping[str, str], row_index: Optional[int] = None) -> PartialRecord:
    """Decode a header -> cell mapping such as a stored conflict snapshot."""

    return from_row(SheetRow(cells=tuple(values.get(header, "") for header in HEADERS), row_index=row_index))


def values_by_header(record: RecordLike) -> Dict[str, str]:
    row = to_row(record)
    return dict(zip(HEADERS, row.cells))


def fingerprint(record: RecordLike) -> str:
    """Return a stable SHA-256 hash over the sync-relevant fields."""

    payload = json.dumps(encode_fields(record), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def match_key(record: RecordLike) -> Tuple[str, str, str]:
    """Key used to pair a never-synced record with an existing sheet row."""

    description = " ".join((record.description or "").lower().split())
    encoded = encode_fields(record)
    return description, encoded["date"], encoded["amount"]


def diff_fields(local: RecordLike, remote: RecordLike, fields: Sequence[str] = SYNC_FIELDS) -> Dict[str, Tuple[str, str]]:
    """Return ``{field: (local_cell, remote_cell)}`` for every differing field."""

    left = encode_fields(local)
    right = encode_fields(remote)
    return {name: (left[name], right[name]) for name in fields if left[name] != right[name]}


__all__ = [
    "COLUMNS",
    "ColumnType",
    "HEADERS",
    "PROTECTED_FIELDS",
    "SYNC_FIELDS",
    "SheetColumn",
    "WRITABLE_FIELDS",
    "diff_fields",
    "encode_fields",
    "fingerprint",
    "format_cell",
    "from_row",
    "from_values",
    "match_key",
    "parse_amount",
    "parse_cell",
    "parse_date",
    "to_row",
    "values_by_header",
]
