"""Typed records exchanged between the sync components."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

CENTS = Decimal("0.01")


class Direction(str, Enum):
    PUSH = "push"
    PULL = "pull"
    BIDIRECTIONAL = "bidirectional"


class ConflictType(str, Enum):
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    CATEGORY_MISMATCH = "CATEGORY_MISMATCH"
    DELETED_REMOTELY = "DELETED_REMOTELY"
    DELETED_LOCALLY = "DELETED_LOCALLY"
    DUPLICATE_ROW = "DUPLICATE_ROW"


class ResolutionStatus(str, Enum):
    PENDING = "PENDING"
    RESOLVED_LOCAL = "RESOLVED_LOCAL"
    RESOLVED_REMOTE = "RESOLVED_REMOTE"
    IGNORED = "IGNORED"


class ResolutionMode(str, Enum):
    MANUAL = "manual"
    PREFER_LOCAL = "preferLocal"
    PREFER_REMOTE = "preferRemote"


class SyncPhase(str, Enum):
    IDLE = "IDLE"
    COLLECTING = "COLLECTING"
    DIFFING = "DIFFING"
    RESOLVING = "RESOLVING"
    APPLYING = "APPLYING"
    DONE = "DONE"
    FAILED = "FAILED"


VALUE_CONFLICTS = frozenset({ConflictType.AMOUNT_MISMATCH, ConflictType.CATEGORY_MISMATCH})


def quantize_amount(value: Any) -> Decimal:
    """Return ``value`` as a two-place :class:`~decimal.Decimal`."""

    if isinstance(value, bool):
        raise TypeError("amount must be numeric, not bool")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, str)):
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"Invalid amount: {value!r}") from exc
    elif isinstance(value, float):
        amount = Decimal(repr(value))
    else:
        raise TypeError(f"amount must be numeric, got {type(value).__name__}")
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    try:
        return amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError(f"Amount out of range: {value!r}") from exc


def _optional_text(value: Any, name: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a string or None")
    return value


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RemoteRowRef:
    """Pointer to the sheet row a transaction was written to."""

    sheet_name: str
    row_index: int

    def __post_init__(self) -> None:
        if not isinstance(self.row_index, int) or self.row_index < 2:
            raise ValueError("row_index must be an integer >= 2 (row 1 is the header)")


@dataclass(slots=True)
class SheetRow:
    """One row read from (or destined for) the spreadsheet."""

    cells: Tuple[str, ...]
    row_index: Optional[int] = None

    def __post_init__(self) -> None:
        if self.row_index is not None and (not isinstance(self.row_index, int) or self.row_index < 1):
            raise ValueError("row_index must be a positive integer")
        self.cells = tuple("" if cell is None else str(cell) for cell in self.cells)

    def as_list(self) -> List[str]:
        return list(self.cells)

    def is_blank(self) -> bool:
        return not any(cell.strip() for cell in self.cells)


@dataclass(slots=True)
class TransactionRecord:
    """A categorised transaction as stored locally."""

    id: str
    job_id: str
    date: date
    description: str
    amount: Decimal
    category: Optional[str] = None
    subcategory: Optional[str] = None
    confidence_score: Optional[float] = None
    user_confirmed: bool = False
    user_notes: Optional[str] = None
    sync_fingerprint: Optional[str] = None
    remote_row_ref: Optional[RemoteRowRef] = None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValueError("transaction id is required")
        if not isinstance(self.job_id, str) or not self.job_id.strip():
            raise ValueError("job_id is required")
        if not isinstance(self.date, date):
            raise TypeError("date must be a datetime.date")
        if not isinstance(self.description, str):
            raise TypeError("description must be a string")
        self.amount = quantize_amount(self.amount)
        self.category = _optional_text(self.category, "category")
        self.subcategory = _optional_text(self.subcategory, "subcategory")
        self.user_notes = _optional_text(self.user_notes, "user_notes")
        if self.confidence_score is not None:
            score = float(self.confidence_score)
            if not 0.0 <= score <= 1.0:
                raise ValueError("confidence_score must be between 0 and 1")
            self.confidence_score = score
        self.user_confirmed = bool(self.user_confirmed)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TransactionRecord":
        """Build a record from a database row mapping."""

        missing = [key for key in ("id", "job_id", "date", "description", "amount") if data.get(key) is None]
        if missing:
            raise ValueError(f"Transaction row is missing fields: {', '.join(missing)}")
        raw_date = data["date"]
        parsed_date = raw_date if isinstance(raw_date, date) else date.fromisoformat(str(raw_date))
        ref = None
        row_index = data.get("row_index")
        if row_index is not None and data.get("sheet_name"):
            ref = RemoteRowRef(str(data["sheet_name"]), int(row_index))
        return cls(
            id=str(data["id"]),
            job_id=str(data["job_id"]),
            date=parsed_date,
            description=str(data["description"]),
            amount=quantize_amount(data["amount"]),
            category=data.get("category"),
            subcategory=data.get("subcategory"),
            confidence_score=data.get("confidence_score"),
            user_confirmed=bool(data.get("user_confirmed") or False),
            user_notes=data.get("user_notes"),
            sync_fingerprint=data.get("sync_fingerprint"),
            remote_row_ref=ref,
        )


@dataclass(slots=True)
class PartialRecord:
    """Business fields decoded from a sheet row; every field may be absent."""

    transaction_id: Optional[str] = None
    row_index: Optional[int] = None
    date: Optional[date] = None
    description: Optional[str] = None
    amount: Optional[Decimal] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    confidence_score: Optional[float] = None
    user_confirmed: bool = False
    user_notes: Optional[str] = None


@dataclass(slots=True)
class SyncState:
    """Base revision for one transaction on one sheet tab."""

    transaction_id: str
    spreadsheet_id: str
    sheet_name: str
    user_id: str
    job_id: Optional[str] = None
    fingerprint: Optional[str] = None
    row_index: Optional[int] = None
    detached: bool = False

    @property
    def remote_row_ref(self) -> Optional[RemoteRowRef]:
        if self.row_index is None:
            return None
        return RemoteRowRef(self.sheet_name, self.row_index)


@dataclass
class Conflict:
    """A divergence the engine declined to resolve on its own."""

    transaction_id: str
    conflict_type: ConflictType
    resolution_status: ResolutionStatus = ResolutionStatus.PENDING
    spreadsheet_id: str = ""
    sheet_name: str = ""
    field_diffs: Dict[str, Tuple[str, str]] = field(default_factory=dict)
    local_values: Dict[str, str] = field(default_factory=dict)
    remote_values: Dict[str, str] = field(default_factory=dict)
    row_index: Optional[int] = None
    candidate_rows: List[Dict[str, Any]] = field(default_factory=list)
    id: Optional[int] = None
    created_at: Optional[str] = None
    resolved_at: Optional[str] = None
    resolution_note: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.resolution_status is ResolutionStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "conflict_type": self.conflict_type.value,
            "resolution_status": self.resolution_status.value,
            "spreadsheet_id": self.spreadsheet_id,
            "sheet_name": self.sheet_name,
            "field_diffs": {key: list(value) for key, value in self.field_diffs.items()},
            "local_values": dict(self.local_values),
            "remote_values": dict(self.remote_values),
            "row_index": self.row_index,
            "candidate_rows": [dict(entry) for entry in self.candidate_rows],
            "created_at": self.created_at,
            "resolved_at": self.resolved_at,
            "resolution_note": self.resolution_note,
        }


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one sync invocation. Built once, never mutated."""

    direction: Direction
    rows_pushed: int = 0
    rows_pulled: int = 0
    rows_skipped: int = 0
    rows_updated: int = 0
    conflicts_detected: int = 0
    duration_ms: int = 0
    success: bool = True
    error: Optional[str] = None
    conflicts: Tuple[Conflict, ...] = ()
    spreadsheet_id: str = ""
    sheet_name: str = ""

    @property
    def records_considered(self) -> int:
        return (
            self.rows_pushed
            + self.rows_pulled
            + self.rows_skipped
            + self.rows_updated
            + self.conflicts_detected
        )

    @property
    def has_changes(self) -> bool:
        return bool(self.rows_pushed or self.rows_pulled or self.rows_updated)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "rows_pushed": self.rows_pushed,
            "rows_pulled": self.rows_pulled,
            "rows_skipped": self.rows_skipped,
            "rows_updated": self.rows_updated,
            "conflicts_detected": self.conflicts_detected,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "spreadsheet_id": self.spreadsheet_id,
            "sheet_name": self.sheet_name,
        }


__all__ = [
    "CENTS",
    "Conflict",
    "ConflictType",
    "Direction",
    "PartialRecord",
    "RemoteRowRef",
    "ResolutionMode",
    "ResolutionStatus",
    "SheetRow",
    "SyncPhase",
    "SyncResult",
    "SyncState",
    "TransactionRecord",
    "VALUE_CONFLICTS",
    "quantize_amount",
]
