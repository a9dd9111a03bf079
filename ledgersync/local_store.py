"""SQLite backed storage for categorised transactions and sync bookkeeping.

Every query that touches transactions is filtered through the owning user's
jobs, and the writes reuse the exact same clause, so a sync pass can never
modify another user's rows.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Union

from ledgersync.errors import LocalStoreError
from ledgersync.models import (
    Conflict,
    ConflictType,
    PartialRecord,
    RemoteRowRef,
    ResolutionStatus,
    SyncResult,
    SyncState,
    TransactionRecord,
    quantize_amount,
)

logger = logging.getLogger(__name__)

JOB_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "TEXT PRIMARY KEY",
    "user_id": "TEXT NOT NULL",
    "filename": "TEXT",
    "status": "TEXT NOT NULL DEFAULT 'completed'",
    "created_at": "TEXT NOT NULL",
}

TRANSACTION_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "TEXT PRIMARY KEY",
    "job_id": "TEXT NOT NULL REFERENCES categorization_jobs(id) ON DELETE CASCADE",
    "date": "TEXT NOT NULL",
    "description": "TEXT NOT NULL",
    "amount": "TEXT NOT NULL",
    "category": "TEXT",
    "subcategory": "TEXT",
    "confidence_score": "REAL",
    "user_confirmed": "INTEGER NOT NULL DEFAULT 0",
    "user_notes": "TEXT",
    "created_at": "TEXT NOT NULL",
    "updated_at": "TEXT NOT NULL",
    "last_modified_source": "TEXT NOT NULL DEFAULT 'local'",
}

SYNC_STATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS sync_state (
    spreadsheet_id TEXT NOT NULL,
    sheet_name TEXT NOT NULL,
    transaction_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    job_id TEXT,
    fingerprint TEXT,
    row_index INTEGER,
    detached INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (spreadsheet_id, sheet_name, transaction_id)
)
"""

CONFLICT_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS sync_conflicts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    spreadsheet_id TEXT NOT NULL,
    sheet_name TEXT NOT NULL,
    transaction_id TEXT NOT NULL,
    conflict_type TEXT NOT NULL,
    resolution_status TEXT NOT NULL DEFAULT 'PENDING',
    field_diffs TEXT NOT NULL DEFAULT '{}',
    local_values TEXT NOT NULL DEFAULT '{}',
    remote_values TEXT NOT NULL DEFAULT '{}',
    candidate_rows TEXT NOT NULL DEFAULT '[]',
    row_index INTEGER,
    created_at TEXT NOT NULL,
    resolved_at TEXT,
    resolution_note TEXT
)
"""

METADATA_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS sync_metadata (
    user_id TEXT NOT NULL,
    spreadsheet_id TEXT NOT NULL,
    sheet_name TEXT,
    last_sync_at TEXT,
    last_sync_direction TEXT,
    row_count INTEGER NOT NULL DEFAULT 0,
    sync_status TEXT NOT NULL DEFAULT 'idle',
    last_error TEXT,
    total_syncs INTEGER NOT NULL DEFAULT 0,
    successful_syncs INTEGER NOT NULL DEFAULT 0,
    failed_syncs INTEGER NOT NULL DEFAULT 0,
    total_conflicts INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (user_id, spreadsheet_id)
)
"""

HISTORY_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS sync_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    spreadsheet_id TEXT NOT NULL,
    sheet_name TEXT,
    direction TEXT NOT NULL,
    status TEXT NOT NULL,
    rows_pushed INTEGER NOT NULL DEFAULT 0,
    rows_pulled INTEGER NOT NULL DEFAULT 0,
    rows_skipped INTEGER NOT NULL DEFAULT 0,
    rows_updated INTEGER NOT NULL DEFAULT 0,
    conflicts_detected INTEGER NOT NULL DEFAULT 0,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT NOT NULL
)
"""

_OWNED_JOBS = "job_id IN (SELECT id FROM categorization_jobs WHERE user_id = ?)"
_EDITABLE_FIELDS = (
    "date",
    "description",
    "amount",
    "category",
    "subcategory",
    "confidence_score",
    "user_confirmed",
    "user_notes",
)


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------
def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _to_db_value(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name == "amount":
        return str(quantize_amount(value))
    if name == "date":
        return value.isoformat() if hasattr(value, "isoformat") else str(value)
    if name == "user_confirmed":
        return 1 if value else 0
    return value


def _row_to_record(row: sqlite3.Row) -> TransactionRecord:
    return TransactionRecord.from_mapping(
        {
            "id": row["id"],
            "job_id": row["job_id"],
            "date": row["date"],
            "description": row["description"],
            "amount": row["amount"],
            "category": row["category"],
            "subcategory": row["subcategory"],
            "confidence_score": row["confidence_score"],
            "user_confirmed": bool(row["user_confirmed"]),
            "user_notes": row["user_notes"],
            "sync_fingerprint": row["sync_fingerprint"],
            "row_index": row["sync_row_index"],
            "sheet_name": row["sync_sheet_name"],
        }
    )


def _row_to_state(row: sqlite3.Row) -> SyncState:
    return SyncState(
        transaction_id=row["transaction_id"],
        spreadsheet_id=row["spreadsheet_id"],
        sheet_name=row["sheet_name"],
        user_id=row["user_id"],
        job_id=row["job_id"],
        fingerprint=row["fingerprint"],
        row_index=row["row_index"],
        detached=bool(row["detached"]),
    )


def _row_to_conflict(row: sqlite3.Row) -> Conflict:
    diffs = json.loads(row["field_diffs"] or "{}")
    return Conflict(
        id=row["id"],
        transaction_id=row["transaction_id"],
        conflict_type=ConflictType(row["conflict_type"]),
        resolution_status=ResolutionStatus(row["resolution_status"]),
        spreadsheet_id=row["spreadsheet_id"],
        sheet_name=row["sheet_name"],
        field_diffs={key: (str(value[0]), str(value[1])) for key, value in diffs.items()},
        local_values=json.loads(row["local_values"] or "{}"),
        remote_values=json.loads(row["remote_values"] or "{}"),
        candidate_rows=json.loads(row["candidate_rows"] or "[]"),
        row_index=row["row_index"],
        created_at=row["created_at"],
        resolved_at=row["resolved_at"],
        resolution_note=row["resolution_note"],
    )


class LocalStore:
    """Repository for transactions, sync state, conflicts and sync history."""

    def __init__(self, db_path: Union[str, Path]) -> None:
        self.db_path = str(db_path)
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    # -- connection handling ----------------------------------------------
    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        job_columns = ",\n        ".join(
            f"{column} {definition}" for column, definition in JOB_COLUMN_DEFINITIONS.items()
        )
        conn.execute(f"CREATE TABLE IF NOT EXISTS categorization_jobs (\n        {job_columns}\n    )")
        transaction_columns = ",\n        ".join(
            f"{column} {definition}" for column, definition in TRANSACTION_COLUMN_DEFINITIONS.items()
        )
        conn.execute(f"CREATE TABLE IF NOT EXISTS categorized_transactions (\n        {transaction_columns}\n    )")
        existing = {row[1] for row in conn.execute("PRAGMA table_info(categorized_transactions)")}
        for column, definition in TRANSACTION_COLUMN_DEFINITIONS.items():
            if column not in existing:
                conn.execute(f"ALTER TABLE categorized_transactions ADD COLUMN {column} {definition}")

        conn.execute(SYNC_STATE_TABLE_SQL)
        conn.execute(CONFLICT_TABLE_SQL)
        conn.execute(METADATA_TABLE_SQL)
        conn.execute(HISTORY_TABLE_SQL)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_user ON categorization_jobs(user_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_job ON categorized_transactions(job_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_sync_state_user ON sync_state(user_id, spreadsheet_id)")
        conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_conflict_pending "
            "ON sync_conflicts(spreadsheet_id, sheet_name, transaction_id) "
            "WHERE resolution_status = 'PENDING'"
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_history_user ON sync_history(user_id, spreadsheet_id)")

    def _connect(self) -> sqlite3.Connection:
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            if not self._schema_ready:
                with self._schema_lock:
                    if not self._schema_ready:
                        with conn:
                            self._ensure_schema(conn)
                        self._schema_ready = True
        except (sqlite3.Error, OSError) as exc:
            raise LocalStoreError(f"Local database could not be opened: {exc}") from exc
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise LocalStoreError(f"Local database write failed: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        except sqlite3.Error as exc:
            raise LocalStoreError(f"Local database read failed: {exc}") from exc
        finally:
            conn.close()

    # -- ingestion side CRUD ------------------------------------------------
    def create_job(self, user_id: str, filename: Optional[str] = None, *, job_id: Optional[str] = None) -> str:
        job_id = job_id or uuid.uuid4().hex
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO categorization_jobs (id, user_id, filename, created_at) VALUES (?, ?, ?, ?)",
                (job_id, user_id, filename, _utc_now_iso()),
            )
        return job_id

    def insert_transaction(self, user_id: str, record: TransactionRecord) -> None:
        now = _utc_now_iso()
        with self.transaction() as conn:
            owner = conn.execute(
                "SELECT 1 FROM categorization_jobs WHERE id = ? AND user_id = ?",
                (record.job_id, user_id),
            ).fetchone()
            if owner is None:
                raise PermissionError(f"Job {record.job_id} does not belong to user {user_id}")
            conn.execute(
                "INSERT INTO categorized_transactions (id, job_id, date, description, amount, category, "
                "subcategory, confidence_score, user_confirmed, user_notes, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.job_id,
                    record.date.isoformat(),
                    record.description,
                    str(record.amount),
                    record.category,
                    record.subcategory,
                    record.confidence_score,
                    1 if record.user_confirmed else 0,
                    record.user_notes,
                    now,
                    now,
                ),
            )

    def update_transaction(self, user_id: str, transaction_id: str, changes: Mapping[str, Any]) -> bool:
        """Apply an ingestion or categorisation side edit to one transaction."""

        unknown = set(changes) - set(_EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown transaction fields: {', '.join(sorted(unknown))}")
        if not changes:
            return False
        assignments = ", ".join(f"{name} = ?" for name in changes)
        params: List[Any] = [_to_db_value(name, value) for name, value in changes.items()]
        params.extend([_utc_now_iso(), transaction_id, user_id])
        with self.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE categorized_transactions SET {assignments}, updated_at = ?, "
                f"last_modified_source = 'local' WHERE id = ? AND {_OWNED_JOBS}",
                params,
            )
        return cursor.rowcount > 0

    def delete_transaction(self, user_id: str, transaction_id: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute(
                f"DELETE FROM categorized_transactions WHERE id = ? AND {_OWNED_JOBS}",
                (transaction_id, user_id),
            )
        return cursor.rowcount > 0

    def get_transaction(
        self,
        user_id: str,
        transaction_id: str,
        *,
        spreadsheet_id: Optional[str] = None,
        sheet_name: Optional[str] = None,
    ) -> Optional[TransactionRecord]:
        records = self._select_records(user_id, None, spreadsheet_id, sheet_name, transaction_id=transaction_id)
        return records[0] if records else None

    # -- sync reads -------------------------------------------------------
    def _select_records(
        self,
        user_id: str,
        job_id: Optional[str],
        spreadsheet_id: Optional[str],
        sheet_name: Optional[str],
        *,
        transaction_id: Optional[str] = None,
    ) -> List[TransactionRecord]:
        query = (
            "SELECT t.*, s.fingerprint AS sync_fingerprint, s.row_index AS sync_row_index, "
            "s.sheet_name AS sync_sheet_name "
            "FROM categorized_transactions t "
            "LEFT JOIN sync_state s ON s.transaction_id = t.id "
            "AND s.spreadsheet_id = ? AND s.sheet_name = ? "
            f"WHERE t.{_OWNED_JOBS}"
        )
        params: List[Any] = [spreadsheet_id or "", sheet_name or "", user_id]
        if job_id:
            query += " AND t.job_id = ?"
            params.append(job_id)
        if transaction_id:
            query += " AND t.id = ?"
            params.append(transaction_id)
        query += " ORDER BY t.date, t.created_at, t.id"
        with self._reading() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_record(row) for row in rows]

    def list_for_sync(
        self,
        user_id: str,
        job_id: Optional[str] = None,
        spreadsheet_id: Optional[str] = None,
        sheet_name: Optional[str] = None,
    ) -> List[TransactionRecord]:
        """Return the user's transactions with their sync base for the given tab."""

        if not user_id:
            raise ValueError("user_id is required")
        return self._select_records(user_id, job_id, spreadsheet_id, sheet_name)

    def load_sync_states(self, user_id: str, spreadsheet_id: str, sheet_name: str) -> Dict[str, SyncState]:
        with self._reading() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_state WHERE user_id = ? AND spreadsheet_id = ? AND sheet_name = ?",
                (user_id, spreadsheet_id, sheet_name),
            ).fetchall()
        return {row["transaction_id"]: _row_to_state(row) for row in rows}

    def list_orphaned_states(
        self,
        user_id: str,
        spreadsheet_id: str,
        sheet_name: str,
        job_id: Optional[str] = None,
    ) -> List[SyncState]:
        """Sync states whose transaction no longer exists locally."""

        query = (
            "SELECT * FROM sync_state s WHERE s.user_id = ? AND s.spreadsheet_id = ? "
            "AND s.sheet_name = ? AND s.detached = 0 AND NOT EXISTS "
            "(SELECT 1 FROM categorized_transactions t WHERE t.id = s.transaction_id)"
        )
        params: List[Any] = [user_id, spreadsheet_id, sheet_name]
        if job_id:
            query += " AND s.job_id = ?"
            params.append(job_id)
        with self._reading() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_state(row) for row in rows]

    # -- sync writes ------------------------------------------------------
    def apply_remote_edits(self, user_id: str, edits: Sequence[PartialRecord]) -> List[str]:
        """Write sheet edits of category, subcategory, notes and confirmed.

        Each record is committed on its own.  Returns the ids that were
        updated; edits for records the user does not own are skipped.
        """

        applied: List[str] = []
        for edit in edits:
            if not edit.transaction_id:
                raise ValueError("remote edits must carry a transaction_id")
            with self.transaction() as conn:
                cursor = conn.execute(
                    "UPDATE categorized_transactions SET category = ?, subcategory = ?, user_notes = ?, "
                    "user_confirmed = ?, updated_at = ?, last_modified_source = 'sheet' "
                    f"WHERE id = ? AND {_OWNED_JOBS}",
                    (
                        edit.category,
                        edit.subcategory,
                        edit.user_notes,
                        1 if edit.user_confirmed else 0,
                        _utc_now_iso(),
                        edit.transaction_id,
                        user_id,
                    ),
                )
            if cursor.rowcount:
                applied.append(edit.transaction_id)
            else:
                logger.warning("Remote edit for %s skipped: not owned by user %s", edit.transaction_id, user_id)
        return applied

    def record_sync_state(
        self,
        user_id: str,
        spreadsheet_id: str,
        sheet_name: str,
        transaction_id: str,
        fingerprint: Optional[str],
        remote_row_ref: Optional[RemoteRowRef],
    ) -> bool:
        """Store the base fingerprint and row reference of one transaction."""

        if remote_row_ref is not None and remote_row_ref.sheet_name != sheet_name:
            raise ValueError("remote_row_ref points at a different sheet")
        row_index = remote_row_ref.row_index if remote_row_ref else None
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO sync_state (spreadsheet_id, sheet_name, transaction_id, user_id, job_id, "
                "fingerprint, row_index, detached, updated_at) "
                "SELECT ?, ?, t.id, ?, t.job_id, ?, ?, 0, ? FROM categorized_transactions t "
                f"WHERE t.id = ? AND t.{_OWNED_JOBS} "
                "ON CONFLICT(spreadsheet_id, sheet_name, transaction_id) DO UPDATE SET "
                "fingerprint = excluded.fingerprint, row_index = excluded.row_index, "
                "job_id = excluded.job_id, detached = 0, updated_at = excluded.updated_at",
                (
                    spreadsheet_id,
                    sheet_name,
                    user_id,
                    fingerprint,
                    row_index,
                    _utc_now_iso(),
                    transaction_id,
                    user_id,
                ),
            )
        return cursor.rowcount > 0

    def clear_remote_ref(self, user_id: str, spreadsheet_id: str, sheet_name: str, transaction_id: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE sync_state SET row_index = NULL, updated_at = ? WHERE user_id = ? "
                "AND spreadsheet_id = ? AND sheet_name = ? AND transaction_id = ?",
                (_utc_now_iso(), user_id, spreadsheet_id, sheet_name, transaction_id),
            )

    def set_detached(
        self,
        user_id: str,
        spreadsheet_id: str,
        sheet_name: str,
        transaction_id: str,
        detached: bool = True,
    ) -> None:
        """Exclude (or re-include) a transaction from future passes on this tab."""

        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO sync_state (spreadsheet_id, sheet_name, transaction_id, user_id, detached, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(spreadsheet_id, sheet_name, transaction_id) DO UPDATE SET "
                "detached = excluded.detached, updated_at = excluded.updated_at "
                "WHERE sync_state.user_id = excluded.user_id",
                (spreadsheet_id, sheet_name, transaction_id, user_id, 1 if detached else 0, _utc_now_iso()),
            )

    def drop_sync_state(self, user_id: str, spreadsheet_id: str, sheet_name: str, transaction_id: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                "DELETE FROM sync_state WHERE user_id = ? AND spreadsheet_id = ? AND sheet_name = ? "
                "AND transaction_id = ?",
                (user_id, spreadsheet_id, sheet_name, transaction_id),
            )

    # -- conflicts --------------------------------------------------------
    def save_conflicts(self, user_id: str, conflicts: Sequence[Conflict]) -> List[Conflict]:
        """Persist ``conflicts``; a pending duplicate returns the stored one."""

        saved: List[Conflict] = []
        now = _utc_now_iso()
        with self.transaction() as conn:
            for conflict in conflicts:
                if conflict.is_pending:
                    existing = conn.execute(
                        "SELECT * FROM sync_conflicts WHERE spreadsheet_id = ? AND sheet_name = ? "
                        "AND transaction_id = ? AND resolution_status = 'PENDING'",
                        (conflict.spreadsheet_id, conflict.sheet_name, conflict.transaction_id),
                    ).fetchone()
                    if existing is not None:
                        saved.append(_row_to_conflict(existing))
                        continue
                resolved_at = None if conflict.is_pending else (conflict.resolved_at or now)
                cursor = conn.execute(
                    "INSERT INTO sync_conflicts (user_id, spreadsheet_id, sheet_name, transaction_id, "
                    "conflict_type, resolution_status, field_diffs, local_values, remote_values, "
                    "candidate_rows, row_index, created_at, resolved_at, resolution_note) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        user_id,
                        conflict.spreadsheet_id,
                        conflict.sheet_name,
                        conflict.transaction_id,
                        conflict.conflict_type.value,
                        conflict.resolution_status.value,
                        json.dumps({key: list(value) for key, value in conflict.field_diffs.items()}),
                        json.dumps(conflict.local_values, sort_keys=True),
                        json.dumps(conflict.remote_values, sort_keys=True),
                        json.dumps(conflict.candidate_rows, sort_keys=True),
                        conflict.row_index,
                        conflict.created_at or now,
                        resolved_at,
                        conflict.resolution_note,
                    ),
                )
                row = conn.execute("SELECT * FROM sync_conflicts WHERE id = ?", (cursor.lastrowid,)).fetchone()
                saved.append(_row_to_conflict(row))
        return saved

    def pending_conflicts(self, user_id: str, spreadsheet_id: str, sheet_name: str) -> Dict[str, Conflict]:
        with self._reading() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_conflicts WHERE user_id = ? AND spreadsheet_id = ? AND sheet_name = ? "
                "AND resolution_status = 'PENDING' ORDER BY id",
                (user_id, spreadsheet_id, sheet_name),
            ).fetchall()
        return {row["transaction_id"]: _row_to_conflict(row) for row in rows}

    def list_conflicts(
        self,
        user_id: str,
        *,
        status: Optional[ResolutionStatus] = ResolutionStatus.PENDING,
        spreadsheet_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Conflict]:
        query = "SELECT * FROM sync_conflicts WHERE user_id = ?"
        params: List[Any] = [user_id]
        if status is not None:
            query += " AND resolution_status = ?"
            params.append(status.value)
        if spreadsheet_id:
            query += " AND spreadsheet_id = ?"
            params.append(spreadsheet_id)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(int(limit))
        with self._reading() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_conflict(row) for row in rows]

    def get_conflict(self, user_id: str, conflict_id: int) -> Optional[Conflict]:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT * FROM sync_conflicts WHERE id = ? AND user_id = ?",
                (int(conflict_id), user_id),
            ).fetchone()
        return _row_to_conflict(row) if row is not None else None

    def mark_conflict(
        self,
        user_id: str,
        conflict_id: int,
        status: ResolutionStatus,
        note: Optional[str] = None,
    ) -> Conflict:
        if status is ResolutionStatus.PENDING:
            raise ValueError("a conflict cannot be moved back to PENDING")
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE sync_conflicts SET resolution_status = ?, resolved_at = ?, resolution_note = ? "
                "WHERE id = ? AND user_id = ? AND resolution_status = 'PENDING'",
                (status.value, _utc_now_iso(), note, int(conflict_id), user_id),
            )
            if not cursor.rowcount:
                raise LookupError(f"No pending conflict {conflict_id} for this user")
            row = conn.execute("SELECT * FROM sync_conflicts WHERE id = ?", (int(conflict_id),)).fetchone()
        return _row_to_conflict(row)

    def conflict_summary(self, user_id: str, spreadsheet_id: Optional[str] = None) -> Dict[str, Any]:
        query = "SELECT resolution_status, conflict_type, COUNT(*) AS total FROM sync_conflicts WHERE user_id = ?"
        params: List[Any] = [user_id]
        if spreadsheet_id:
            query += " AND spreadsheet_id = ?"
            params.append(spreadsheet_id)
        query += " GROUP BY resolution_status, conflict_type"
        with self._reading() as conn:
            rows = conn.execute(query, params).fetchall()

        summary: Dict[str, Any] = {"pending": 0, "resolved": 0, "ignored": 0, "pending_by_type": {}}
        for row in rows:
            status = ResolutionStatus(row["resolution_status"])
            total = int(row["total"] or 0)
            if status is ResolutionStatus.PENDING:
                summary["pending"] += total
                by_type = summary["pending_by_type"]
                by_type[row["conflict_type"]] = by_type.get(row["conflict_type"], 0) + total
            elif status is ResolutionStatus.IGNORED:
                summary["ignored"] += total
            else:
                summary["resolved"] += total
        return summary

    # -- metadata & history -----------------------------------------------
    def begin_sync(self, user_id: str, spreadsheet_id: str, sheet_name: Optional[str], direction: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO sync_metadata (user_id, spreadsheet_id, sheet_name, last_sync_direction, sync_status) "
                "VALUES (?, ?, ?, ?, 'syncing') "
                "ON CONFLICT(user_id, spreadsheet_id) DO UPDATE SET sync_status = 'syncing', "
                "sheet_name = COALESCE(excluded.sheet_name, sync_metadata.sheet_name), "
                "last_sync_direction = excluded.last_sync_direction",
                (user_id, spreadsheet_id, sheet_name, direction),
            )

    def finish_sync(self, user_id: str, result: SyncResult, row_count: Optional[int] = None) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO sync_metadata (user_id, spreadsheet_id) VALUES (?, ?) "
                "ON CONFLICT(user_id, spreadsheet_id) DO NOTHING",
                (user_id, result.spreadsheet_id),
            )
            conn.execute(
                "UPDATE sync_metadata SET sheet_name = COALESCE(?, sheet_name), last_sync_at = ?, "
                "last_sync_direction = ?, row_count = COALESCE(?, row_count), sync_status = ?, "
                "last_error = ?, total_syncs = total_syncs + 1, "
                "successful_syncs = successful_syncs + ?, failed_syncs = failed_syncs + ?, "
                "total_conflicts = total_conflicts + ? WHERE user_id = ? AND spreadsheet_id = ?",
                (
                    result.sheet_name or None,
                    _utc_now_iso(),
                    result.direction.value,
                    row_count,
                    "idle" if result.success else "error",
                    result.error,
                    1 if result.success else 0,
                    0 if result.success else 1,
                    result.conflicts_detected,
                    user_id,
                    result.spreadsheet_id,
                ),
            )

    def get_sync_metadata(self, user_id: str, spreadsheet_id: str) -> Optional[Dict[str, Any]]:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT * FROM sync_metadata WHERE user_id = ? AND spreadsheet_id = ?",
                (user_id, spreadsheet_id),
            ).fetchone()
        return dict(row) if row is not None else None

    def log_sync_history(self, user_id: str, result: SyncResult, started_at: str) -> None:
        if result.success:
            status = "completed"
        elif result.has_changes:
            status = "partial"
        else:
            status = "failed"
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO sync_history (user_id, spreadsheet_id, sheet_name, direction, status, rows_pushed, "
                "rows_pulled, rows_skipped, rows_updated, conflicts_detected, duration_ms, error_message, "
                "started_at, completed_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    user_id,
                    result.spreadsheet_id,
                    result.sheet_name or None,
                    result.direction.value,
                    status,
                    result.rows_pushed,
                    result.rows_pulled,
                    result.rows_skipped,
                    result.rows_updated,
                    result.conflicts_detected,
                    result.duration_ms,
                    result.error,
                    started_at,
                    _utc_now_iso(),
                ),
            )

    def sync_history(self, user_id: str, spreadsheet_id: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        query = "SELECT * FROM sync_history WHERE user_id = ?"
        params: List[Any] = [user_id]
        if spreadsheet_id:
            query += " AND spreadsheet_id = ?"
            params.append(spreadsheet_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(int(limit))
        with self._reading() as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]


__all__ = ["LocalStore"]
