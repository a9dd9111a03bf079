"""Google Sheets synchronisation service for categorised transactions.

``GoogleSheetsSyncService`` is the public entry point.  One invocation runs
the pipeline ``COLLECTING -> DIFFING -> RESOLVING -> APPLYING -> DONE`` (or
``FAILED``) while holding the advisory lock of its ``(user, spreadsheet)``
pair, and always returns a single :class:`~ledgersync.models.SyncResult`.

Writes are committed record by record; a failure part way through APPLYING
keeps what was already written and reports exactly how much that was.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from ledgersync import row_mapper
from ledgersync.conflicts import ConflictResolver, coerce_mode
from ledgersync.differencer import Authority, Delta, DeltaKind, Differencer
from ledgersync.errors import DeadlineExceededError, LocalStoreError, SyncError
from ledgersync.google_credentials import build_credentials
from ledgersync.local_store import LocalStore
from ledgersync.models import (
    Conflict,
    ConflictType,
    Direction,
    PartialRecord,
    RemoteRowRef,
    ResolutionMode,
    SyncPhase,
    SyncResult,
    SyncState,
    TransactionRecord,
)
from ledgersync.sheet_adapter import BackoffController, SheetAdapter, SheetTable, parse_spreadsheet_id
from settings import SyncSettings, load_sync_settings

logger = logging.getLogger(__name__)

PUSH_MODES = ("replace", "append")

# ---------------------------------------------------------------------------
# Advisory locks, one per (user, spreadsheet) pair
# ---------------------------------------------------------------------------
_PAIR_LOCKS_GUARD = threading.Lock()
_PAIR_LOCKS: Dict[Tuple[str, str], threading.Lock] = {}


def pair_lock(user_id: str, spreadsheet_id: str) -> threading.Lock:
    """Return the lock serialising sync passes for one user and spreadsheet."""

    key = (user_id, spreadsheet_id)
    with _PAIR_LOCKS_GUARD:
        lock = _PAIR_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _PAIR_LOCKS[key] = lock
        return lock


def chunked(sequence: Sequence, max_size: int):
    """Yield slices of ``sequence`` containing at most ``max_size`` entries."""

    if max_size <= 0:
        raise ValueError("max_size must be positive")
    for start in range(0, len(sequence), max_size):
        yield sequence[start : start + max_size]


def contiguous_blocks(deltas: Sequence[Delta], max_size: int) -> List[List[Delta]]:
    """Group row updates into runs of consecutive row indices."""

    blocks: List[List[Delta]] = []
    for delta in sorted(deltas, key=lambda item: item.row_index or 0):
        if (
            blocks
            and len(blocks[-1]) < max_size
            and blocks[-1][-1].row_index is not None
            and delta.row_index == blocks[-1][-1].row_index + 1
        ):
            blocks[-1].append(delta)
        else:
            blocks.append([delta])
    return blocks


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class _Deadline:
    def __init__(self, seconds: Optional[float], clock: Callable[[], float]) -> None:
        self._clock = clock
        self.expires_at = clock() + seconds if seconds else None

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self.expires_at is not None and self._clock() >= self.expires_at


@dataclass
class _LocalSnapshot:
    records: List[TransactionRecord]
    held: List[TransactionRecord]
    detached: List[TransactionRecord]
    orphans: List[SyncState]
    pending: List[Conflict]


@dataclass
class _SyncRun:
    """Mutable bookkeeping for one invocation; frozen into a SyncResult at the end."""

    direction: Direction
    spreadsheet_id: str
    started: float
    started_at: str
    phase: SyncPhase = SyncPhase.IDLE
    sheet_name: str = ""
    pushed: int = 0
    pulled: int = 0
    skipped: int = 0
    updated: int = 0
    conflicts_detected: int = 0
    conflicts: List[Conflict] = field(default_factory=list)
    remote_rows: int = 0

    def result(self, duration_ms: int, error: Optional[BaseException] = None) -> SyncResult:
        return SyncResult(
            direction=self.direction,
            rows_pushed=self.pushed,
            rows_pulled=self.pulled,
            rows_skipped=self.skipped,
            rows_updated=self.updated,
            conflicts_detected=self.conflicts_detected,
            duration_ms=duration_ms,
            success=error is None,
            error=str(error) if error is not None else None,
            conflicts=tuple(self.conflicts),
            spreadsheet_id=self.spreadsheet_id,
            sheet_name=self.sheet_name,
        )


class GoogleSheetsSyncService:
    """Synchronise a user's categorised transactions with a Sheets tab."""

    def __init__(
        self,
        store: LocalStore,
        adapter: SheetAdapter,
        *,
        settings: Optional[SyncSettings] = None,
        resolver: Optional[ConflictResolver] = None,
        clock: Callable[[], float] = time.monotonic,
        log_callback: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._settings = settings or SyncSettings(db_path=store.db_path)
        self._resolver = resolver or ConflictResolver(self._settings.resolution_mode)
        self._clock = clock
        self._log_callback = log_callback

    @classmethod
    def from_settings(
        cls,
        settings: Optional[SyncSettings] = None,
        *,
        log_callback: Optional[Callable[[str], None]] = None,
    ) -> "GoogleSheetsSyncService":
        """Build a service backed by the configured database and service account."""

        settings = settings or load_sync_settings()
        credentials = build_credentials(settings.credential_path)
        adapter = SheetAdapter.from_credentials(
            credentials,
            backoff=BackoffController(
                base=settings.backoff_base_seconds,
                maximum=settings.backoff_max_seconds,
                attempts=settings.max_attempts,
            ),
        )
        return cls(LocalStore(settings.db_path), adapter, settings=settings, log_callback=log_callback)

    @property
    def store(self) -> LocalStore:
        return self._store

    # -- public API -----------------------------------------------------------
    def sync(
        self,
        user_id: str,
        spreadsheet_id: str,
        direction: Union[Direction, str],
        *,
        sheet_name: Optional[str] = None,
        job_id: Optional[str] = None,
        mode: Optional[str] = None,
        resolution_mode: Union[ResolutionMode, str, None] = None,
        deadline: Optional[float] = None,
    ) -> SyncResult:
        """Caller boundary: dispatch on ``direction`` and return the result.

        Invalid arguments raise ``ValueError``; operational failures come back
        as a ``SyncResult`` with ``success=False``.
        """

        try:
            resolved_direction = Direction(direction)
        except ValueError as exc:
            raise ValueError(f"direction must be push, pull or bidirectional, got {direction!r}") from exc

        if resolved_direction is Direction.PUSH:
            return self.push_to_sheets(
                user_id, spreadsheet_id, sheet_name=sheet_name, job_id=job_id, mode=mode or "replace", deadline=deadline
            )
        if mode is not None:
            raise ValueError("mode only applies to push")
        if resolved_direction is Direction.PULL:
            return self.pull_from_sheets(user_id, spreadsheet_id, sheet_name=sheet_name, job_id=job_id, deadline=deadline)
        return self.bidirectional_sync(
            user_id,
            spreadsheet_id,
            sheet_name=sheet_name,
            job_id=job_id,
            resolution_mode=resolution_mode,
            deadline=deadline,
        )

    def push_to_sheets(
        self,
        user_id: str,
        spreadsheet_id: str,
        *,
        sheet_name: Optional[str] = None,
        job_id: Optional[str] = None,
        mode: str = "replace",
        deadline: Optional[float] = None,
    ) -> SyncResult:
        """Write local records to the sheet; local values win.

        ``replace`` overwrites differing linked rows and appends new ones;
        ``append`` only appends records that are not in the sheet yet.
        """

        if mode not in PUSH_MODES:
            raise ValueError(f"mode must be one of {', '.join(PUSH_MODES)}")
        return self._run(
            Direction.PUSH,
            user_id,
            spreadsheet_id,
            sheet_name=sheet_name,
            job_id=job_id,
            authority=Authority.LOCAL,
            append_only=mode == "append",
            resolution_mode=ResolutionMode.MANUAL,
            deadline=deadline,
        )

    def pull_from_sheets(
        self,
        user_id: str,
        spreadsheet_id: str,
        *,
        sheet_name: Optional[str] = None,
        job_id: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> SyncResult:
        """Copy sheet edits of category, subcategory, notes and confirmed into the store."""

        return self._run(
            Direction.PULL,
            user_id,
            spreadsheet_id,
            sheet_name=sheet_name,
            job_id=job_id,
            authority=Authority.REMOTE,
            append_only=False,
            resolution_mode=ResolutionMode.MANUAL,
            deadline=deadline,
        )

    def bidirectional_sync(
        self,
        user_id: str,
        spreadsheet_id: str,
        *,
        sheet_name: Optional[str] = None,
        job_id: Optional[str] = None,
        resolution_mode: Union[ResolutionMode, str, None] = None,
        deadline: Optional[float] = None,
    ) -> SyncResult:
        """Reconcile both sides against the last synced base."""

        mode = coerce_mode(resolution_mode) if resolution_mode is not None else self._resolver.mode
        return self._run(
            Direction.BIDIRECTIONAL,
            user_id,
            spreadsheet_id,
            sheet_name=sheet_name,
            job_id=job_id,
            authority=None,
            append_only=False,
            resolution_mode=mode,
            deadline=deadline,
        )

    def resolve_conflict(
        self,
        user_id: str,
        conflict_id: int,
        choice: str,
        *,
        row_index: Optional[int] = None,
        note: Optional[str] = None,
    ) -> Conflict:
        return resolve_conflict(
            self._store,
            user_id,
            conflict_id,
            choice,
            row_index=row_index,
            note=note,
            resolver=self._resolver,
        )

    def list_conflicts(self, user_id: str, **kwargs) -> List[Conflict]:
        return self._store.list_conflicts(user_id, **kwargs)

    def conflict_summary(self, user_id: str, spreadsheet_id: Optional[str] = None) -> Dict[str, object]:
        return self._store.conflict_summary(user_id, spreadsheet_id)

    # -- pipeline -------------------------------------------------------------
    def _log(self, message: str) -> None:
        logger.info(message)
        if self._log_callback:
            self._log_callback(message)

    def _transition(self, run: _SyncRun, phase: SyncPhase) -> None:
        logger.debug("Sync %s %s: %s -> %s", run.direction.value, run.spreadsheet_id, run.phase.value, phase.value)
        run.phase = phase

    def _run(
        self,
        direction: Direction,
        user_id: str,
        spreadsheet_id: str,
        *,
        sheet_name: Optional[str],
        job_id: Optional[str],
        authority: Optional[Authority],
        append_only: bool,
        resolution_mode: ResolutionMode,
        deadline: Optional[float],
    ) -> SyncResult:
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValueError("an authenticated user_id is required")
        parsed_id = parse_spreadsheet_id(spreadsheet_id or "")
        if not parsed_id:
            raise ValueError("a spreadsheet id or URL is required")
        if deadline is not None and deadline <= 0:
            raise ValueError("deadline must be a positive number of seconds")

        timer = _Deadline(deadline if deadline is not None else self._settings.deadline_seconds, self._clock)
        run = _SyncRun(direction, parsed_id, started=self._clock(), started_at=_utc_now_iso())
        run.sheet_name = (sheet_name or "").strip()
        lock = pair_lock(user_id, parsed_id)
        remaining = timer.remaining()
        if not lock.acquire(timeout=remaining if remaining is not None else -1):
            self._transition(run, SyncPhase.FAILED)
            error = DeadlineExceededError("Another sync for this spreadsheet is still running; deadline exceeded.")
            return self._finish(user_id, run, error)
        try:
            error = self._pipeline(run, user_id, job_id, authority, append_only, resolution_mode, timer)
            return self._finish(user_id, run, error)
        finally:
            lock.release()

    def _finish(self, user_id: str, run: _SyncRun, error: Optional[SyncError]) -> SyncResult:
        duration_ms = int(max(0.0, self._clock() - run.started) * 1000)
        result = run.result(duration_ms, error)
        if error is not None:
            logger.warning("Sync %s of %s failed: %s", run.direction.value, run.spreadsheet_id, error)
        self._log(
            f"Sync {run.direction.value}: pushed={result.rows_pushed} pulled={result.rows_pulled} "
            f"updated={result.rows_updated} skipped={result.rows_skipped} "
            f"conflicts={result.conflicts_detected} ({duration_ms} ms)"
        )
        try:
            self._store.finish_sync(user_id, result, run.remote_rows + result.rows_pushed)
            self._store.log_sync_history(user_id, result, run.started_at)
        except LocalStoreError:
            logger.warning("Sync metadata could not be updated", exc_info=True)
        return result

    def _pipeline(
        self,
        run: _SyncRun,
        user_id: str,
        job_id: Optional[str],
        authority: Optional[Authority],
        append_only: bool,
        resolution_mode: ResolutionMode,
        timer: _Deadline,
    ) -> Optional[SyncError]:
        spreadsheet_id = run.spreadsheet_id
        try:
            self._store.begin_sync(user_id, spreadsheet_id, run.sheet_name or None, run.direction.value)

            self._transition(run, SyncPhase.COLLECTING)
            title = self._adapter.ensure_sheet(
                spreadsheet_id,
                run.sheet_name or self._settings.sheet_name,
                create=authority is not Authority.REMOTE,
            )
            run.sheet_name = title
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix="ledgersync-collect") as pool:
                local_future = pool.submit(self._collect_local, user_id, spreadsheet_id, title, job_id)
                remote_future = pool.submit(self._adapter.read_table, spreadsheet_id, title)
                table = remote_future.result()
                snapshot = local_future.result()
            run.remote_rows = len(table.rows)
            if timer.expired():
                raise DeadlineExceededError("Sync deadline exceeded while reading; nothing was applied.")

            self._transition(run, SyncPhase.DIFFING)
            diff = Differencer(spreadsheet_id, title).diff(
                snapshot.records,
                table.rows,
                snapshot.orphans,
                authority=authority,
                append_only=append_only,
                held=snapshot.held,
            )
            run.skipped += len(snapshot.detached)
            linked = sum(1 for delta in diff.deltas if delta.first_link)
            if linked:
                self._log(f"{linked} existing sheet rows linked to transactions.")
            run.conflicts.extend(snapshot.pending)
            run.conflicts_detected += len(snapshot.pending)

            self._transition(run, SyncPhase.RESOLVING)
            deltas, conflicts = self._resolver.resolve(diff.deltas, resolution_mode)
            if conflicts:
                run.conflicts.extend(self._store.save_conflicts(user_id, conflicts))
            for delta in deltas:
                if delta.kind is not DeltaKind.CONFLICT:
                    continue
                run.conflicts_detected += 1
                if delta.conflict is not None and delta.conflict.conflict_type is ConflictType.DELETED_REMOTELY:
                    self._store.clear_remote_ref(user_id, spreadsheet_id, title, delta.transaction_id)
            for state in diff.dropped_orphans:
                logger.info("Dropping sync state of %s: gone locally and remotely", state.transaction_id)
                self._store.drop_sync_state(user_id, spreadsheet_id, title, state.transaction_id)

            self._transition(run, SyncPhase.APPLYING)
            self._apply(run, user_id, table, deltas, timer)
            self._transition(run, SyncPhase.DONE)
            return None
        except SyncError as exc:
            self._transition(run, SyncPhase.FAILED)
            return exc

    def _collect_local(
        self,
        user_id: str,
        spreadsheet_id: str,
        sheet_name: str,
        job_id: Optional[str],
    ) -> _LocalSnapshot:
        records = self._store.list_for_sync(user_id, job_id, spreadsheet_id, sheet_name)
        states = self._store.load_sync_states(user_id, spreadsheet_id, sheet_name)
        pending = self._store.pending_conflicts(user_id, spreadsheet_id, sheet_name)
        orphans = self._store.list_orphaned_states(user_id, spreadsheet_id, sheet_name, job_id)

        active: List[TransactionRecord] = []
        held: List[TransactionRecord] = []
        detached: List[TransactionRecord] = []
        waiting: List[Conflict] = []
        for record in records:
            state = states.get(record.id)
            if record.id in pending:
                held.append(record)
                waiting.append(pending[record.id])
            elif state is not None and state.detached:
                detached.append(record)
            else:
                active.append(record)

        # Orphans with a pending DELETED_LOCALLY conflict stay held as well.
        free_orphans: List[SyncState] = []
        for state in orphans:
            if state.transaction_id in pending:
                waiting.append(pending[state.transaction_id])
            else:
                free_orphans.append(state)
        return _LocalSnapshot(records=active, held=held, detached=detached, orphans=free_orphans, pending=waiting)

    # -- applying -------------------------------------------------------------
    def _apply(
        self,
        run: _SyncRun,
        user_id: str,
        table: SheetTable,
        deltas: Sequence[Delta],
        timer: _Deadline,
    ) -> None:
        spreadsheet_id = run.spreadsheet_id
        title = run.sheet_name
        batch_rows = max(1, int(self._settings.batch_rows))

        pulls = [delta for delta in deltas if delta.kind is DeltaKind.PULL]
        pushes = [delta for delta in deltas if delta.kind is DeltaKind.PUSH_UPDATE]
        restores = [delta for delta in pulls if delta.restore_remote]
        appends = [delta for delta in deltas if delta.kind is DeltaKind.PUSH_NEW]
        total_ops = len(pulls) + len(pushes) + len(appends)
        outstanding: Set[str] = {delta.transaction_id for delta in pulls + pushes + appends}
        completed = 0

        def check_deadline() -> None:
            if timer.expired():
                raise DeadlineExceededError(
                    f"Sync deadline exceeded during APPLYING: {completed} of {total_ops} operations "
                    f"completed; {total_ops - completed} not applied."
                )

        def ref(row_index: Optional[int]) -> Optional[RemoteRowRef]:
            return RemoteRowRef(title, row_index) if row_index is not None else None

        for delta in deltas:
            if delta.kind is not DeltaKind.SKIP:
                continue
            run.skipped += 1
            if delta.state_changed:
                self._store.record_sync_state(
                    user_id, spreadsheet_id, title, delta.transaction_id, delta.new_base, ref(delta.row_index)
                )

        pulled_ids: Set[str] = set()
        try:
            for delta in sorted(pulls, key=lambda item: item.row_index or 0):
                check_deadline()
                edit = self._remote_edit(delta)
                applied = self._store.apply_remote_edits(user_id, [edit])
                outstanding.discard(delta.transaction_id)
                completed += 1
                if not applied:
                    run.skipped += 1
                    continue
                pulled_ids.add(delta.transaction_id)
                base = row_mapper.fingerprint(delta.remote) if delta.restore_remote else delta.new_base
                self._store.record_sync_state(
                    user_id, spreadsheet_id, title, delta.transaction_id, base, ref(delta.row_index)
                )
                run.pulled += 1
            if pulls:
                self._log(f"{run.pulled} rows pulled from sheet.")

            writes = pushes + [delta for delta in restores if delta.transaction_id in pulled_ids]
            if (writes or appends) and not table.has_header:
                self._adapter.write_header(spreadsheet_id, title)

            for block in contiguous_blocks(writes, batch_rows):
                check_deadline()
                rows = []
                for delta in block:
                    source = delta.merged_record() if delta.kind is DeltaKind.PULL else delta.record
                    rows.append(row_mapper.to_row(source, delta.row_index).as_list())
                self._adapter.write_rows(spreadsheet_id, title, block[0].row_index, rows)
                for delta in block:
                    self._store.record_sync_state(
                        user_id, spreadsheet_id, title, delta.transaction_id, delta.new_base, ref(delta.row_index)
                    )
                    if delta.kind is DeltaKind.PUSH_UPDATE:
                        outstanding.discard(delta.transaction_id)
                        completed += 1
                        run.updated += 1
                self._log(f"{len(block)} rows updated in sheet (rows {block[0].row_index}-{block[-1].row_index}).")

            for batch in chunked(appends, batch_rows):
                check_deadline()
                rows = [row_mapper.to_row(delta.record).as_list() for delta in batch]
                indices = self._adapter.append_rows(spreadsheet_id, title, rows)
                for delta, row_index in zip(batch, indices):
                    self._store.record_sync_state(
                        user_id, spreadsheet_id, title, delta.transaction_id, delta.new_base, ref(row_index)
                    )
                    outstanding.discard(delta.transaction_id)
                    completed += 1
                    run.pushed += 1
                self._log(f"{len(batch)} new rows added to sheet.")
        except SyncError:
            run.skipped += len(outstanding)
            raise

    @staticmethod
    def _remote_edit(delta: Delta) -> PartialRecord:
        remote = delta.remote
        if remote is None:
            raise ValueError("pull delta without a remote row")
        return PartialRecord(
            transaction_id=delta.transaction_id,
            row_index=delta.row_index,
            category=remote.category,
            subcategory=remote.subcategory,
            user_confirmed=remote.user_confirmed,
            user_notes=remote.user_notes,
        )


def resolve_conflict(
    store: LocalStore,
    user_id: str,
    conflict_id: int,
    choice: str,
    *,
    row_index: Optional[int] = None,
    note: Optional[str] = None,
    resolver: Optional[ConflictResolver] = None,
) -> Conflict:
    """Apply a human decision to a pending conflict.

    Takes the same advisory lock as a sync pass so the decision cannot race a
    running sync of that spreadsheet.
    """

    conflict = store.get_conflict(user_id, conflict_id)
    if conflict is None:
        raise LookupError(f"Conflict {conflict_id} not found")
    with pair_lock(user_id, conflict.spreadsheet_id):
        return (resolver or ConflictResolver()).apply_choice(
            store, user_id, conflict, choice, row_index=row_index, note=note
        )


__all__ = [
    "GoogleSheetsSyncService",
    "PUSH_MODES",
    "chunked",
    "contiguous_blocks",
    "pair_lock",
    "resolve_conflict",
]
