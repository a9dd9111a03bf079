"""Conflict policy and the conflict journal.

:class:`ConflictResolver` decides, per resolution mode, which conflicts
found by the differencer may be applied automatically.  Every conflict is
also written as one JSON line to ``conflicts.log``.
"""
from __future__ import annotations

import dataclasses
import json
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ledgersync import app_paths, row_mapper
from ledgersync.differencer import Delta, DeltaKind
from ledgersync.local_store import LocalStore
from ledgersync.models import (
    VALUE_CONFLICTS,
    Conflict,
    ConflictType,
    RemoteRowRef,
    ResolutionMode,
    ResolutionStatus,
)

logger = logging.getLogger(__name__)

_JOURNAL = logging.getLogger("ledgersync.sync.conflicts")
_HANDLER_CONFIGURED = False
_RECENT: Deque[Dict[str, object]] = deque(maxlen=50)
_LOCK = threading.Lock()

CHOICES = ("local", "remote", "ignore")


def _ensure_journal() -> logging.Logger:
    global _HANDLER_CONFIGURED
    with _LOCK:
        if not _HANDLER_CONFIGURED:
            path = app_paths.logs_path("conflicts.log")
            try:
                handler = logging.FileHandler(path, encoding="utf-8")
            except OSError:  # pragma: no cover - depends on filesystem permissions
                logger.warning("Conflict journal %s could not be opened", path)
            else:
                handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
                _JOURNAL.addHandler(handler)
            _JOURNAL.setLevel(logging.INFO)
            _HANDLER_CONFIGURED = True
    return _JOURNAL


def record(conflict: Conflict, *, source: str = "sync", context: Optional[Mapping[str, object]] = None) -> None:
    """Journal ``conflict`` and keep it in the in-memory recent list."""

    payload: Dict[str, object] = {
        "transaction_id": conflict.transaction_id,
        "type": conflict.conflict_type.value,
        "status": conflict.resolution_status.value,
        "sheet": conflict.sheet_name,
        "row_index": conflict.row_index,
        "fields": {key: list(value) for key, value in conflict.field_diffs.items()},
        "timestamp": datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
        "source": source,
    }
    if context:
        payload.update(dict(context))

    _ensure_journal().info("%s", json.dumps(payload, ensure_ascii=False, sort_keys=True))
    with _LOCK:
        _RECENT.appendleft(payload)


def recent(limit: int = 10) -> List[Dict[str, object]]:
    """Return the most recently journaled conflicts."""

    with _LOCK:
        return list(_RECENT)[:limit]


def coerce_mode(mode: Union[ResolutionMode, str, None]) -> ResolutionMode:
    if mode is None:
        return ResolutionMode.MANUAL
    if isinstance(mode, ResolutionMode):
        return mode
    try:
        return ResolutionMode(str(mode))
    except ValueError as exc:
        allowed = ", ".join(item.value for item in ResolutionMode)
        raise ValueError(f"Unknown conflict resolution mode {mode!r}; expected one of {allowed}") from exc


class ConflictResolver:
    """Apply a resolution mode to conflicts and carry out manual choices."""

    def __init__(self, mode: Union[ResolutionMode, str, None] = ResolutionMode.MANUAL) -> None:
        self.mode = coerce_mode(mode)

    def resolve(
        self,
        deltas: Sequence[Delta],
        mode: Union[ResolutionMode, str, None] = None,
    ) -> Tuple[List[Delta], List[Conflict]]:
        """Return ``(deltas, conflicts)`` after applying ``mode``.

        Conflicts resolved automatically come back as push or pull deltas with
        their conflict marked ``RESOLVED_LOCAL``/``RESOLVED_REMOTE``; all other
        conflict deltas stay ``CONFLICT`` and ``PENDING``.  Deletions and
        duplicate rows are never resolved here.
        """

        active = coerce_mode(mode) if mode is not None else self.mode
        resolved: List[Delta] = []
        conflicts: List[Conflict] = []
        for delta in deltas:
            if delta.kind is not DeltaKind.CONFLICT or delta.conflict is None:
                resolved.append(delta)
                continue
            conflict = delta.conflict
            updated = delta
            if conflict.conflict_type in VALUE_CONFLICTS and delta.record is not None and delta.remote is not None:
                if active is ResolutionMode.PREFER_LOCAL:
                    conflict.resolution_status = ResolutionStatus.RESOLVED_LOCAL
                    conflict.resolution_note = "auto: preferLocal"
                    updated = dataclasses.replace(
                        delta,
                        kind=DeltaKind.PUSH_UPDATE,
                        new_base=row_mapper.fingerprint(delta.record),
                    )
                elif active is ResolutionMode.PREFER_REMOTE:
                    conflict.resolution_status = ResolutionStatus.RESOLVED_REMOTE
                    conflict.resolution_note = "auto: preferRemote"
                    protected = row_mapper.diff_fields(delta.record, delta.remote, row_mapper.PROTECTED_FIELDS)
                    updated = dataclasses.replace(delta, kind=DeltaKind.PULL, restore_remote=bool(protected))
                    merged = updated.merged_record()
                    updated.new_base = row_mapper.fingerprint(merged if protected else delta.remote)
            record(conflict, context={"mode": active.value})
            conflicts.append(conflict)
            resolved.append(updated)
        return resolved, conflicts

    # -- explicit resolution ---------------------------------------------------
    def apply_choice(
        self,
        store: LocalStore,
        user_id: str,
        conflict: Conflict,
        choice: str,
        *,
        row_index: Optional[int] = None,
        note: Optional[str] = None,
    ) -> Conflict:
        """Resolve a pending conflict by a human decision.

        ``choice`` is ``local`` (keep the database value), ``remote`` (take the
        sheet value) or ``ignore`` (stop syncing the record on this tab).
        """

        if choice not in CHOICES:
            raise ValueError(f"choice must be one of {', '.join(CHOICES)}")
        if not conflict.is_pending or conflict.id is None:
            raise ValueError("only stored, pending conflicts can be resolved")

        key = (user_id, conflict.spreadsheet_id, conflict.sheet_name, conflict.transaction_id)
        status = {
            "local": ResolutionStatus.RESOLVED_LOCAL,
            "remote": ResolutionStatus.RESOLVED_REMOTE,
            "ignore": ResolutionStatus.IGNORED,
        }[choice]
        conflict_type = conflict.conflict_type

        if conflict_type is ConflictType.DELETED_LOCALLY:
            if choice == "remote":
                raise ValueError("a locally deleted transaction cannot be restored from the sheet")
            store.drop_sync_state(*key)
        elif choice == "ignore":
            store.set_detached(*key)
        elif conflict_type is ConflictType.DELETED_REMOTELY:
            if choice == "local":
                store.record_sync_state(*key, None, None)
            else:
                store.set_detached(*key)
        elif conflict_type is ConflictType.DUPLICATE_ROW:
            candidate = self._candidate(conflict, row_index)
            ref = RemoteRowRef(conflict.sheet_name, int(candidate["row_index"]))
            values = candidate.get("values", {})
            if choice == "remote":
                remote = row_mapper.from_values(values, ref.row_index)
                remote.transaction_id = conflict.transaction_id
                store.apply_remote_edits(user_id, [remote])
                store.record_sync_state(*key, row_mapper.fingerprint(remote), ref)
            else:
                store.record_sync_state(*key, None, ref)
        else:
            remote = row_mapper.from_values(conflict.remote_values, conflict.row_index)
            remote.transaction_id = conflict.transaction_id
            ref = RemoteRowRef(conflict.sheet_name, conflict.row_index) if conflict.row_index else None
            if choice == "remote":
                store.apply_remote_edits(user_id, [remote])
            store.record_sync_state(*key, row_mapper.fingerprint(remote), ref)

        resolved = store.mark_conflict(user_id, conflict.id, status, note or f"manual: {choice}")
        record(resolved, source="manual", context={"choice": choice})
        logger.info(
            "Conflict %s (%s) for %s resolved as %s",
            resolved.id,
            conflict_type.value,
            conflict.transaction_id,
            status.value,
        )
        return resolved

    @staticmethod
    def _candidate(conflict: Conflict, row_index: Optional[int]) -> Mapping[str, object]:
        if row_index is None:
            raise ValueError("row_index is required to resolve a duplicate row conflict")
        for candidate in conflict.candidate_rows:
            if int(candidate.get("row_index", 0)) == int(row_index):
                return candidate
        raise ValueError(f"row {row_index} is not one of the duplicate candidates")


__all__ = ["CHOICES", "ConflictResolver", "coerce_mode", "recent", "record"]
