"""Three-way comparison of base, local and remote transaction state.

Rows are paired with local records first by the ``Transaction ID`` cell,
then by the stored row reference and finally, for records that were never
synced, by description + date + amount.  Each local record yields exactly
one :class:`Delta`.
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ledgersync import row_mapper
from ledgersync.models import (
    Conflict,
    ConflictType,
    PartialRecord,
    SheetRow,
    SyncState,
    TransactionRecord,
)

logger = logging.getLogger(__name__)


class DeltaKind(str, Enum):
    SKIP = "skip"
    PUSH_NEW = "push_new"
    PUSH_UPDATE = "push_update"
    PULL = "pull"
    CONFLICT = "conflict"


class Authority(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass
class Delta:
    """Planned outcome for one local record (or one orphaned sheet row)."""

    kind: DeltaKind
    transaction_id: str
    record: Optional[TransactionRecord] = None
    remote: Optional[PartialRecord] = None
    row_index: Optional[int] = None
    new_base: Optional[str] = None
    conflict: Optional[Conflict] = None
    restore_remote: bool = False
    state_changed: bool = False
    first_link: bool = False

    def merged_record(self) -> TransactionRecord:
        """Local record with the remote's writable fields applied."""

        if self.record is None or self.remote is None:
            raise ValueError("merged_record needs both a local record and a remote row")
        return dataclasses.replace(
            self.record,
            category=self.remote.category,
            subcategory=self.remote.subcategory,
            user_confirmed=self.remote.user_confirmed,
            user_notes=self.remote.user_notes,
        )


@dataclass
class DiffResult:
    deltas: List[Delta] = field(default_factory=list)
    dropped_orphans: List[SyncState] = field(default_factory=list)


@dataclass
class _Match:
    row_index: Optional[int] = None
    first_link: bool = False
    missing: bool = False
    candidates: Tuple[int, ...] = ()


class Differencer:
    """Compute the per-record delta between a local set and a sheet tab."""

    def __init__(self, spreadsheet_id: str, sheet_name: str) -> None:
        self.spreadsheet_id = spreadsheet_id
        self.sheet_name = sheet_name

    # -- public API -----------------------------------------------------------
    def diff(
        self,
        records: Sequence[TransactionRecord],
        rows: Sequence[SheetRow],
        orphans: Sequence[SyncState] = (),
        *,
        authority: Optional[Authority] = None,
        append_only: bool = False,
        held: Iterable[TransactionRecord] = (),
    ) -> DiffResult:
        """Classify every record.

        ``authority`` short-circuits the three-way comparison: ``LOCAL`` for
        push, ``REMOTE`` for pull, ``None`` for bidirectional sync.  Records in
        ``held`` keep their rows reserved but produce no delta.
        """

        decoded: Dict[int, PartialRecord] = {}
        rows_by_id: Dict[str, List[int]] = {}
        for row in rows:
            if row.row_index is None:
                continue
            partial = row_mapper.from_row(row)
            decoded[row.row_index] = partial
            if partial.transaction_id:
                rows_by_id.setdefault(partial.transaction_id, []).append(row.row_index)

        claimed: Set[int] = set()
        for record in held:
            claimed.update(rows_by_id.get(record.id, ()))
            if record.remote_row_ref is not None:
                claimed.add(record.remote_row_ref.row_index)

        matches = self._match_records(records, decoded, rows_by_id, claimed)
        result = DiffResult()
        orphan_deltas = self._match_orphans(orphans, decoded, rows_by_id, claimed, result)
        self._first_link(records, matches, decoded, claimed)

        for record in records:
            match = matches[record.id]
            result.deltas.append(self._classify(record, match, decoded, authority, append_only))
        result.deltas.extend(orphan_deltas)
        return result

    # -- matching -------------------------------------------------------------
    def _match_records(
        self,
        records: Sequence[TransactionRecord],
        decoded: Dict[int, PartialRecord],
        rows_by_id: Dict[str, List[int]],
        claimed: Set[int],
    ) -> Dict[str, _Match]:
        matches: Dict[str, _Match] = {}

        # Rows that carry the transaction id.
        for record in records:
            by_id = [index for index in rows_by_id.get(record.id, []) if index not in claimed]
            ref_index = record.remote_row_ref.row_index if record.remote_row_ref else None
            if len(by_id) == 1 or (by_id and ref_index in by_id):
                index = ref_index if ref_index in by_id else by_id[0]
                matches[record.id] = _Match(row_index=index, first_link=record.sync_fingerprint is None)
                claimed.add(index)
            elif len(by_id) > 1:
                matches[record.id] = _Match(candidates=tuple(by_id))
                claimed.update(by_id)

        # Stored reference pointing at a row whose id cell was cleared.
        for record in records:
            if record.id in matches or record.remote_row_ref is None:
                continue
            index = record.remote_row_ref.row_index
            partial = decoded.get(index)
            if (
                partial is not None
                and index not in claimed
                and not partial.transaction_id
                and (
                    row_mapper.match_key(partial) == row_mapper.match_key(record)
                    or row_mapper.fingerprint(partial) == record.sync_fingerprint
                )
            ):
                matches[record.id] = _Match(row_index=index, first_link=record.sync_fingerprint is None)
                claimed.add(index)
            else:
                matches[record.id] = _Match(missing=True)
        return matches

    def _match_orphans(
        self,
        orphans: Sequence[SyncState],
        decoded: Dict[int, PartialRecord],
        rows_by_id: Dict[str, List[int]],
        claimed: Set[int],
        result: DiffResult,
    ) -> List[Delta]:
        deltas: List[Delta] = []
        for state in orphans:
            index: Optional[int] = None
            by_id = [row for row in rows_by_id.get(state.transaction_id, []) if row not in claimed]
            if by_id:
                index = state.row_index if state.row_index in by_id else by_id[0]
            elif state.row_index is not None and state.row_index not in claimed:
                partial = decoded.get(state.row_index)
                if (
                    partial is not None
                    and not partial.transaction_id
                    and state.fingerprint
                    and row_mapper.fingerprint(partial) == state.fingerprint
                ):
                    index = state.row_index
            if index is None:
                result.dropped_orphans.append(state)
                continue
            claimed.add(index)
            remote = decoded[index]
            conflict = self._conflict(
                state.transaction_id,
                ConflictType.DELETED_LOCALLY,
                remote=remote,
                row_index=index,
            )
            deltas.append(
                Delta(
                    kind=DeltaKind.CONFLICT,
                    transaction_id=state.transaction_id,
                    remote=remote,
                    row_index=index,
                    conflict=conflict,
                )
            )
        return deltas

    def _first_link(
        self,
        records: Sequence[TransactionRecord],
        matches: Dict[str, _Match],
        decoded: Dict[int, PartialRecord],
        claimed: Set[int],
    ) -> None:
        rows_by_key: Dict[Tuple[str, str, str], List[int]] = {}
        for index in sorted(decoded):
            rows_by_key.setdefault(row_mapper.match_key(decoded[index]), []).append(index)

        for record in records:
            if record.id in matches:
                continue
            candidates = rows_by_key.get(row_mapper.match_key(record), [])
            unclaimed = [
                index for index in candidates if index not in claimed and not decoded[index].transaction_id
            ]
            if len(unclaimed) == 1:
                matches[record.id] = _Match(row_index=unclaimed[0], first_link=True)
                claimed.add(unclaimed[0])
            elif len(unclaimed) > 1:
                matches[record.id] = _Match(candidates=tuple(unclaimed))
            else:
                matches[record.id] = _Match()

    # -- classification ------------------------------------------------------
    def _classify(
        self,
        record: TransactionRecord,
        match: _Match,
        decoded: Dict[int, PartialRecord],
        authority: Optional[Authority],
        append_only: bool,
    ) -> Delta:
        local_fp = row_mapper.fingerprint(record)

        if match.missing:
            conflict = self._conflict(
                record.id,
                ConflictType.DELETED_REMOTELY,
                local=record,
                row_index=record.remote_row_ref.row_index if record.remote_row_ref else None,
            )
            return Delta(DeltaKind.CONFLICT, record.id, record=record, conflict=conflict)

        if match.candidates:
            conflict = self._conflict(record.id, ConflictType.DUPLICATE_ROW, local=record)
            conflict.candidate_rows = [
                {"row_index": index, "values": row_mapper.values_by_header(decoded[index])}
                for index in match.candidates
            ]
            return Delta(DeltaKind.CONFLICT, record.id, record=record, conflict=conflict)

        if match.row_index is None:
            if authority is Authority.REMOTE:
                return Delta(DeltaKind.SKIP, record.id, record=record)
            return Delta(DeltaKind.PUSH_NEW, record.id, record=record, new_base=local_fp)

        index = match.row_index
        remote = decoded[index]
        remote_fp = row_mapper.fingerprint(remote)
        base = record.sync_fingerprint
        relinked = record.remote_row_ref is None or record.remote_row_ref.row_index != index

        def make(kind: DeltaKind, new_base: str, **extra: object) -> Delta:
            delta = Delta(
                kind,
                record.id,
                record=record,
                remote=remote,
                row_index=index,
                new_base=new_base,
                first_link=match.first_link,
                **extra,  # type: ignore[arg-type]
            )
            if kind is DeltaKind.SKIP:
                delta.state_changed = relinked or base != new_base
            return delta

        if authority is Authority.LOCAL:
            if append_only or local_fp == remote_fp:
                return make(DeltaKind.SKIP, local_fp if local_fp == remote_fp else remote_fp)
            return make(DeltaKind.PUSH_UPDATE, local_fp)

        if authority is Authority.REMOTE:
            if row_mapper.diff_fields(record, remote, row_mapper.WRITABLE_FIELDS):
                return make(DeltaKind.PULL, remote_fp)
            return make(DeltaKind.SKIP, remote_fp)

        if local_fp == remote_fp:
            return make(DeltaKind.SKIP, local_fp)
        if base is None or match.first_link:
            return make(DeltaKind.PUSH_UPDATE, local_fp)
        if remote_fp == base:
            return make(DeltaKind.PUSH_UPDATE, local_fp)
        if local_fp == base:
            return self._remote_changed(record, remote, index, make)

        diffs = row_mapper.diff_fields(record, remote)
        conflict_type = ConflictType.AMOUNT_MISMATCH if "amount" in diffs else ConflictType.CATEGORY_MISMATCH
        conflict = self._conflict(record.id, conflict_type, local=record, remote=remote, row_index=index)
        return Delta(
            DeltaKind.CONFLICT,
            record.id,
            record=record,
            remote=remote,
            row_index=index,
            conflict=conflict,
        )

    def _remote_changed(self, record: TransactionRecord, remote: PartialRecord, index: int, make) -> Delta:
        writable = row_mapper.diff_fields(record, remote, row_mapper.WRITABLE_FIELDS)
        protected = row_mapper.diff_fields(record, remote, row_mapper.PROTECTED_FIELDS)
        if protected:
            logger.info(
                "Row %d of '%s' edits ingestion-owned fields (%s); local values are kept",
                index,
                self.sheet_name,
                ", ".join(sorted(protected)),
            )
        if not writable:
            return make(DeltaKind.PUSH_UPDATE, row_mapper.fingerprint(record))
        delta = make(DeltaKind.PULL, row_mapper.fingerprint(remote), restore_remote=bool(protected))
        if protected:
            delta.new_base = row_mapper.fingerprint(delta.merged_record())
        return delta

    def _conflict(
        self,
        transaction_id: str,
        conflict_type: ConflictType,
        *,
        local: Optional[TransactionRecord] = None,
        remote: Optional[PartialRecord] = None,
        row_index: Optional[int] = None,
    ) -> Conflict:
        return Conflict(
            transaction_id=transaction_id,
            conflict_type=conflict_type,
            spreadsheet_id=self.spreadsheet_id,
            sheet_name=self.sheet_name,
            field_diffs=row_mapper.diff_fields(local, remote) if local is not None and remote is not None else {},
            local_values=row_mapper.values_by_header(local) if local is not None else {},
            remote_values=row_mapper.values_by_header(remote) if remote is not None else {},
            row_index=row_index,
        )


__all__ = ["Authority", "Delta", "DeltaKind", "DiffResult", "Differencer"]
