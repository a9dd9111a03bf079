from __future__ import annotations

from decimal import Decimal

import pytest

from ledgersync.errors import LocalStoreError
from ledgersync.local_store import LocalStore
from ledgersync.models import (
    Conflict,
    ConflictType,
    Direction,
    PartialRecord,
    RemoteRowRef,
    ResolutionStatus,
    SyncResult,
)

from conftest import make_record

SHEET = "sheet-id"
TAB = "Transactions"


def test_list_for_sync_is_scoped_to_the_owner(seeded_store: LocalStore) -> None:
    seeded_store.create_job("bob", job_id="job-bob")
    seeded_store.insert_transaction("bob", make_record("b1", "job-bob"))

    alice = seeded_store.list_for_sync("alice")
    bob = seeded_store.list_for_sync("bob")

    assert [record.id for record in alice] == ["t1", "t2", "t3"]
    assert [record.id for record in bob] == ["b1"]
    assert alice[1].amount == Decimal("20.00")


def test_list_for_sync_filters_by_job(seeded_store: LocalStore) -> None:
    seeded_store.create_job("alice", job_id="job-2")
    seeded_store.insert_transaction("alice", make_record("t4", "job-2"))

    assert [record.id for record in seeded_store.list_for_sync("alice", "job-2")] == ["t4"]


def test_insert_into_foreign_job_is_rejected(seeded_store: LocalStore) -> None:
    with pytest.raises(PermissionError):
        seeded_store.insert_transaction("mallory", make_record("x1"))


def test_sync_state_is_joined_per_tab(seeded_store: LocalStore) -> None:
    assert seeded_store.record_sync_state("alice", SHEET, TAB, "t1", "fp-1", RemoteRowRef(TAB, 2))

    linked = seeded_store.get_transaction("alice", "t1", spreadsheet_id=SHEET, sheet_name=TAB)
    other_tab = seeded_store.get_transaction("alice", "t1", spreadsheet_id=SHEET, sheet_name="Archive")

    assert linked.sync_fingerprint == "fp-1"
    assert linked.remote_row_ref == RemoteRowRef(TAB, 2)
    assert other_tab.sync_fingerprint is None
    assert other_tab.remote_row_ref is None


def test_record_sync_state_refuses_foreign_transactions(seeded_store: LocalStore) -> None:
    assert not seeded_store.record_sync_state("bob", SHEET, TAB, "t1", "fp", RemoteRowRef(TAB, 2))
    assert seeded_store.load_sync_states("bob", SHEET, TAB) == {}


def test_apply_remote_edits_only_touches_writable_fields(seeded_store: LocalStore) -> None:
    edit = PartialRecord(
        transaction_id="t1",
        amount=Decimal("999.00"),
        description="Changed",
        category="Dining",
        subcategory="Cafe",
        user_confirmed=True,
        user_notes="from sheet",
    )

    applied = seeded_store.apply_remote_edits("alice", [edit, PartialRecord(transaction_id="missing")])

    record = seeded_store.get_transaction("alice", "t1")
    assert applied == ["t1"]
    assert record.category == "Dining"
    assert record.subcategory == "Cafe"
    assert record.user_confirmed is True
    assert record.user_notes == "from sheet"
    assert record.amount == Decimal("10.00")
    assert record.description == "Purchase t1"


def test_apply_remote_edits_ignores_other_users(seeded_store: LocalStore) -> None:
    applied = seeded_store.apply_remote_edits("bob", [PartialRecord(transaction_id="t1", category="Hacked")])

    assert applied == []
    assert seeded_store.get_transaction("alice", "t1").category == "Groceries"


def test_orphaned_states_are_listed_after_local_delete(seeded_store: LocalStore) -> None:
    seeded_store.record_sync_state("alice", SHEET, TAB, "t2", "fp-2", RemoteRowRef(TAB, 3))
    seeded_store.delete_transaction("alice", "t2")

    orphans = seeded_store.list_orphaned_states("alice", SHEET, TAB)

    assert [(state.transaction_id, state.row_index, state.fingerprint) for state in orphans] == [("t2", 3, "fp-2")]


def test_detach_and_clear_ref(seeded_store: LocalStore) -> None:
    seeded_store.record_sync_state("alice", SHEET, TAB, "t1", "fp", RemoteRowRef(TAB, 2))

    seeded_store.clear_remote_ref("alice", SHEET, TAB, "t1")
    seeded_store.set_detached("alice", SHEET, TAB, "t1")

    state = seeded_store.load_sync_states("alice", SHEET, TAB)["t1"]
    assert state.row_index is None
    assert state.detached is True
    assert state.fingerprint == "fp"


def test_pending_conflicts_are_deduplicated(seeded_store: LocalStore) -> None:
    first = Conflict("t1", ConflictType.CATEGORY_MISMATCH, spreadsheet_id=SHEET, sheet_name=TAB, row_index=2)
    again = Conflict("t1", ConflictType.AMOUNT_MISMATCH, spreadsheet_id=SHEET, sheet_name=TAB, row_index=2)

    saved = seeded_store.save_conflicts("alice", [first])
    repeated = seeded_store.save_conflicts("alice", [again])

    assert saved[0].id == repeated[0].id
    assert repeated[0].conflict_type is ConflictType.CATEGORY_MISMATCH
    assert list(seeded_store.pending_conflicts("alice", SHEET, TAB)) == ["t1"]


def test_mark_conflict_is_one_way(seeded_store: LocalStore) -> None:
    conflict = seeded_store.save_conflicts(
        "alice", [Conflict("t1", ConflictType.DELETED_REMOTELY, spreadsheet_id=SHEET, sheet_name=TAB)]
    )[0]

    with pytest.raises(LookupError):
        seeded_store.mark_conflict("bob", conflict.id, ResolutionStatus.IGNORED)
    resolved = seeded_store.mark_conflict("alice", conflict.id, ResolutionStatus.IGNORED, "not needed")
    with pytest.raises(LookupError):
        seeded_store.mark_conflict("alice", conflict.id, ResolutionStatus.RESOLVED_LOCAL)
    with pytest.raises(ValueError):
        seeded_store.mark_conflict("alice", conflict.id, ResolutionStatus.PENDING)

    assert resolved.resolution_status is ResolutionStatus.IGNORED
    assert resolved.resolved_at is not None
    assert resolved.resolution_note == "not needed"


def test_conflict_summary_counts_by_status_and_type(seeded_store: LocalStore) -> None:
    saved = seeded_store.save_conflicts(
        "alice",
        [
            Conflict("t1", ConflictType.AMOUNT_MISMATCH, spreadsheet_id=SHEET, sheet_name=TAB),
            Conflict("t2", ConflictType.DUPLICATE_ROW, spreadsheet_id=SHEET, sheet_name=TAB),
            Conflict("t3", ConflictType.CATEGORY_MISMATCH, spreadsheet_id=SHEET, sheet_name=TAB),
        ],
    )
    seeded_store.mark_conflict("alice", saved[2].id, ResolutionStatus.RESOLVED_REMOTE)

    summary = seeded_store.conflict_summary("alice")

    assert summary["pending"] == 2
    assert summary["resolved"] == 1
    assert summary["ignored"] == 0
    assert summary["pending_by_type"] == {"AMOUNT_MISMATCH": 1, "DUPLICATE_ROW": 1}
    assert len(seeded_store.list_conflicts("alice", status=None)) == 3


def test_metadata_and_history_track_each_pass(seeded_store: LocalStore) -> None:
    ok = SyncResult(Direction.PUSH, rows_pushed=3, spreadsheet_id=SHEET, sheet_name=TAB)
    failed = SyncResult(
        Direction.PULL, rows_pulled=1, success=False, error="quota", spreadsheet_id=SHEET, sheet_name=TAB
    )

    seeded_store.begin_sync("alice", SHEET, TAB, "push")
    seeded_store.finish_sync("alice", ok, row_count=3)
    seeded_store.log_sync_history("alice", ok, "2024-01-01T00:00:00+00:00")
    seeded_store.finish_sync("alice", failed)
    seeded_store.log_sync_history("alice", failed, "2024-01-01T00:01:00+00:00")

    metadata = seeded_store.get_sync_metadata("alice", SHEET)
    history = seeded_store.sync_history("alice", SHEET)

    assert metadata["total_syncs"] == 2
    assert metadata["successful_syncs"] == 1
    assert metadata["failed_syncs"] == 1
    assert metadata["sync_status"] == "error"
    assert metadata["row_count"] == 3
    assert [entry["status"] for entry in history] == ["partial", "completed"]


def test_unwritable_database_raises_local_store_error(tmp_path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("not a directory", encoding="utf-8")

    with pytest.raises(LocalStoreError):
        LocalStore(blocker / "nested" / "db.sqlite").list_for_sync("alice")
