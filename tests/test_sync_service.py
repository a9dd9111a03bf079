from __future__ import annotations

import threading
import time
from decimal import Decimal
from typing import Optional

import pytest
from google.auth.exceptions import RefreshError

from ledgersync.local_store import LocalStore
from ledgersync.models import ConflictType, Direction, RemoteRowRef, ResolutionStatus, SyncResult
from ledgersync.row_mapper import HEADERS
from ledgersync.sheet_adapter import BackoffController, SheetAdapter
from ledgersync.sync_service import GoogleSheetsSyncService, chunked, contiguous_blocks, pair_lock
from settings import SyncSettings

from conftest import FakeClock, FakeSheetsService, http_error, make_record

SHEET = "sheet-id"
TAB = "Transactions"


def _service(
    store: LocalStore,
    fake: FakeSheetsService,
    *,
    clock: Optional[FakeClock] = None,
    batch_rows: int = 500,
    messages: Optional[list] = None,
) -> GoogleSheetsSyncService:
    adapter = SheetAdapter(fake, backoff=BackoffController(base=0.0, maximum=0.0), sleep=lambda _delay: None)
    settings = SyncSettings(db_path=store.db_path, sheet_name=TAB, batch_rows=batch_rows)
    kwargs = {"clock": clock} if clock is not None else {}
    return GoogleSheetsSyncService(
        store,
        adapter,
        settings=settings,
        log_callback=messages.append if messages is not None else None,
        **kwargs,
    )


def _assert_counts(result: SyncResult, considered: int) -> None:
    assert (
        result.rows_pushed
        + result.rows_pulled
        + result.rows_skipped
        + result.rows_updated
        + result.conflicts_detected
    ) == considered


def _column(fake: FakeSheetsService, header: str) -> list:
    index = HEADERS.index(header)
    return [row[index] for row in fake.data_rows()]


# -- scenarios ---------------------------------------------------------------
def test_push_into_empty_sheet_writes_header_and_rows(seeded_store: LocalStore, fake_service) -> None:
    result = _service(seeded_store, fake_service).push_to_sheets("alice", SHEET)

    assert result.success, result.error
    assert result.direction is Direction.PUSH
    assert result.rows_pushed == 3
    assert fake_service.rows()[0] == HEADERS
    assert _column(fake_service, "Transaction ID") == ["t1", "t2", "t3"]
    assert len(fake_service.append_requests) == 1
    _assert_counts(result, 3)

    states = seeded_store.load_sync_states("alice", SHEET, TAB)
    assert {tid: state.row_index for tid, state in states.items()} == {"t1": 2, "t2": 3, "t3": 4}


def test_pull_applies_category_edits_made_in_sheet(seeded_store: LocalStore, fake_service) -> None:
    service = _service(seeded_store, fake_service)
    service.push_to_sheets("alice", SHEET)
    fake_service.set_cell(2, "Category", "Dining")
    fake_service.set_cell(3, "Category", "Travel")

    result = service.pull_from_sheets("alice", SHEET)

    assert result.success, result.error
    assert result.rows_pulled == 2
    assert result.rows_skipped == 1
    _assert_counts(result, 3)
    assert seeded_store.get_transaction("alice", "t1").category == "Dining"
    assert seeded_store.get_transaction("alice", "t2").category == "Travel"
    assert seeded_store.get_transaction("alice", "t3").category == "Groceries"

    again = service.bidirectional_sync("alice", SHEET)
    assert again.rows_skipped == 3
    assert not again.has_changes


def test_amount_and_category_changed_on_both_sides_is_amount_conflict(
    seeded_store: LocalStore, fake_service
) -> None:
    service = _service(seeded_store, fake_service)
    service.push_to_sheets("alice", SHEET)
    seeded_store.update_transaction("alice", "t1", {"amount": Decimal("12.50")})
    fake_service.set_cell(2, "Category", "Dining")

    result = service.bidirectional_sync("alice", SHEET)

    assert result.success, result.error
    assert result.conflicts_detected == 1
    assert result.rows_skipped == 2
    _assert_counts(result, 3)
    conflict = result.conflicts[0]
    assert conflict.conflict_type is ConflictType.AMOUNT_MISMATCH
    assert conflict.resolution_status is ResolutionStatus.PENDING
    assert conflict.id is not None
    assert _column(fake_service, "Amount")[0] == "10.00"
    assert seeded_store.get_transaction("alice", "t1").category == "Groceries"

    repeat = service.bidirectional_sync("alice", SHEET)
    assert repeat.conflicts_detected == 1
    assert repeat.conflicts[0].id == conflict.id
    assert len(seeded_store.list_conflicts("alice")) == 1


def test_deleted_row_is_reported_not_recreated(seeded_store: LocalStore, fake_service) -> None:
    seeded_store.insert_transaction("alice", make_record("t4", day=4, amount="40.00"))
    service = _service(seeded_store, fake_service)
    service.push_to_sheets("alice", SHEET)
    before = seeded_store.get_transaction("alice", "t4", spreadsheet_id=SHEET, sheet_name=TAB)
    assert before.remote_row_ref == RemoteRowRef(TAB, 5)
    fake_service.delete_row(5)

    result = service.pull_from_sheets("alice", SHEET)

    assert result.success, result.error
    assert result.conflicts_detected == 1
    assert result.rows_skipped == 3
    _assert_counts(result, 4)
    conflict = result.conflicts[0]
    assert conflict.conflict_type is ConflictType.DELETED_REMOTELY
    assert conflict.resolution_status is ResolutionStatus.PENDING
    after = seeded_store.get_transaction("alice", "t4", spreadsheet_id=SHEET, sheet_name=TAB)
    assert after.category == before.category
    assert after.amount == before.amount
    assert after.remote_row_ref is None
    assert len(fake_service.data_rows()) == 3


def test_deadline_mid_apply_reports_exact_progress(store: LocalStore, fake_service) -> None:
    store.create_job("alice", job_id="job-1")
    for index in range(1, 11):
        store.insert_transaction("alice", make_record(f"t{index:02d}", day=index, amount=f"{index}.00"))
    clock = FakeClock()
    fake_service.hooks["values.append"] = lambda: clock.advance(1.0)
    service = _service(store, fake_service, clock=clock, batch_rows=1)

    result = service.push_to_sheets("alice", SHEET, deadline=6.5)

    assert result.success is False
    assert result.rows_pushed == 7
    assert result.rows_skipped == 3
    _assert_counts(result, 10)
    assert "7 of 10 operations completed" in result.error
    assert len(fake_service.data_rows()) == 7
    assert len(store.load_sync_states("alice", SHEET, TAB)) == 7

    history = store.sync_history("alice", SHEET)
    assert history[0]["status"] == "partial"


# -- properties -------------------------------------------------------------
def test_push_replace_is_idempotent(seeded_store: LocalStore, fake_service) -> None:
    service = _service(seeded_store, fake_service)
    service.push_to_sheets("alice", SHEET)
    writes = len(fake_service.batch_requests) + len(fake_service.append_requests)

    second = service.push_to_sheets("alice", SHEET, mode="replace")

    assert second.rows_pushed == 0
    assert second.rows_updated == 0
    assert second.rows_skipped == 3
    assert len(fake_service.batch_requests) + len(fake_service.append_requests) == writes


def test_push_replace_overwrites_sheet_edits(seeded_store: LocalStore, fake_service) -> None:
    service = _service(seeded_store, fake_service)
    service.push_to_sheets("alice", SHEET)
    fake_service.set_cell(3, "Category", "Dining")

    result = service.push_to_sheets("alice", SHEET)

    assert result.rows_updated == 1
    assert result.conflicts_detected == 0
    assert _column(fake_service, "Category") == ["Groceries"] * 3


def test_push_append_mode_leaves_linked_rows_alone(seeded_store: LocalStore, fake_service) -> None:
    service = _service(seeded_store, fake_service)
    service.push_to_sheets("alice", SHEET)
    seeded_store.update_transaction("alice", "t1", {"category": "Travel"})
    seeded_store.insert_transaction("alice", make_record("t4", day=4))

    result = service.sync("alice", SHEET, "push", mode="append")

    assert result.rows_pushed == 1
    assert result.rows_updated == 0
    assert result.rows_skipped == 3
    assert _column(fake_service, "Category")[0] == "Groceries"


def test_identical_unlinked_rows_produce_duplicate_conflict(seeded_store: LocalStore) -> None:
    twin = ["2024-01-01", "Purchase t1", "10.00", "Groceries", "", "", "FALSE", "", ""]
    fake = FakeSheetsService({TAB: [list(HEADERS), list(twin), list(twin)]})

    result = _service(seeded_store, fake).push_to_sheets("alice", SHEET)

    assert result.conflicts_detected == 1
    assert result.conflicts[0].conflict_type is ConflictType.DUPLICATE_ROW
    assert result.rows_pushed == 2
    _assert_counts(result, 3)
    assert _column(fake, "Transaction ID") == ["", "", "t2", "t3"]


def test_first_sync_links_existing_row_instead_of_duplicating(seeded_store: LocalStore) -> None:
    existing = ["01/01/2024", "Purchase t1", "$10.00", "Dining", "", "", "FALSE", "", ""]
    fake = FakeSheetsService({TAB: [list(HEADERS), existing]})
    messages: list = []

    result = _service(seeded_store, fake, messages=messages).bidirectional_sync("alice", SHEET)

    assert result.rows_updated == 1
    assert result.rows_pushed == 2
    assert "1 existing sheet rows linked to transactions." in messages
    assert _column(fake, "Transaction ID") == ["t1", "t2", "t3"]
    assert _column(fake, "Category")[0] == "Groceries"


def test_remote_edit_of_ingestion_fields_is_restored(seeded_store: LocalStore, fake_service) -> None:
    service = _service(seeded_store, fake_service)
    service.push_to_sheets("alice", SHEET)
    fake_service.set_cell(2, "Category", "Dining")
    fake_service.set_cell(2, "Description", "Typo")

    result = service.bidirectional_sync("alice", SHEET)

    assert result.rows_pulled == 1
    _assert_counts(result, 3)
    assert seeded_store.get_transaction("alice", "t1").category == "Dining"
    assert seeded_store.get_transaction("alice", "t1").description == "Purchase t1"
    assert _column(fake_service, "Description")[0] == "Purchase t1"
    assert _column(fake_service, "Category")[0] == "Dining"

    settled = service.bidirectional_sync("alice", SHEET)
    assert settled.rows_skipped == 3


def test_local_deletion_is_reported_as_conflict(seeded_store: LocalStore, fake_service) -> None:
    service = _service(seeded_store, fake_service)
    service.push_to_sheets("alice", SHEET)
    seeded_store.delete_transaction("alice", "t2")

    result = service.bidirectional_sync("alice", SHEET)

    assert result.conflicts_detected == 1
    assert result.conflicts[0].conflict_type is ConflictType.DELETED_LOCALLY
    assert len(fake_service.data_rows()) == 3
    _assert_counts(result, 3)


@pytest.mark.parametrize(
    "mode, expected_local, expected_sheet",
    [("preferLocal", "Travel", "Travel"), ("preferRemote", "Dining", "Dining")],
)
def test_prefer_modes_resolve_value_conflicts(
    seeded_store: LocalStore, fake_service, mode: str, expected_local: str, expected_sheet: str
) -> None:
    service = _service(seeded_store, fake_service)
    service.push_to_sheets("alice", SHEET)
    seeded_store.update_transaction("alice", "t1", {"category": "Travel"})
    fake_service.set_cell(2, "Category", "Dining")

    result = service.bidirectional_sync("alice", SHEET, resolution_mode=mode)

    assert result.success, result.error
    assert result.conflicts_detected == 0
    assert result.conflicts[0].resolution_status is not ResolutionStatus.PENDING
    _assert_counts(result, 3)
    assert seeded_store.get_transaction("alice", "t1").category == expected_local
    assert _column(fake_service, "Category")[0] == expected_sheet
    assert seeded_store.pending_conflicts("alice", SHEET, TAB) == {}


def test_manual_resolution_releases_held_record(seeded_store: LocalStore, fake_service) -> None:
    service = _service(seeded_store, fake_service)
    service.push_to_sheets("alice", SHEET)
    seeded_store.update_transaction("alice", "t1", {"category": "Travel"})
    fake_service.set_cell(2, "Category", "Dining")
    conflict = service.bidirectional_sync("alice", SHEET).conflicts[0]

    resolved = service.resolve_conflict("alice", conflict.id, "local")
    result = service.bidirectional_sync("alice", SHEET)

    assert resolved.resolution_status is ResolutionStatus.RESOLVED_LOCAL
    assert result.rows_updated == 1
    assert result.conflicts_detected == 0
    assert _column(fake_service, "Category")[0] == "Travel"


# -- failures ----------------------------------------------------------------
def test_quota_error_mid_apply_keeps_committed_rows(store: LocalStore, fake_service) -> None:
    store.create_job("alice", job_id="job-1")
    for index in range(1, 4):
        store.insert_transaction("alice", make_record(f"t{index}", day=index))
    calls = {"count": 0}

    def fail_second_append() -> None:
        calls["count"] += 1
        if calls["count"] == 2:
            raise http_error(429, "rateLimitExceeded")

    fake_service.hooks["values.append"] = fail_second_append
    result = _service(store, fake_service, batch_rows=1).push_to_sheets("alice", SHEET)

    assert result.success is False
    assert "quota" in result.error.lower()
    assert result.rows_pushed == 1
    assert result.rows_skipped == 2
    assert list(store.load_sync_states("alice", SHEET, TAB)) == ["t1"]
    assert store.get_sync_metadata("alice", SHEET)["sync_status"] == "error"


def test_rejected_credentials_fail_the_pass(seeded_store: LocalStore, fake_service) -> None:
    fake_service.fail("spreadsheets.get", RefreshError("invalid_grant: account disabled"))

    result = _service(seeded_store, fake_service).push_to_sheets("alice", SHEET)

    assert result.success is False
    assert "invalid_grant" in result.error
    assert fake_service.append_requests == []
    assert seeded_store.get_sync_metadata("alice", SHEET)["sync_status"] == "error"


def test_oversized_amount_cell_does_not_break_sync(seeded_store: LocalStore, fake_service) -> None:
    service = _service(seeded_store, fake_service)
    service.push_to_sheets("alice", SHEET)
    fake_service.set_cell(2, "Amount", "1e40")

    result = service.bidirectional_sync("alice", SHEET)

    assert result.success, result.error
    assert result.rows_updated == 1
    _assert_counts(result, 3)
    assert _column(fake_service, "Amount")[0] == "10.00"
    assert seeded_store.get_transaction("alice", "t1").amount == Decimal("10.00")


def test_schema_mismatch_fails_without_writing(seeded_store: LocalStore) -> None:
    header = list(HEADERS)
    header[0] = "When"
    fake = FakeSheetsService({TAB: [header]})

    result = _service(seeded_store, fake).push_to_sheets("alice", SHEET)

    assert result.success is False
    assert "Expected" in result.error
    assert fake.batch_requests == []
    assert fake.append_requests == []


def test_pull_does_not_create_missing_tab(seeded_store: LocalStore, fake_service) -> None:
    result = _service(seeded_store, fake_service).pull_from_sheets("alice", SHEET, sheet_name="Archive")

    assert result.success is False
    assert "Archive" not in fake_service.tabs


def test_invalid_arguments_raise(seeded_store: LocalStore, fake_service) -> None:
    service = _service(seeded_store, fake_service)

    with pytest.raises(ValueError):
        service.sync("", SHEET, "push")
    with pytest.raises(ValueError):
        service.sync("alice", "", "push")
    with pytest.raises(ValueError):
        service.sync("alice", SHEET, "sideways")
    with pytest.raises(ValueError):
        service.sync("alice", SHEET, "push", mode="merge")
    with pytest.raises(ValueError):
        service.sync("alice", SHEET, "pull", mode="append")
    with pytest.raises(ValueError):
        service.sync("alice", SHEET, "bidirectional", resolution_mode="newest")
    assert fake_service.calls == []


def test_sync_accepts_spreadsheet_url_and_records_history(seeded_store: LocalStore, fake_service) -> None:
    messages: list = []
    service = _service(seeded_store, fake_service, messages=messages)

    result = service.sync("alice", f"https://docs.google.com/spreadsheets/d/{SHEET}/edit", "push")

    assert result.spreadsheet_id == SHEET
    assert result.sheet_name == TAB
    assert messages
    history = seeded_store.sync_history("alice", SHEET)
    assert history[0]["status"] == "completed"
    assert history[0]["rows_pushed"] == 3
    assert seeded_store.get_sync_metadata("alice", SHEET)["row_count"] == 3


# -- concurrency -------------------------------------------------------------
def test_pair_locks_are_shared_per_user_and_spreadsheet() -> None:
    assert pair_lock("alice", "a") is pair_lock("alice", "a")
    assert pair_lock("alice", "a") is not pair_lock("alice", "b")
    assert pair_lock("alice", "a") is not pair_lock("bob", "a")


def test_concurrent_passes_for_same_pair_are_serialised(seeded_store: LocalStore, fake_service) -> None:
    fake_service.hooks["values.append"] = lambda: time.sleep(0.05)
    service = _service(seeded_store, fake_service)
    results: list = []

    threads = [
        threading.Thread(target=lambda: results.append(service.push_to_sheets("alice", SHEET))) for _ in range(2)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(result.rows_pushed for result in results) == [0, 3]
    assert len(fake_service.data_rows()) == 3


def test_lock_wait_counts_against_deadline(seeded_store: LocalStore, fake_service) -> None:
    service = _service(seeded_store, fake_service)
    lock = pair_lock("alice", "locked-sheet")

    with lock:
        result = service.push_to_sheets("alice", "locked-sheet", deadline=0.05)

    assert result.success is False
    assert "still running" in result.error
    assert fake_service.calls == []


# -- helpers -----------------------------------------------------------------
def test_contiguous_blocks_split_on_gaps_and_size() -> None:
    from ledgersync.differencer import Delta, DeltaKind

    deltas = [Delta(DeltaKind.PUSH_UPDATE, f"t{index}", row_index=index) for index in (2, 3, 4, 7, 8)]

    blocks = contiguous_blocks(deltas, 2)

    assert [[delta.row_index for delta in block] for block in blocks] == [[2, 3], [4], [7, 8]]
    assert list(chunked([1, 2, 3], 2)) == [[1, 2], [3]]
