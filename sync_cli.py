"""Command line helper for the ledger Google Sheets sync."""

from __future__ import annotations

import argparse
import json
import sys

from ledgersync.errors import SyncError
from ledgersync.local_store import LocalStore
from ledgersync.logging_config import configure_logging
from ledgersync.models import ResolutionStatus
from ledgersync.sync_service import resolve_conflict
from ledgersync.sync_tool import execute_sync_sheets
from settings import load_sync_settings


def command_sync(args: argparse.Namespace) -> int:
    settings = load_sync_settings(args.settings)
    params = {
        "spreadsheet_id": args.spreadsheet,
        "direction": args.direction,
        "sheet_name": args.sheet,
        "job_id": args.job,
        "mode": args.mode,
        "resolution_mode": args.resolution_mode,
    }
    try:
        outcome = execute_sync_sheets(params, args.user, settings=settings)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    print(outcome["message"])
    if args.json and outcome["result"] is not None:
        print(json.dumps(outcome["result"], indent=2))
    return 0 if outcome["success"] else 1


def command_conflicts(args: argparse.Namespace) -> int:
    settings = load_sync_settings(args.settings)
    store = LocalStore(settings.db_path)
    status = None if args.status == "all" else ResolutionStatus(args.status)
    try:
        conflicts = store.list_conflicts(
            args.user, status=status, spreadsheet_id=args.spreadsheet, limit=args.limit
        )
        summary = store.conflict_summary(args.user, args.spreadsheet)
    except SyncError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if not conflicts:
        print("No conflicts.")
    for conflict in conflicts:
        fields = ", ".join(sorted(conflict.field_diffs)) or "-"
        row = conflict.row_index if conflict.row_index is not None else "-"
        print(
            f"#{conflict.id} {conflict.conflict_type.value:<18} {conflict.resolution_status.value:<16} "
            f"{conflict.transaction_id} row={row} fields={fields}"
        )
    print(
        f"Pending: {summary['pending']}  Resolved: {summary['resolved']}  Ignored: {summary['ignored']}"
    )
    return 0


def command_resolve(args: argparse.Namespace) -> int:
    settings = load_sync_settings(args.settings)
    store = LocalStore(settings.db_path)
    try:
        conflict = resolve_conflict(
            store, args.user, args.conflict_id, args.choice, row_index=args.row, note=args.note
        )
    except (LookupError, ValueError, SyncError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Conflict #{conflict.id} marked {conflict.resolution_status.value}.")
    return 0


def command_history(args: argparse.Namespace) -> int:
    settings = load_sync_settings(args.settings)
    store = LocalStore(settings.db_path)
    try:
        entries = store.sync_history(args.user, args.spreadsheet, args.limit)
    except SyncError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if not entries:
        print("No sync history.")
    for entry in entries:
        line = (
            f"{entry['completed_at']} {entry['direction']:<13} {entry['status']:<9} "
            f"pushed={entry['rows_pushed']} pulled={entry['rows_pulled']} "
            f"updated={entry['rows_updated']} skipped={entry['rows_skipped']} "
            f"conflicts={entry['conflicts_detected']} {entry['duration_ms']}ms"
        )
        if entry["error_message"]:
            line += f" error={entry['error_message']}"
        print(line)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ledger Google Sheets sync tool")
    parser.add_argument("--settings", help="Path to sync_settings.json")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Synchronise transactions with a spreadsheet")
    sync_parser.add_argument("--user", required=True, help="Owner of the transactions")
    sync_parser.add_argument("--spreadsheet", help="Spreadsheet id or URL (defaults to the configured one)")
    sync_parser.add_argument(
        "--direction",
        choices=("push", "pull", "bidirectional"),
        default="push",
        help="Which side is written",
    )
    sync_parser.add_argument("--sheet", help="Sheet tab name")
    sync_parser.add_argument("--job", help="Only sync transactions of this categorisation job")
    sync_parser.add_argument("--mode", choices=("replace", "append"), help="Push mode")
    sync_parser.add_argument(
        "--resolution-mode",
        choices=("manual", "preferLocal", "preferRemote"),
        help="Conflict policy for bidirectional sync",
    )
    sync_parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    sync_parser.set_defaults(func=command_sync)

    conflicts_parser = subparsers.add_parser("conflicts", help="List sync conflicts")
    conflicts_parser.add_argument("--user", required=True)
    conflicts_parser.add_argument("--spreadsheet", help="Only conflicts of this spreadsheet")
    conflicts_parser.add_argument(
        "--status",
        choices=[status.value for status in ResolutionStatus] + ["all"],
        default=ResolutionStatus.PENDING.value,
    )
    conflicts_parser.add_argument("--limit", type=int, default=50)
    conflicts_parser.set_defaults(func=command_conflicts)

    resolve_parser = subparsers.add_parser("resolve", help="Resolve a pending conflict")
    resolve_parser.add_argument("conflict_id", type=int)
    resolve_parser.add_argument("choice", choices=("local", "remote", "ignore"))
    resolve_parser.add_argument("--user", required=True)
    resolve_parser.add_argument("--row", type=int, help="Candidate row for duplicate row conflicts")
    resolve_parser.add_argument("--note", help="Resolution note")
    resolve_parser.set_defaults(func=command_resolve)

    history_parser = subparsers.add_parser("history", help="Show recent sync passes")
    history_parser.add_argument("--user", required=True)
    history_parser.add_argument("--spreadsheet")
    history_parser.add_argument("--limit", type=int, default=20)
    history_parser.set_defaults(func=command_history)

    return parser


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
