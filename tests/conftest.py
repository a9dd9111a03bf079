from __future__ import annotations

import json
import os
import re
import sys
import tempfile
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

os.environ.setdefault("LEDGERSYNC_HOME", tempfile.mkdtemp(prefix="ledgersync-tests-"))
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import httplib2  # noqa: E402
import pytest  # noqa: E402
from googleapiclient.errors import HttpError  # noqa: E402

from ledgersync.local_store import LocalStore  # noqa: E402
from ledgersync.models import TransactionRecord  # noqa: E402
from ledgersync.row_mapper import HEADERS  # noqa: E402
from ledgersync.sheet_adapter import BackoffController, SheetAdapter  # noqa: E402

_RANGE_RE = re.compile(r"([A-Z]+)(\d+)(?::([A-Z]+)(\d+)?)?")


def http_error(status: int, reason: str = "", message: str = "", headers: Optional[Dict[str, str]] = None) -> HttpError:
    resp = httplib2.Response({"status": str(status), **(headers or {})})
    resp.reason = message or reason or "error"
    payload = {"error": {"code": status, "message": message, "errors": [{"reason": reason or "backendError"}]}}
    return HttpError(resp, json.dumps(payload).encode("utf-8"))


class _FakeRequest:
    def __init__(self, service: "FakeSheetsService", method: str, callback: Callable[[], Any]):
        self._service = service
        self._method = method
        self._callback = callback

    def execute(self):
        self._service.calls.append(self._method)
        hook = self._service.hooks.get(self._method)
        if hook is not None:
            hook()
        failures = self._service.failures.get(self._method)
        if failures:
            raise failures.pop(0)
        return self._callback()


class _FakeValues:
    def __init__(self, service: "FakeSheetsService") -> None:
        self._service = service

    def get(self, spreadsheetId: str, range: str, majorDimension: str = "ROWS"):  # noqa: N802 - API compatibility
        return _FakeRequest(self._service, "values.get", lambda: self._service._handle_get(range))

    def batchUpdate(self, spreadsheetId: str, body: Dict[str, Any]):  # noqa: N802 - API compatibility
        return _FakeRequest(self._service, "values.batchUpdate", lambda: self._service._handle_batch_update(body))

    def append(self, spreadsheetId: str, range: str, valueInputOption: str, insertDataOption: str, body):  # noqa: N802
        return _FakeRequest(self._service, "values.append", lambda: self._service._handle_append(range, body))


class _FakeSpreadsheets:
    def __init__(self, service: "FakeSheetsService") -> None:
        self._service = service

    def values(self) -> _FakeValues:  # noqa: D401 - API compatibility
        return _FakeValues(self._service)

    def get(self, spreadsheetId: str, includeGridData: bool = False):  # noqa: N802 - API compatibility
        return _FakeRequest(self._service, "spreadsheets.get", self._service._handle_metadata)

    def batchUpdate(self, spreadsheetId: str, body: Dict[str, Any]):  # noqa: N802 - API compatibility
        return _FakeRequest(self._service, "spreadsheets.batchUpdate", lambda: self._service._handle_add_sheet(body))


class FakeSheetsService:
    """In-memory stand-in for ``build("sheets", "v4")``."""

    def __init__(self, tabs: Optional[Dict[str, List[List[str]]]] = None) -> None:
        self.tabs: Dict[str, List[List[str]]] = {
            name: [list(row) for row in rows] for name, rows in (tabs or {"Transactions": []}).items()
        }
        self.calls: List[str] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.hooks: Dict[str, Callable[[], None]] = {}
        self.batch_requests: List[Dict[str, Any]] = []
        self.append_requests: List[Dict[str, Any]] = []

    def spreadsheets(self) -> _FakeSpreadsheets:  # noqa: D401 - API compatibility
        return _FakeSpreadsheets(self)

    # Test helpers -------------------------------------------------------
    def fail(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def rows(self, tab: str = "Transactions") -> List[List[str]]:
        return self.tabs[tab]

    def data_rows(self, tab: str = "Transactions") -> List[List[str]]:
        return self.tabs[tab][1:]

    def set_cell(self, row_index: int, header: str, value: str, tab: str = "Transactions") -> None:
        row = self.tabs[tab][row_index - 1]
        column = HEADERS.index(header)
        row.extend([""] * (column + 1 - len(row)))
        row[column] = value

    def delete_row(self, row_index: int, tab: str = "Transactions") -> None:
        del self.tabs[tab][row_index - 1]

    # Internal handlers --------------------------------------------------
    @staticmethod
    def _split_range(range_spec: str) -> tuple[str, str]:
        if "!" not in range_spec:
            return "", range_spec
        sheet, cell_range = range_spec.split("!", 1)
        sheet = sheet.strip()
        if sheet.startswith("'") and sheet.endswith("'") and len(sheet) >= 2:
            sheet = sheet[1:-1].replace("''", "'")
        return sheet, cell_range

    def _tab(self, name: str) -> List[List[str]]:
        if name not in self.tabs:
            raise http_error(400, message=f"Unable to parse range: {name}")
        return self.tabs[name]

    def _trimmed(self, rows: List[List[str]]) -> List[List[str]]:
        result = []
        for row in rows:
            cells = list(row)
            while cells and cells[-1] == "":
                cells.pop()
            result.append(cells)
        while result and not result[-1]:
            result.pop()
        return result

    def _handle_metadata(self) -> Dict[str, Any]:
        return {"sheets": [{"properties": {"title": title}} for title in self.tabs]}

    def _handle_add_sheet(self, body: Dict[str, Any]) -> Dict[str, Any]:
        for request in body.get("requests", []):
            title = request["addSheet"]["properties"]["title"]
            self.tabs[title] = []
        return {}

    def _handle_get(self, range_spec: str) -> Dict[str, Any]:
        sheet, _cell_range = self._split_range(range_spec)
        values = self._trimmed(self._tab(sheet))
        return {"values": values} if values else {}

    def _handle_batch_update(self, body: Dict[str, Any]) -> Dict[str, Any]:
        self.batch_requests.append(body)
        for entry in body.get("data", []):
            sheet, cell_range = self._split_range(entry["range"])
            rows = self._tab(sheet)
            match = _RANGE_RE.match(cell_range)
            start = int(match.group(2))
            for offset, values in enumerate(entry.get("values", [])):
                index = start - 1 + offset
                while len(rows) <= index:
                    rows.append([])
                rows[index] = [str(cell) for cell in values]
        return {}

    def _handle_append(self, range_spec: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self.append_requests.append(body)
        sheet, _cell_range = self._split_range(range_spec)
        rows = self._tab(sheet)
        used = len(self._trimmed(rows))
        del rows[used:]
        start = used + 1
        for values in body.get("values", []):
            rows.append([str(cell) for cell in values])
        end = start + len(body.get("values", [])) - 1
        return {"updates": {"updatedRange": f"{sheet}!A{start}:I{end}", "updatedRows": end - start + 1}}


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_service() -> FakeSheetsService:
    return FakeSheetsService()


@pytest.fixture
def adapter(fake_service: FakeSheetsService) -> SheetAdapter:
    return SheetAdapter(fake_service, backoff=BackoffController(base=0.0, maximum=0.0), sleep=lambda _delay: None)


@pytest.fixture
def store(tmp_path: Path) -> LocalStore:
    return LocalStore(tmp_path / "ledgersync.db")


def make_record(
    transaction_id: str,
    job_id: str = "job-1",
    *,
    day: int = 1,
    description: Optional[str] = None,
    amount: str = "10.00",
    category: Optional[str] = "Groceries",
    **extra: Any,
) -> TransactionRecord:
    return TransactionRecord(
        id=transaction_id,
        job_id=job_id,
        date=date(2024, 1, day),
        description=description if description is not None else f"Purchase {transaction_id}",
        amount=Decimal(amount),
        category=category,
        **extra,
    )


@pytest.fixture
def seeded_store(store: LocalStore) -> LocalStore:
    """Store with one job owned by ``alice`` and three transactions."""

    store.create_job("alice", "january.csv", job_id="job-1")
    for index in range(1, 4):
        store.insert_transaction("alice", make_record(f"t{index}", day=index, amount=f"{index * 10}.00"))
    return store
