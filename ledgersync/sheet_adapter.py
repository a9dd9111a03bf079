"""Thin wrapper around the Google Sheets values API.

The adapter owns quota and retry handling for the Sheets API.  Every
``HttpError``, rejected credential and transport failure is translated into
the error taxonomy from :mod:`ledgersync.errors` before it leaves this module.
"""
from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ledgersync.errors import (
    AuthError,
    QuotaError,
    SchemaError,
    SheetNotFoundError,
    SyncError,
    TransientNetworkError,
)
from ledgersync.models import SheetRow
from ledgersync.row_mapper import HEADERS

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 3
RETRIABLE_STATUSES = frozenset({408, 500, 502, 503, 504})
_QUOTA_MARKERS = ("ratelimitexceeded", "rate_limit_exceeded", "quota", "resource_exhausted")
_SIMPLE_TITLE_RE = re.compile(r"^[A-Za-z0-9_]+$")
_RANGE_START_RE = re.compile(r"![A-Z]+(\d+)")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def parse_spreadsheet_id(value: str) -> str:
    """Normalise a spreadsheet identifier from raw input or URL."""

    if not value:
        return ""
    value = value.strip()
    if "/spreadsheets/d/" in value:
        value = value.split("/spreadsheets/d/", 1)[1]
        value = value.split("/", 1)[0]
    if "?" in value:
        value = value.split("?", 1)[0]
    if "#" in value:
        value = value.split("#", 1)[0]
    return value


def _quote_title(title: str) -> str:
    """Return a worksheet title safely formatted for A1 notation."""

    normalised = (title or "").strip()
    if not normalised:
        return "''"

    if _SIMPLE_TITLE_RE.fullmatch(normalised):
        return normalised

    escaped = normalised.replace("'", "''")
    return f"'{escaped}'"


def _a1_range(title: str, range_spec: str) -> str:
    return f"{_quote_title(title)}!{range_spec}"


def _column_a1(column_index: int) -> str:
    column_index += 1
    label = ""
    while column_index:
        column_index, remainder = divmod(column_index - 1, 26)
        label = chr(65 + remainder) + label
    return label


LAST_COLUMN = _column_a1(len(HEADERS) - 1)


def _http_status(exc: HttpError) -> int:
    status = getattr(exc, "status_code", None)
    if status is not None:
        try:
            return int(status)
        except (TypeError, ValueError):
            return 0
    resp = getattr(exc, "resp", None)
    if resp is not None:
        try:
            return int(getattr(resp, "status", 0))
        except (TypeError, ValueError):
            return 0
    return 0


def _error_text(exc: HttpError) -> str:
    parts = [str(getattr(exc, "reason", "") or "")]
    content = getattr(exc, "content", b"")
    if isinstance(content, bytes):
        try:
            payload = json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            parts.append(content.decode("utf-8", "replace"))
        else:
            error = payload.get("error", {}) if isinstance(payload, Mapping) else {}
            if isinstance(error, Mapping):
                parts.append(str(error.get("status", "")))
                parts.append(str(error.get("message", "")))
                for detail in error.get("errors", []) or []:
                    if isinstance(detail, Mapping):
                        parts.append(str(detail.get("reason", "")))
    return " ".join(part for part in parts if part)


def _retry_after(exc: HttpError) -> Optional[float]:
    resp = getattr(exc, "resp", None)
    getter = getattr(resp, "get", None)
    if not callable(getter):
        return None
    value = getter("retry-after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def translate_http_error(exc: HttpError, description: str) -> SyncError:
    """Map an ``HttpError`` onto the sync error taxonomy."""

    status = _http_status(exc)
    text = _error_text(exc)
    lowered = text.lower()
    if status == 429 or (status == 403 and any(marker in lowered for marker in _QUOTA_MARKERS)):
        return QuotaError(
            f"Google Sheets quota exceeded during {description}. Try again later.",
            retry_after=_retry_after(exc),
        )
    if status == 401:
        return AuthError(f"Google rejected the service account credentials ({description}).")
    if status == 403:
        return AuthError(
            "The service account does not have access to this spreadsheet. "
            "Share the sheet with the service account email as an editor."
        )
    if status == 404:
        return SheetNotFoundError("Spreadsheet not found. Check the spreadsheet ID or URL.")
    if status == 400 and "unable to parse range" in lowered:
        return SheetNotFoundError(f"Sheet tab not found ({text}).")
    if status in RETRIABLE_STATUSES:
        return TransientNetworkError(f"Sheets API {description} failed with status {status}.")
    return SyncError(f"Sheets API {description} failed ({status}): {text or exc}")


class BackoffController:
    def __init__(self, base: float = 1.0, maximum: float = 8.0, attempts: int = MAX_RETRY_ATTEMPTS) -> None:
        self.base = base
        self.maximum = maximum
        self.attempts = attempts

    def schedule(self) -> List[float]:
        """Delays to wait before each retry (one fewer than the attempts)."""

        delays: List[float] = []
        for attempt in range(max(0, self.attempts - 1)):
            delays.append(min(self.base * (2**attempt), self.maximum))
        return delays


@dataclass(slots=True)
class SheetTable:
    """A full-range read of one tab."""

    header: List[str]
    rows: List[SheetRow] = field(default_factory=list)
    row_count: int = 0

    @property
    def has_header(self) -> bool:
        return bool(self.header)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------
class SheetAdapter:
    """Read and write transaction rows of a single spreadsheet tab."""

    def __init__(
        self,
        service: Any,
        *,
        refresh: Optional[Callable[[], None]] = None,
        backoff: Optional[BackoffController] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._service = service
        self._refresh = refresh
        self._backoff = backoff or BackoffController()
        self._sleep = sleep

    @classmethod
    def from_credentials(cls, credentials: Any, **kwargs: Any) -> "SheetAdapter":
        service = build("sheets", "v4", credentials=credentials, cache_discovery=False)

        def _refresh() -> None:
            credentials.refresh(Request())

        return cls(service, refresh=_refresh, **kwargs)

    # -- request execution --------------------------------------------
    def _refresh_credentials(self) -> None:
        logger.info("Sheets API returned 401; refreshing credentials")
        try:
            self._refresh()  # type: ignore[misc]
        except RefreshError as exc:
            raise AuthError(f"Google credentials could not be refreshed: {exc}") from exc
        except TransportError as exc:
            raise TransientNetworkError(f"Token refresh failed: {exc}") from exc

    def _execute(self, func: Callable[[], Any], description: str, *, retry: bool = True) -> Any:
        """Run ``func`` applying the refresh and backoff rules."""

        delays = self._backoff.schedule() if retry else []
        attempt = 0
        refreshed = False
        while True:
            try:
                return func()
            except HttpError as exc:
                if _http_status(exc) == 401 and not refreshed and self._refresh is not None:
                    refreshed = True
                    self._refresh_credentials()
                    continue
                error = translate_http_error(exc, description)
                cause: BaseException = exc
            except RefreshError as exc:
                raise AuthError(f"Google credentials were rejected during Sheets API {description}: {exc}") from exc
            except (TransportError, httplib2.HttpLib2Error, OSError) as exc:
                error = TransientNetworkError(f"Network error during Sheets API {description}: {exc}")
                cause = exc

            if not isinstance(error, TransientNetworkError) or attempt >= len(delays):
                raise error from cause
            delay = delays[attempt]
            attempt += 1
            logger.warning(
                "Sheets API %s failed (%s). Retrying in %ss (%d/%d)",
                description,
                error,
                delay,
                attempt,
                len(delays),
            )
            self._sleep(delay)

    def _values(self) -> Any:
        return self._service.spreadsheets().values()

    def _spreadsheet_get(self, spreadsheet_id: str) -> Dict[str, Any]:
        request = self._service.spreadsheets().get(spreadsheetId=spreadsheet_id, includeGridData=False)
        return self._execute(request.execute, "spreadsheets.get")

    # -- tabs -----------------------------------------------------------
    def sheet_titles(self, spreadsheet_id: str) -> List[str]:
        metadata = self._spreadsheet_get(spreadsheet_id)
        titles: List[str] = []
        for sheet in metadata.get("sheets", []) if isinstance(metadata, Mapping) else []:
            props = sheet.get("properties", {}) if isinstance(sheet, Mapping) else {}
            title = props.get("title") if isinstance(props, Mapping) else None
            if isinstance(title, str):
                titles.append(title)
        return titles

    def ensure_sheet(self, spreadsheet_id: str, sheet_name: Optional[str] = None, *, create: bool = True) -> str:
        """Return the tab title to use, creating the tab when allowed.

        Without ``sheet_name`` the first tab of the spreadsheet is used.
        """

        titles = self.sheet_titles(spreadsheet_id)
        wanted = (sheet_name or "").strip()
        if not wanted:
            if not titles:
                raise SheetNotFoundError("Spreadsheet has no tabs.")
            return titles[0]
        for title in titles:
            if title.lower() == wanted.lower():
                return title
        if not create:
            raise SheetNotFoundError(f"Sheet tab '{wanted}' not found in spreadsheet.")

        request = self._service.spreadsheets().batchUpdate(
            spreadsheetId=spreadsheet_id,
            body={
                "requests": [
                    {
                        "addSheet": {
                            "properties": {
                                "title": wanted,
                                "gridProperties": {"rowCount": 100, "columnCount": len(HEADERS)},
                            }
                        }
                    }
                ]
            },
        )
        self._execute(request.execute, "spreadsheets.batchUpdate", retry=False)
        logger.info("Created sheet tab '%s' in %s", wanted, spreadsheet_id)
        return wanted

    # -- reads ----------------------------------------------------------
    def read_table(self, spreadsheet_id: str, sheet_name: str) -> SheetTable:
        request = self._values().get(
            spreadsheetId=spreadsheet_id,
            range=_a1_range(sheet_name, f"A1:{LAST_COLUMN}"),
            majorDimension="ROWS",
        )
        payload = self._execute(request.execute, "values.get")
        values = payload.get("values", []) if isinstance(payload, Mapping) else []
        if not values:
            return SheetTable(header=[], rows=[], row_count=0)

        header = [str(cell).strip() for cell in values[0]]
        while header and not header[-1]:
            header.pop()
        if header and header != HEADERS:
            raise SchemaError(HEADERS, header)

        rows: List[SheetRow] = []
        for index, raw in enumerate(values[1:], start=2):
            cells = [("" if cell is None else str(cell)) for cell in list(raw)[: len(HEADERS)]]
            cells.extend([""] * (len(HEADERS) - len(cells)))
            row = SheetRow(cells=tuple(cells), row_index=index)
            if not row.is_blank():
                rows.append(row)
        return SheetTable(header=header, rows=rows, row_count=len(values))

    def read_range(self, spreadsheet_id: str, sheet_name: str) -> List[SheetRow]:
        """Return every non-blank data row of ``sheet_name``."""

        return self.read_table(spreadsheet_id, sheet_name).rows

    def row_count(self, spreadsheet_id: str, sheet_name: str) -> int:
        """Number of rows in use, header included."""

        request = self._values().get(
            spreadsheetId=spreadsheet_id,
            range=_a1_range(sheet_name, f"A1:{LAST_COLUMN}"),
            majorDimension="ROWS",
        )
        payload = self._execute(request.execute, "values.get")
        return len(payload.get("values", []) if isinstance(payload, Mapping) else [])

    # -- writes ---------------------------------------------------------
    def _batch_update(self, spreadsheet_id: str, range_spec: str, rows: Sequence[Sequence[str]]) -> None:
        request = self._values().batchUpdate(
            spreadsheetId=spreadsheet_id,
            body={
                "valueInputOption": "RAW",
                "data": [{"range": range_spec, "values": [list(row) for row in rows]}],
            },
        )
        self._execute(request.execute, "values.batchUpdate")

    def write_header(self, spreadsheet_id: str, sheet_name: str) -> None:
        self._batch_update(spreadsheet_id, _a1_range(sheet_name, f"A1:{LAST_COLUMN}1"), [HEADERS])
        logger.info("Wrote header row to '%s'", sheet_name)

    def write_rows(
        self,
        spreadsheet_id: str,
        sheet_name: str,
        start_row: int,
        rows: Sequence[Sequence[str]],
    ) -> int:
        """Overwrite a contiguous block starting at ``start_row``."""

        if start_row < 2:
            raise ValueError("start_row must be >= 2; row 1 holds the header")
        if not rows:
            return 0
        end_row = start_row + len(rows) - 1
        range_spec = _a1_range(sheet_name, f"A{start_row}:{LAST_COLUMN}{end_row}")
        self._batch_update(spreadsheet_id, range_spec, rows)
        logger.debug("Wrote %d rows to %s", len(rows), range_spec)
        return len(rows)

    def append_rows(self, spreadsheet_id: str, sheet_name: str, rows: Sequence[Sequence[str]]) -> List[int]:
        """Append ``rows`` after the last used row and return their row indices.

        The current row count is read right before writing.  The append itself
        is done server side, so the indices come from the API response; a row
        count that grew in between only changes where the block lands.
        """

        if not rows:
            return []
        expected_start = self.row_count(spreadsheet_id, sheet_name) + 1
        request = self._values().append(
            spreadsheetId=spreadsheet_id,
            range=_a1_range(sheet_name, f"A1:{LAST_COLUMN}"),
            valueInputOption="RAW",
            insertDataOption="INSERT_ROWS",
            body={"majorDimension": "ROWS", "values": [list(row) for row in rows]},
        )
        response = self._execute(request.execute, "values.append", retry=False)
        updated_range = ""
        if isinstance(response, Mapping):
            updates = response.get("updates", {})
            if isinstance(updates, Mapping):
                updated_range = str(updates.get("updatedRange", ""))
        match = _RANGE_START_RE.search(updated_range)
        start = int(match.group(1)) if match else expected_start
        if start != expected_start:
            logger.warning(
                "Sheet '%s' changed size before append; rows landed at %d instead of %d",
                sheet_name,
                start,
                expected_start,
            )
        return list(range(start, start + len(rows)))


__all__ = [
    "BackoffController",
    "LAST_COLUMN",
    "MAX_RETRY_ATTEMPTS",
    "SheetAdapter",
    "SheetTable",
    "parse_spreadsheet_id",
    "translate_http_error",
]
