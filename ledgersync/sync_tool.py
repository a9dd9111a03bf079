"""Tool entry point used by the assistant layer to trigger a sheet sync."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from ledgersync.errors import ConfigurationError
from ledgersync.google_credentials import EMAIL_ENV_VAR, PRIVATE_KEY_ENV_VAR, has_env_credentials
from ledgersync.models import Direction, SyncResult
from ledgersync.sheet_adapter import parse_spreadsheet_id
from ledgersync.sync_service import GoogleSheetsSyncService
from settings import SyncSettings, load_sync_settings

logger = logging.getLogger(__name__)

ServiceFactory = Callable[[SyncSettings], GoogleSheetsSyncService]


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'' if count == 1 else 's'}"


def validate_configuration(settings: SyncSettings, environ: Optional[Mapping[str, str]] = None) -> None:
    """Raise ``ConfigurationError`` when no service account is available."""

    credential_path = settings.credential_path
    if credential_path and Path(os.path.expanduser(credential_path)).exists():
        return
    if has_env_credentials(environ):
        return
    raise ConfigurationError(
        "Google Sheets integration is not configured. Set "
        f"{EMAIL_ENV_VAR} and {PRIVATE_KEY_ENV_VAR}, or place a service account "
        f"JSON file at {credential_path or 'the configured credentials path'}."
    )


def summarize(result: SyncResult) -> str:
    """Return a one-line, human readable description of ``result``."""

    if not result.success:
        return f"Sync failed: {result.error}"
    parts = []
    if result.rows_pushed:
        parts.append(f"{_plural(result.rows_pushed, 'row')} pushed to sheet")
    if result.rows_updated:
        parts.append(f"{_plural(result.rows_updated, 'row')} updated in sheet")
    if result.rows_pulled:
        parts.append(f"{_plural(result.rows_pulled, 'row')} pulled from sheet")
    if result.conflicts_detected:
        parts.append(f"{_plural(result.conflicts_detected, 'conflict')} detected")
    if not parts:
        return "Sync completed with no changes"
    if result.rows_skipped:
        parts.append(f"{_plural(result.rows_skipped, 'row')} skipped")
    return ", ".join(parts)


def execute_sync_sheets(
    params: Mapping[str, Any],
    user_id: str,
    *,
    settings: Optional[SyncSettings] = None,
    service_factory: Optional[ServiceFactory] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Run one sync for ``user_id`` and report it as a plain dictionary.

    ``params`` accepts ``spreadsheet_id`` (an id or a full URL, falling back
    to the configured spreadsheet), ``direction`` (default ``push``),
    ``sheet_name``, ``job_id``, ``mode`` and ``resolution_mode``.
    """

    settings = settings or load_sync_settings()
    raw_id = str(params.get("spreadsheet_id") or params.get("spreadsheet_url") or settings.spreadsheet_id or "")
    spreadsheet_id = parse_spreadsheet_id(raw_id)
    if not spreadsheet_id:
        return {"success": False, "message": "A spreadsheet id or URL is required.", "result": None}

    direction = str(params.get("direction") or Direction.PUSH.value)
    mode = params.get("mode")
    if direction == Direction.PUSH.value and not mode:
        mode = "replace"

    if service_factory is None:
        try:
            validate_configuration(settings, environ)
        except ConfigurationError as exc:
            logger.warning("Sheet sync requested without configuration: %s", exc)
            return {"success": False, "message": str(exc), "result": None}
        service_factory = GoogleSheetsSyncService.from_settings

    try:
        service = service_factory(settings)
    except ConfigurationError as exc:
        return {"success": False, "message": str(exc), "result": None}

    result = service.sync(
        user_id,
        spreadsheet_id,
        direction,
        sheet_name=params.get("sheet_name") or None,
        job_id=params.get("job_id") or None,
        mode=mode,
        resolution_mode=params.get("resolution_mode") or None,
    )
    return {"success": result.success, "message": summarize(result), "result": result.to_dict()}


__all__ = ["execute_sync_sheets", "summarize", "validate_configuration"]
