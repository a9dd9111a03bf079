"""Configuration helpers for the Google Sheets sync engine."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from typing import Dict, Mapping, Optional

from ledgersync import app_paths
from ledgersync.models import ResolutionMode


logger = logging.getLogger(__name__)


SYNC_SETTINGS_PATH = str(app_paths.data_path("sync_settings.json"))
DEFAULT_DB_PATH = os.getenv("LEDGERSYNC_DB_PATH", str(app_paths.data_path("ledgersync.db")))
DEFAULT_SPREADSHEET_ID = os.getenv("LEDGERSYNC_SPREADSHEET_ID", "")
DEFAULT_CREDENTIALS_PATH = os.getenv(
    "LEDGERSYNC_CREDENTIALS_PATH",
    str(app_paths.credentials_path("service_account.json")),
)
DEFAULT_SERVICE_ACCOUNT_EMAIL = os.getenv("GOOGLE_SERVICE_ACCOUNT_EMAIL", "")
DEFAULT_SHEET_NAME = "Transactions"


@dataclass
class SyncSettings:
    spreadsheet_id: str = DEFAULT_SPREADSHEET_ID
    credential_path: str = DEFAULT_CREDENTIALS_PATH
    service_account_email: str = DEFAULT_SERVICE_ACCOUNT_EMAIL
    db_path: str = DEFAULT_DB_PATH
    sheet_name: str = DEFAULT_SHEET_NAME
    resolution_mode: str = ResolutionMode.MANUAL.value
    batch_rows: int = 500
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 8.0
    deadline_seconds: float = 120.0

    def to_json(self) -> Dict[str, object]:
        return asdict(self)


_DEFAULTS: Dict[str, object] = SyncSettings().to_json()

# name -> (minimum, maximum)
_NUMERIC_LIMITS: Mapping[str, tuple] = {
    "batch_rows": (1, 1000),
    "max_attempts": (1, 5),
    "backoff_base_seconds": (0.0, 30.0),
    "backoff_max_seconds": (0.0, 120.0),
    "deadline_seconds": (1.0, 3600.0),
}


def _clamp(key: str, value: object) -> object:
    low, high = _NUMERIC_LIMITS[key]
    caster = int if isinstance(_DEFAULTS[key], int) else float
    try:
        number = caster(value)  # type: ignore[operator]
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid value for %s: %r", key, value)
        return _DEFAULTS[key]
    return max(low, min(high, number))


def _ensure_sync_settings(path: str = SYNC_SETTINGS_PATH) -> Dict[str, object]:
    if not os.path.exists(path):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(_DEFAULTS, handle, indent=2)
        return dict(_DEFAULTS)

    with open(path, "r", encoding="utf-8") as handle:
        try:
            data = json.load(handle)
        except json.JSONDecodeError:
            logger.warning("Settings file %s is not valid JSON; using defaults", path)
            data = {}

    merged: Dict[str, object] = dict(_DEFAULTS)
    if not isinstance(data, Mapping):
        return merged
    for key, value in data.items():
        if key in _NUMERIC_LIMITS:
            merged[key] = _clamp(key, value)
        elif key == "resolution_mode":
            try:
                merged[key] = ResolutionMode(str(value)).value
            except ValueError:
                logger.warning("Unknown resolution mode %r; using manual", value)
        elif key in merged and isinstance(value, str):
            merged[key] = value
    return merged


def load_sync_settings(path: Optional[str] = None) -> SyncSettings:
    data = _ensure_sync_settings(path or SYNC_SETTINGS_PATH)
    return SyncSettings(**{key: data[key] for key in _DEFAULTS})


def save_sync_settings(settings: SyncSettings, path: Optional[str] = None) -> None:
    target = path or SYNC_SETTINGS_PATH
    directory = os.path.dirname(target)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(target, "w", encoding="utf-8") as handle:
        json.dump(settings.to_json(), handle, indent=2)


__all__ = [
    "DEFAULT_SHEET_NAME",
    "SYNC_SETTINGS_PATH",
    "SyncSettings",
    "load_sync_settings",
    "save_sync_settings",
]
