"""Centralised helpers for managing ledgersync application directories."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

_APP_ENV_VARS: Iterable[str] = ("LEDGERSYNC_HOME",)


def _detect_base_directory() -> Path:
    for env_var in _APP_ENV_VARS:
        value = os.environ.get(env_var)
        if value:
            return Path(value).expanduser().resolve()
    return Path.home().resolve() / ".ledgersync"


APP_DIR: Path = _detect_base_directory()
LOGS_DIR: Path = APP_DIR / "logs"
CREDENTIALS_DIR: Path = APP_DIR / "credentials"


def ensure_directory(path: Path) -> Path:
    """Ensure that ``path`` exists, returning the :class:`~pathlib.Path`."""

    path.mkdir(parents=True, exist_ok=True)
    return path


def ensure_app_structure() -> None:
    """Create the base directories required for application data."""

    for directory in (APP_DIR, LOGS_DIR, CREDENTIALS_DIR):
        ensure_directory(directory)


def data_path(*parts: str) -> Path:
    """Return a path rooted inside :data:`APP_DIR`, creating parent directories."""

    ensure_app_structure()
    target = APP_DIR.joinpath(*parts)
    if target.parent and not target.parent.exists():
        target.parent.mkdir(parents=True, exist_ok=True)
    return target


def logs_path(*parts: str) -> Path:
    """Return a path inside the log directory."""

    ensure_directory(LOGS_DIR)
    return LOGS_DIR.joinpath(*parts)


def credentials_path(*parts: str) -> Path:
    """Return a path inside the credentials directory."""

    ensure_directory(CREDENTIALS_DIR)
    return CREDENTIALS_DIR.joinpath(*parts)


__all__ = [
    "APP_DIR",
    "LOGS_DIR",
    "CREDENTIALS_DIR",
    "data_path",
    "logs_path",
    "credentials_path",
    "ensure_app_structure",
    "ensure_directory",
]
