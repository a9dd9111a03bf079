"""Error taxonomy shared by the sync components.

Every remote or local I/O failure is translated into one of these types at
the point where it happens.  The orchestrator only ever catches
:class:`SyncError`; anything else is a programming error and propagates.
"""
from __future__ import annotations

from typing import Optional, Sequence


class SyncError(RuntimeError):
    """Base exception for synchronisation failures."""


class ConfigurationError(SyncError):
    """Raised when credentials or settings required for a sync are missing."""


class AuthError(SyncError):
    """Raised when the Google credentials are rejected after a refresh."""


class QuotaError(SyncError):
    """Raised when the Sheets API rate limit is hit."""

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class SheetNotFoundError(SyncError):
    """Raised when the spreadsheet or the requested tab does not exist."""


class SchemaError(SyncError):
    """Raised when the header row of a tab does not match the expected columns."""

    def __init__(self, expected: Sequence[str], actual: Sequence[str]) -> None:
        self.expected = list(expected)
        self.actual = list(actual)
        super().__init__(
            "Sheet header does not match the expected columns. "
            f"Expected: {', '.join(self.expected)}. "
            f"Found: {', '.join(self.actual) or '(empty)'}."
        )


class TransientNetworkError(SyncError):
    """Raised when a network or 5xx failure persists after retrying."""


class DeadlineExceededError(SyncError):
    """Raised when a sync pass runs past its deadline."""


class LocalStoreError(SyncError):
    """Raised when the local SQLite store cannot be read or written."""


__all__ = [
    "AuthError",
    "ConfigurationError",
    "DeadlineExceededError",
    "LocalStoreError",
    "QuotaError",
    "SchemaError",
    "SheetNotFoundError",
    "SyncError",
    "TransientNetworkError",
]
