"""Helpers for validating and loading Google service account credentials."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

from google.oauth2 import service_account

from ledgersync.errors import ConfigurationError

__all__ = [
    "CredentialsFileInvalidError",
    "EMAIL_ENV_VAR",
    "PRIVATE_KEY_ENV_VAR",
    "REQUIRED_FIELDS",
    "SCOPES",
    "build_credentials",
    "has_env_credentials",
    "load_service_account_data",
    "service_account_from_env",
]

SCOPES: Iterable[str] = ("https://www.googleapis.com/auth/spreadsheets",)
EMAIL_ENV_VAR = "GOOGLE_SERVICE_ACCOUNT_EMAIL"
PRIVATE_KEY_ENV_VAR = "GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY"
TOKEN_URI = "https://oauth2.googleapis.com/token"


class CredentialsFileInvalidError(ConfigurationError):
    """Raised when a service account JSON file is missing required data."""


REQUIRED_FIELDS: Iterable[str] = (
    "type",
    "project_id",
    "private_key_id",
    "private_key",
    "client_email",
    "client_id",
    "token_uri",
)


def _normalise_private_key(key: str) -> str:
    key = key.replace("\r\n", "\n").replace("\r", "\n")
    key = key.replace("\\n", "\n")
    if not key.endswith("\n"):
        key += "\n"
    return key


def _load_json(path: Path) -> Mapping[str, object]:
    try:
        with path.open("r", encoding="utf-8-sig") as handle:
            raw = handle.read()
    except OSError as exc:
        raise CredentialsFileInvalidError(f"Credentials file could not be read: {exc}") from exc

    payload_text = raw.lstrip("\ufeff").strip()
    if not payload_text:
        raise CredentialsFileInvalidError("Service account JSON is empty.")

    try:
        return json.loads(payload_text)
    except json.JSONDecodeError as exc:
        raise CredentialsFileInvalidError(f"Service account JSON could not be parsed: {exc.msg}") from exc


def _validate_payload(payload: Mapping[str, object]) -> Dict[str, object]:
    data: Dict[str, object] = dict(payload)
    missing: list[str] = []

    for field in REQUIRED_FIELDS:
        value = data.get(field)
        if not isinstance(value, str) or not value.strip():
            missing.append(field)

    if data.get("type") != "service_account":
        missing.append("type")

    if missing:
        ordered = ", ".join(sorted(dict.fromkeys(missing)))
        raise CredentialsFileInvalidError(f"Service account JSON is missing fields: {ordered}")

    private_key = str(data["private_key"])
    data["private_key"] = _normalise_private_key(private_key)
    return data


def load_service_account_data(path: Path) -> Dict[str, object]:
    """Return validated service account data without modifying ``path``."""

    return _validate_payload(_load_json(path))


def has_env_credentials(environ: Optional[Mapping[str, str]] = None) -> bool:
    env = os.environ if environ is None else environ
    return bool(env.get(EMAIL_ENV_VAR, "").strip() and env.get(PRIVATE_KEY_ENV_VAR, "").strip())


def service_account_from_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, object]:
    """Build service account info from the email/private key environment variables."""

    env = os.environ if environ is None else environ
    email = env.get(EMAIL_ENV_VAR, "").strip()
    key = env.get(PRIVATE_KEY_ENV_VAR, "").strip()
    missing = [name for name, value in ((EMAIL_ENV_VAR, email), (PRIVATE_KEY_ENV_VAR, key)) if not value]
    if missing:
        raise ConfigurationError(
            "Google Sheets integration is not configured. Missing environment variables: "
            + ", ".join(missing)
        )
    return {
        "type": "service_account",
        "client_email": email,
        "private_key": _normalise_private_key(key),
        "token_uri": TOKEN_URI,
    }


def build_credentials(
    credential_path: Optional[str] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> service_account.Credentials:
    """Return service account credentials from a JSON file or the environment.

    The credentials file wins when it exists; otherwise the
    ``GOOGLE_SERVICE_ACCOUNT_*`` variables are used.
    """

    info: Dict[str, object]
    if credential_path and Path(os.path.expanduser(credential_path)).exists():
        info = load_service_account_data(Path(os.path.expanduser(credential_path)).resolve())
    else:
        info = service_account_from_env(environ)
    try:
        return service_account.Credentials.from_service_account_info(info, scopes=list(SCOPES))
    except ValueError as exc:
        raise CredentialsFileInvalidError(str(exc) or "Service account private key is invalid.") from exc
