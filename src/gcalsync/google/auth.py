"""OAuth credentials for the Google Calendar API.

Responsibilities
- Locate the OAuth client secrets: GOOGLE_CREDENTIALS_JSON (inline),
  GOOGLE_CREDENTIALS_FILE (path) or `google.credentials_file`.
- Keep the authorized user token in `google.token_store`, refreshing it
  headlessly when expired and writing the refreshed token back (mode 0600).
- Run the installed-app consent flow once when no usable token exists and
  interaction is allowed.

Security
- Tokens are never logged; the redacting log filter masks token-like values
  that slip into log records.
"""

from __future__ import annotations

import json
import logging
import os
import stat
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from ..config import GoogleConfig

__all__ = ["SCOPES_CALENDAR", "AuthError", "get_credentials", "read_client_config"]

log = logging.getLogger(__name__)

# Read/write: the engine inserts, updates and deletes remote events
SCOPES_CALENDAR: list[str] = [
    "https://www.googleapis.com/auth/calendar",
]


class AuthError(RuntimeError):
    """No usable credentials could be obtained."""


def read_client_config(google_cfg: GoogleConfig) -> dict[str, Any]:
    """OAuth client secrets, from the environment first, then the configured file."""
    inline = os.getenv("GOOGLE_CREDENTIALS_JSON")
    if inline:
        try:
            return json.loads(inline)
        except json.JSONDecodeError as exc:
            raise ValueError("Invalid JSON in GOOGLE_CREDENTIALS_JSON") from exc

    file_path = os.getenv("GOOGLE_CREDENTIALS_FILE") or google_cfg.credentials_file
    if not file_path:
        raise ValueError(
            "Google credentials not provided. Set GOOGLE_CREDENTIALS_JSON, "
            "GOOGLE_CREDENTIALS_FILE or google.credentials_file"
        )
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Google credentials file not found: {path}")
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _load_token(token_store: str, scopes: Sequence[str]) -> Credentials | None:
    path = Path(token_store)
    if not path.exists():
        return None
    try:
        return Credentials.from_authorized_user_file(str(path), scopes=list(scopes))
    except (ValueError, OSError) as exc:
        log.warning("token-store-unreadable path=%s error=%s", path, exc)
        return None


def _save_token(token_store: str, creds: Credentials) -> None:
    path = Path(token_store)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        fh.write(creds.to_json())
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError as exc:
        log.warning("token-store-chmod-failed path=%s error=%s", path, exc)


def get_credentials(
    google_cfg: GoogleConfig,
    scopes: Sequence[str] = SCOPES_CALENDAR,
    *,
    allow_interactive: bool = True,
) -> Credentials:
    """Credentials ready for googleapiclient.

    - token store first, refreshed when expired and saved back;
    - otherwise the browser consent flow when `allow_interactive`;
    - otherwise AuthError.
    """
    creds = _load_token(google_cfg.token_store, scopes)
    if creds is not None:
        if creds.expired and creds.refresh_token:
            try:
                creds.refresh(Request())
            except RefreshError as exc:
                log.warning("token-refresh-failed error=%s", exc)
            else:
                _save_token(google_cfg.token_store, creds)
        if creds.valid:
            return creds

    if not allow_interactive:
        raise AuthError(
            "No valid Google token found and interactive login is disabled. "
            "Run 'gcalsync sync' once on a machine with a browser to create the token store."
        )
    flow = InstalledAppFlow.from_client_config(read_client_config(google_cfg), scopes=list(scopes))
    creds = flow.run_local_server(
        open_browser=True, host="localhost", port=0, authorization_prompt_message=""
    )
    _save_token(google_cfg.token_store, creds)
    log.info("token-store-created path=%s", google_cfg.token_store)
    return creds
