"""OAuth 2.0 for the Gmail and Drive APIs, with a scope-checked token cache."""

from __future__ import annotations

import logging
from pathlib import Path

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import Resource, build

from gmail_forwarder.core.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

GMAIL_SCOPE = "https://www.googleapis.com/auth/gmail.modify"
DRIVE_SCOPE = "https://www.googleapis.com/auth/drive.file"


def scopes_for(archive_backend: str) -> list[str]:
    """Scopes a run needs; Drive access only when archiving to Drive."""
    if archive_backend == "drive":
        return [GMAIL_SCOPE, DRIVE_SCOPE]
    return [GMAIL_SCOPE]


def authenticate(
    credentials_path: Path,
    token_path: Path,
    scopes: list[str] | None = None,
    *,
    interactive: bool = True,
) -> Credentials:
    """Return valid credentials, reusing and refreshing the cached token.

    A cached token granted for fewer scopes than requested is discarded so the
    consent screen asks again.

    Args:
        credentials_path: Path to OAuth 2.0 client credentials JSON.
        token_path: Path to store/load the OAuth token.
        scopes: Scopes to request; both Gmail and Drive when omitted.
        interactive: Whether a browser consent flow may be started.

    Raises:
        AuthenticationError: If no valid credentials can be obtained.
    """
    scopes = scopes or scopes_for("drive")
    creds = _load_cached(token_path, scopes)

    if creds and creds.valid:
        return creds

    if creds and creds.expired and creds.refresh_token:
        try:
            creds.refresh(Request())
            _save_token(creds, token_path)
            logger.debug("Refreshed cached token")
            return creds
        except Exception as e:
            logger.warning("Token refresh failed, re-authenticating: %s", e)

    if not interactive:
        raise AuthenticationError(
            f"No usable token at {token_path}. Run `cli.py auth` once in a terminal."
        )

    if not credentials_path.exists():
        raise AuthenticationError(
            f"Credentials file not found: {credentials_path}. "
            "Download it from Google Cloud Console."
        )

    try:
        flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), scopes)
        creds = flow.run_local_server(port=0)
    except Exception as e:
        raise AuthenticationError(f"OAuth flow failed: {e}") from e

    _save_token(creds, token_path)
    logger.info("Authentication successful, token cached at %s", token_path)
    return creds


def build_gmail_service(creds: Credentials) -> Resource:
    return build("gmail", "v1", credentials=creds, cache_discovery=False)


def build_drive_service(creds: Credentials) -> Resource:
    return build("drive", "v3", credentials=creds, cache_discovery=False)


def _load_cached(token_path: Path, scopes: list[str]) -> Credentials | None:
    if not token_path.exists():
        return None
    try:
        creds = Credentials.from_authorized_user_file(str(token_path))
    except Exception as e:
        logger.warning("Failed to load cached token: %s", e)
        return None

    if not creds.has_scopes(scopes):
        logger.info("Cached token lacks required scopes, consent needed again")
        return None
    return creds


def _save_token(creds: Credentials, token_path: Path) -> None:
    token_path.parent.mkdir(parents=True, exist_ok=True)
    token_path.write_text(creds.to_json())
