"""Interactive Gmail connection via the installed-app OAuth flow."""

from __future__ import annotations

from datetime import timezone
from pathlib import Path

from google_auth_oauthlib.flow import InstalledAppFlow

from .constants import CREDENTIALS_PATH, SCOPES
from .gmail_client import GmailClient
from .models import Account, AuthSource, Provider
from .store import MailStore


def run_consent_flow(credentials_path: Path | None = None):
    """Run the browser consent flow and return google-auth credentials.

    Requires the OAuth client secrets file downloaded from the Google Cloud
    Console at ``credentials_path`` (default CREDENTIALS_PATH).
    """
    path = Path(credentials_path or CREDENTIALS_PATH)
    if not path.exists():
        raise FileNotFoundError(
            f"Credentials file not found at {path}.\n"
            "Download your OAuth client credentials from the Google Cloud Console "
            "and save them as:\n"
            f"  {path}"
        )
    flow = InstalledAppFlow.from_client_secrets_file(str(path), SCOPES)
    return flow.run_local_server(port=0)


def connect_gmail_account(
    store: MailStore,
    user_id: str,
    credentials_path: Path | None = None,
    is_primary: bool = False,
) -> Account:
    """Exchange an authorization code for tokens and store a direct-oauth account."""
    creds = run_consent_flow(credentials_path)
    address = GmailClient(creds.token).get_profile_email()

    expiry = creds.expiry
    if expiry is not None and expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)

    return store.create_account(
        user_id=user_id,
        provider=Provider.GMAIL,
        address=address,
        auth_source=AuthSource.DIRECT_OAUTH,
        access_token=creds.token,
        refresh_token=creds.refresh_token,
        token_expires_at=expiry,
        is_primary=is_primary,
    )
