"""Credential refresh for connected accounts.

Two refresh paths exist. ``direct-oauth`` accounts hold a Google refresh
token and are refreshed against Google's token endpoint through
google-auth. ``broker-refresh`` accounts hold a single-use refresh token of
an identity broker, which hands back a fresh Google access token together
with a rotated broker token; both are persisted in one write.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import requests
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from .config import Settings
from .constants import (
    BROKER_ACCESS_TOKEN_TTL,
    BROKER_TOKEN_URL,
    GOOGLE_TOKEN_URI,
    HTTP_TIMEOUT_SECONDS,
    TOKEN_REFRESH_BUFFER,
)
from .errors import AuthExpired
from .models import Account, AuthSource, Provider, TokenResult
from .store import MailStore

logger = logging.getLogger(__name__)


class BrokerRefreshError(Exception):
    """The identity broker rejected a refresh request."""


@dataclass
class BrokerTokens:
    access_token: str
    refresh_token: str
    expires_at: datetime


class BrokerClient:
    """Refresh-token exchange against the identity broker."""

    def __init__(
        self,
        api_key: str,
        client_id: str,
        session: requests.Session | None = None,
        token_url: str = BROKER_TOKEN_URL,
    ) -> None:
        self.api_key = api_key
        self.client_id = client_id
        self.token_url = token_url
        self._session = session or requests.Session()

    def refresh(self, refresh_token: str) -> BrokerTokens:
        if not self.api_key or not self.client_id:
            raise BrokerRefreshError("identity broker is not configured")

        resp = self._session.post(
            self.token_url,
            json={
                "client_id": self.client_id,
                "client_secret": self.api_key,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            timeout=HTTP_TIMEOUT_SECONDS,
        )
        if resp.status_code in (400, 401, 403):
            raise BrokerRefreshError(f"broker refused refresh ({resp.status_code}): {resp.text[:200]}")
        resp.raise_for_status()

        data = resp.json()
        oauth_tokens = data.get("oauth_tokens") or data.get("oauthTokens") or {}
        access_token = oauth_tokens.get("access_token") or oauth_tokens.get("accessToken")
        rotated = data.get("refresh_token") or data.get("refreshToken")
        if not access_token:
            raise BrokerRefreshError("no provider access token in broker response")
        if not rotated:
            raise BrokerRefreshError("no rotated refresh token in broker response")

        expires_at_raw = oauth_tokens.get("expires_at") or oauth_tokens.get("expiresAt")
        if expires_at_raw:
            expires_at = datetime.fromtimestamp(int(expires_at_raw), tz=timezone.utc)
        else:
            expires_at = datetime.now(timezone.utc) + BROKER_ACCESS_TOKEN_TTL
        return BrokerTokens(access_token=access_token, refresh_token=rotated, expires_at=expires_at)


class CredentialRefresher:
    """Decides refresh-or-reuse for an account and persists rotated tokens."""

    def __init__(
        self,
        store: MailStore,
        settings: Settings | None = None,
        broker: BrokerClient | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or Settings.from_env()
        self.broker = broker or BrokerClient(
            self.settings.broker_api_key.get_secret_value(), self.settings.broker_client_id
        )

    @staticmethod
    def needs_refresh(account: Account, now: datetime) -> bool:
        if not account.access_token:
            return True
        if account.token_expires_at is None:
            return False
        return now >= account.token_expires_at - TOKEN_REFRESH_BUFFER

    def ensure_valid_token(self, account: Account, now: datetime | None = None) -> TokenResult:
        """Return a usable access token, refreshing it when it is within the buffer.

        Raises AuthExpired when a refresh is needed and fails. IMAP accounts
        have no token; their stored password is returned unchanged.
        """
        if account.provider == Provider.IMAP or account.auth_source == AuthSource.PASSWORD:
            return TokenResult(access_token=None, refreshed=False, password=account.password)

        now = now or datetime.now(timezone.utc)
        if not self.needs_refresh(account, now):
            return TokenResult(access_token=account.access_token, refreshed=False)

        if not account.refresh_token:
            raise AuthExpired(account.id, "token expired and no refresh token is stored")

        used_refresh_token = account.refresh_token
        try:
            if account.auth_source == AuthSource.BROKER_REFRESH:
                tokens = self.broker.refresh(used_refresh_token)
                access_token, expires_at, rotated = tokens.access_token, tokens.expires_at, tokens.refresh_token
            else:
                access_token, expires_at = self._refresh_direct(account)
                rotated = None
        except (RefreshError, TransportError, BrokerRefreshError, requests.RequestException) as exc:
            recovered = self._reread_rotated(account, used_refresh_token, now)
            if recovered is not None:
                return recovered
            logger.warning("Token refresh failed for account %s: %s", account.id, exc)
            raise AuthExpired(account.id, str(exc)) from exc

        self.store.update_account_tokens(account.id, access_token, expires_at, refresh_token=rotated)
        account.access_token = access_token
        account.token_expires_at = expires_at
        if rotated is not None:
            account.refresh_token = rotated
        account.auth_error = None
        logger.info("Refreshed %s token for account %s", account.auth_source.value, account.id)
        return TokenResult(access_token=access_token, refreshed=True)

    def _refresh_direct(self, account: Account) -> tuple[str, datetime]:
        client_secret = self.settings.google_client_secret.get_secret_value()
        if not self.settings.google_client_id or not client_secret:
            raise RefreshError("Google OAuth client is not configured")
        creds = Credentials(
            token=None,
            refresh_token=account.refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.settings.google_client_id,
            client_secret=client_secret,
        )
        creds.refresh(Request())
        expiry = creds.expiry
        if expiry is None:
            expiry = datetime.now(timezone.utc) + timedelta(hours=1)
        elif expiry.tzinfo is None:
            # google-auth reports naive UTC
            expiry = expiry.replace(tzinfo=timezone.utc)
        return creds.token, expiry

    def _reread_rotated(self, account: Account, used_refresh_token: str, now: datetime) -> TokenResult | None:
        """Recover when a concurrent sync already rotated the token.

        If the stored refresh token moved on and the stored access token is
        fresh, the other run's refresh is adopted instead of failing.
        """
        current = self.store.get_account(account.id)
        if current.refresh_token == used_refresh_token:
            return None
        if self.needs_refresh(current, now):
            return None
        logger.info("Account %s was refreshed concurrently; using the stored token", account.id)
        account.access_token = current.access_token
        account.refresh_token = current.refresh_token
        account.token_expires_at = current.token_expires_at
        return TokenResult(access_token=current.access_token, refreshed=False)
