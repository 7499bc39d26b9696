"""Shared fixtures for tests."""

from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone

import pytest

from inbox_sync.config import Settings
from inbox_sync.models import Account, AuthSource, Provider
from inbox_sync.store import MailStore


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        home=tmp_path,
        google_client_id="client-id",
        google_client_secret="client-secret",
        broker_api_key="sk_test",
        broker_client_id="client_broker",
        batch_delay=0,
        rate_limit_delay=0,
    )


@pytest.fixture
def store(tmp_path):
    db = MailStore(db_path=tmp_path / "mail.db")
    yield db
    db.close()


@pytest.fixture
def gmail_account(store: MailStore) -> Account:
    return store.create_account(
        user_id="user-1",
        provider=Provider.GMAIL,
        address="me@example.com",
        auth_source=AuthSource.DIRECT_OAUTH,
        access_token="access-1",
        refresh_token="refresh-1",
        token_expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        is_primary=True,
    )


@pytest.fixture
def imap_account(store: MailStore) -> Account:
    return store.create_account(
        user_id="user-1",
        provider=Provider.IMAP,
        address="me@fastmail.test",
        auth_source=AuthSource.PASSWORD,
        password="app-password",
        imap_host="imap.fastmail.test",
        imap_port=993,
    )


@pytest.fixture
def gmail_message():
    """Build a Gmail ``messages.get`` response."""

    def _build(
        message_id: str,
        sender: str = "Alice Smith <alice@example.com>",
        subject: str = "Hello",
        plain: str = "Hi there, this is the body.",
        html: str | None = None,
        labels: list[str] | None = None,
        extra_headers: list[tuple[str, str]] | None = None,
        internal_date: int = 1_700_000_000_000,
    ) -> dict:
        headers = [("From", sender), ("To", "Me <me@example.com>"), ("Subject", subject)]
        headers += extra_headers or []
        parts = [{"mimeType": "text/plain", "body": {"data": _b64(plain), "size": len(plain)}}]
        if html is not None:
            parts.append({"mimeType": "text/html", "body": {"data": _b64(html), "size": len(html)}})
        return {
            "id": message_id,
            "threadId": f"thread-{message_id}",
            "labelIds": labels if labels is not None else ["INBOX", "UNREAD"],
            "snippet": plain[:50],
            "internalDate": str(internal_date),
            "payload": {
                "mimeType": "multipart/alternative",
                "headers": [{"name": n, "value": v} for n, v in headers],
                "parts": parts,
            },
        }

    return _build


@pytest.fixture
def raw_email():
    """Build RFC 822 bytes as an IMAP server would return them."""

    def _build(
        sender: str = "Bob <bob@example.org>",
        subject: str = "Status update",
        body: str = "The build is green again.",
        extra_headers: str = "",
    ) -> bytes:
        return (
            f"From: {sender}\r\n"
            "To: me@fastmail.test\r\n"
            f"Subject: {subject}\r\n"
            "Date: Tue, 14 Nov 2023 22:13:20 +0000\r\n"
            "Message-ID: <abc@example.org>\r\n"
            f"{extra_headers}"
            "MIME-Version: 1.0\r\n"
            'Content-Type: text/plain; charset="utf-8"\r\n'
            "\r\n"
            f"{body}\r\n"
        ).encode("utf-8")

    return _build
