"""Blocking IMAP session for INBOX search and fetch."""

from __future__ import annotations

import email
import logging
import ssl
from email.message import Message
from email.policy import default as email_policy

import certifi
from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError

from .constants import IMAP_DEFAULT_PORT, IMAP_MAILBOX, IMAP_TIMEOUT_SECONDS
from .errors import AuthExpired
from .mime import get_header, part_from_email
from .models import ProviderMessage

logger = logging.getLogger(__name__)

_SEEN = b"\\Seen"


def imap_external_id(host: str, uid: int) -> str:
    return f"imap:{host}:{IMAP_MAILBOX}:{uid}"


def uid_from_external_id(external_id: str) -> int:
    return int(external_id.rsplit(":", 1)[-1])


def parse_raw_message(raw: bytes) -> Message:
    return email.message_from_bytes(raw, policy=email_policy)


def provider_message_from_raw(host: str, uid: int, raw: bytes, flags: tuple = ()) -> ProviderMessage:
    """Build a :class:`ProviderMessage` from a fetched RFC 822 message."""
    message = parse_raw_message(raw)
    headers = [(k, str(v)) for k, v in message.items()]
    return ProviderMessage(
        external_id=imap_external_id(host, uid),
        payload=part_from_email(message),
        headers=headers,
        thread_id=get_header(headers, "Message-ID") or None,
        is_read=_SEEN in flags,
        uid=uid,
    )


class ImapMailbox:
    """One logged-in IMAP connection, used as a context manager."""

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        port: int | None = None,
        tls: bool = True,
        account_id: int | None = None,
        timeout: int = IMAP_TIMEOUT_SECONDS,
    ) -> None:
        self.host = host
        self.username = username
        self.password = password
        self.port = port or IMAP_DEFAULT_PORT
        self.tls = tls
        self.account_id = account_id
        self.timeout = timeout
        self.client: IMAPClient | None = None

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context(cafile=certifi.where())
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        return context

    def __enter__(self) -> ImapMailbox:
        self.client = IMAPClient(
            host=self.host,
            port=self.port,
            ssl=self.tls,
            ssl_context=self._ssl_context() if self.tls else None,
            timeout=self.timeout,
            use_uid=True,
        )
        try:
            self.client.login(self.username, self.password)
        except LoginError as exc:
            self.client.shutdown()
            self.client = None
            raise AuthExpired(self.account_id, "IMAP login rejected") from exc
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self.client is None:
            return
        try:
            self.client.logout()
        except (IMAPClientError, OSError) as exc:
            logger.warning("Error during IMAP logout from %s: %s", self.host, exc)
        finally:
            self.client = None

    def select_inbox(self) -> int:
        """Select INBOX read-only and return its UIDVALIDITY."""
        info = self.client.select_folder(IMAP_MAILBOX, readonly=True)
        return int(info[b"UIDVALIDITY"])

    def search(self, criteria: list) -> list[int]:
        return sorted(self.client.search(criteria))

    def fetch(self, uids: list[int]) -> dict[int, tuple[bytes, tuple]]:
        """Fetch raw messages and flags without setting \\Seen.

        Returns ``{uid: (rfc822_bytes, flags)}``; UIDs the server did not
        return are absent. Parsing is left to the caller.
        """
        if not uids:
            return {}
        response = self.client.fetch(uids, [b"FLAGS", b"BODY.PEEK[]"])
        messages: dict[int, tuple[bytes, tuple]] = {}
        for uid, data in response.items():
            raw = data.get(b"BODY[]")
            if raw is None:
                continue
            messages[uid] = (raw, tuple(data.get(b"FLAGS", ())))
        return messages

    def fetch_raw(self, uid: int) -> bytes | None:
        response = self.client.fetch([uid], [b"BODY.PEEK[]"])
        data = response.get(uid)
        return data.get(b"BODY[]") if data else None
