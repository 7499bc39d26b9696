"""SQLite persistence with idempotent upserts and transparent PII encryption.

Every PII-bearing column (subjects, previews, bodies, contact and sender
names, credentials, summaries) goes through :class:`~inbox_sync.codec.PiiCodec`
on the way in and out. Lookup keys (external ids, email addresses) stay in
clear text so the unique indexes can enforce deduplication.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path

from .classifier import can_transition, determine_unsubscribe_method
from .codec import PiiCodec
from .constants import STORE_DB_PATH
from .errors import AccountNotFound, MessageNotFound, WriteConflict
from .models import (
    Account,
    AttachmentMeta,
    AuthSource,
    Contact,
    DecodedBody,
    Direction,
    EmailSummary,
    MessageBody,
    MessageRecord,
    Provider,
    StoredAttachment,
    StoredMessage,
    Subscription,
    SubscriptionStatus,
    UnsubscribeMethod,
)

logger = logging.getLogger(__name__)

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS user_keys (
    user_id TEXT PRIMARY KEY,
    key BLOB NOT NULL
);

CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    address TEXT NOT NULL,
    auth_source TEXT NOT NULL,
    access_token TEXT,
    refresh_token TEXT,
    token_expires_at INTEGER,
    password TEXT,
    imap_host TEXT,
    imap_port INTEGER,
    imap_tls INTEGER DEFAULT 1,
    last_synced_uid INTEGER,
    uid_validity INTEGER,
    is_primary INTEGER DEFAULT 0,
    connected INTEGER DEFAULT 1,
    auth_error TEXT,
    last_synced_at INTEGER,
    UNIQUE (user_id, provider, address)
);

CREATE TABLE IF NOT EXISTS contacts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    email TEXT NOT NULL,
    name TEXT,
    email_count INTEGER NOT NULL DEFAULT 0,
    last_email_at INTEGER NOT NULL,
    UNIQUE (user_id, email)
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    user_id TEXT NOT NULL,
    account_id INTEGER NOT NULL,
    thread_id TEXT,
    from_contact_id INTEGER NOT NULL,
    to_contact_ids_json TEXT NOT NULL DEFAULT '[]',
    cc_contact_ids_json TEXT NOT NULL DEFAULT '[]',
    subject TEXT,
    preview TEXT,
    received_at INTEGER NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0,
    is_triaged INTEGER NOT NULL DEFAULT 0,
    direction TEXT,
    is_subscription INTEGER,
    list_unsubscribe TEXT,
    list_unsubscribe_post INTEGER,
    UNIQUE (external_id, provider),
    FOREIGN KEY (account_id) REFERENCES accounts(id),
    FOREIGN KEY (from_contact_id) REFERENCES contacts(id)
);

CREATE INDEX IF NOT EXISTS idx_messages_user_received ON messages(user_id, received_at);

CREATE TABLE IF NOT EXISTS message_bodies (
    message_id INTEGER PRIMARY KEY,
    user_id TEXT NOT NULL,
    html TEXT,
    plain TEXT,
    FOREIGN KEY (message_id) REFERENCES messages(id)
);

CREATE TABLE IF NOT EXISTS attachments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id INTEGER NOT NULL,
    filename TEXT NOT NULL,
    mime_type TEXT NOT NULL,
    size INTEGER NOT NULL DEFAULT 0,
    attachment_id TEXT NOT NULL,
    content_id TEXT,
    blob_path TEXT,
    UNIQUE (message_id, attachment_id),
    FOREIGN KEY (message_id) REFERENCES messages(id)
);

CREATE TABLE IF NOT EXISTS subscriptions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    sender_email TEXT NOT NULL,
    sender_domain TEXT NOT NULL,
    sender_name TEXT,
    list_unsubscribe TEXT,
    list_unsubscribe_post INTEGER NOT NULL DEFAULT 0,
    unsubscribe_method TEXT NOT NULL,
    email_count INTEGER NOT NULL DEFAULT 0,
    first_email_at INTEGER NOT NULL,
    last_email_at INTEGER NOT NULL,
    status TEXT NOT NULL,
    unsubscribed_at INTEGER,
    most_recent_message_id INTEGER,
    most_recent_subject TEXT,
    UNIQUE (user_id, sender_email)
);

CREATE TABLE IF NOT EXISTS email_summaries (
    message_id INTEGER PRIMARY KEY,
    user_id TEXT NOT NULL,
    summary_json TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    FOREIGN KEY (message_id) REFERENCES messages(id)
);
"""


def _to_ms(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _from_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MailStore:
    """Persistent SQLite store for accounts, messages, contacts and subscriptions.

    A single connection is shared behind a re-entrant lock, so the store can
    be used from the event loop and from worker threads alike.
    """

    def __init__(self, db_path: Path | None = None, codec: PiiCodec | None = None) -> None:
        self.db_path = Path(db_path or STORE_DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        self.codec = codec or PiiCodec(self)

    def _create_tables(self) -> None:
        self._conn.executescript(_CREATE_TABLES_SQL)

    # --- key store (used by the codec) ---

    def get_user_key(self, user_id: str) -> bytes | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT key FROM user_keys WHERE user_id = ?", (user_id,)
            ).fetchone()
        return bytes(row["key"]) if row else None

    def create_user_key(self, user_id: str, key: bytes) -> bytes:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR IGNORE INTO user_keys (user_id, key) VALUES (?, ?)", (user_id, key)
            )
        return self.get_user_key(user_id)

    # --- helpers ---

    def _enc(self, user_id: str, value: str | None) -> str | None:
        return self.codec.encrypt(user_id, value)

    def _dec(self, user_id: str, value: str | None) -> str | None:
        return self.codec.decrypt(user_id, value)

    # --- accounts ---

    def create_account(
        self,
        user_id: str,
        provider: Provider,
        address: str,
        auth_source: AuthSource,
        access_token: str | None = None,
        refresh_token: str | None = None,
        token_expires_at: datetime | None = None,
        password: str | None = None,
        imap_host: str | None = None,
        imap_port: int | None = None,
        imap_tls: bool = True,
        is_primary: bool = False,
    ) -> Account:
        """Create an account, or reconnect an existing one for the same address."""
        address = address.strip().lower()
        self.codec.ensure_key(user_id)
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO accounts (user_id, provider, address, auth_source, access_token, "
                "refresh_token, token_expires_at, password, imap_host, imap_port, imap_tls, is_primary) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (user_id, provider, address) DO UPDATE SET "
                "auth_source = excluded.auth_source, access_token = excluded.access_token, "
                "refresh_token = excluded.refresh_token, token_expires_at = excluded.token_expires_at, "
                "password = excluded.password, imap_host = excluded.imap_host, "
                "imap_port = excluded.imap_port, imap_tls = excluded.imap_tls, "
                "connected = 1, auth_error = NULL",
                (
                    user_id,
                    provider.value,
                    address,
                    auth_source.value,
                    self._enc(user_id, access_token),
                    self._enc(user_id, refresh_token),
                    _to_ms(token_expires_at),
                    self._enc(user_id, password),
                    imap_host,
                    imap_port,
                    int(imap_tls),
                    int(is_primary),
                ),
            )
            row = self._conn.execute(
                "SELECT id FROM accounts WHERE user_id = ? AND provider = ? AND address = ?",
                (user_id, provider.value, address),
            ).fetchone()
        return self.get_account(row["id"])

    def _account_from_row(self, row: sqlite3.Row) -> Account:
        user_id = row["user_id"]
        unavailable = False
        secrets: dict[str, str | None] = {}
        for column in ("access_token", "refresh_token", "password"):
            sealed = row[column]
            opened = self._dec(user_id, sealed)
            if sealed is not None and opened is None:
                unavailable = True
            secrets[column] = opened
        return Account(
            id=row["id"],
            user_id=user_id,
            provider=Provider(row["provider"]),
            address=row["address"],
            auth_source=AuthSource(row["auth_source"]),
            access_token=secrets["access_token"],
            refresh_token=secrets["refresh_token"],
            token_expires_at=_from_ms(row["token_expires_at"]),
            password=secrets["password"],
            imap_host=row["imap_host"],
            imap_port=row["imap_port"],
            imap_tls=bool(row["imap_tls"]),
            last_synced_uid=row["last_synced_uid"],
            uid_validity=row["uid_validity"],
            is_primary=bool(row["is_primary"]),
            connected=bool(row["connected"]),
            auth_error=row["auth_error"],
            last_synced_at=_from_ms(row["last_synced_at"]),
            credentials_unavailable=unavailable,
        )

    def get_account(self, account_id: int) -> Account:
        with self._lock:
            row = self._conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        if row is None:
            raise AccountNotFound(f"No account with id {account_id}")
        return self._account_from_row(row)

    def list_accounts(self, connected_only: bool = False) -> list[Account]:
        sql = "SELECT * FROM accounts"
        if connected_only:
            sql += " WHERE connected = 1"
        with self._lock:
            rows = self._conn.execute(sql + " ORDER BY id").fetchall()
        return [self._account_from_row(r) for r in rows]

    def update_account_tokens(
        self,
        account_id: int,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        """Persist a refreshed token set in one transaction.

        A rotated refresh token (broker accounts) must be written together
        with the access token, or the account can no longer be refreshed.
        """
        account = self.get_account(account_id)
        self.codec.ensure_key(account.user_id)
        with self._lock, self._conn:
            if refresh_token is not None:
                self._conn.execute(
                    "UPDATE accounts SET access_token = ?, token_expires_at = ?, refresh_token = ?, "
                    "auth_error = NULL WHERE id = ?",
                    (
                        self._enc(account.user_id, access_token),
                        _to_ms(expires_at),
                        self._enc(account.user_id, refresh_token),
                        account_id,
                    ),
                )
            else:
                self._conn.execute(
                    "UPDATE accounts SET access_token = ?, token_expires_at = ?, auth_error = NULL "
                    "WHERE id = ?",
                    (self._enc(account.user_id, access_token), _to_ms(expires_at), account_id),
                )

    def set_auth_error(self, account_id: int, reason: str | None) -> None:
        with self._lock, self._conn:
            self._conn.execute("UPDATE accounts SET auth_error = ? WHERE id = ?", (reason, account_id))

    def disconnect_account(self, account_id: int) -> None:
        """Clear credentials and mark the account disconnected. Rows are kept."""
        self.get_account(account_id)
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE accounts SET access_token = NULL, refresh_token = NULL, password = NULL, "
                "token_expires_at = NULL, connected = 0 WHERE id = ?",
                (account_id,),
            )

    def update_imap_watermark(self, account_id: int, last_uid: int | None, uid_validity: int) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE accounts SET last_synced_uid = ?, uid_validity = ? WHERE id = ?",
                (last_uid, uid_validity, account_id),
            )

    def mark_synced(self, account_id: int, at: datetime | None = None) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE accounts SET last_synced_at = ? WHERE id = ?",
                (_to_ms(at or _now()), account_id),
            )

    # --- contacts ---

    def _upsert_contact_once(
        self, user_id: str, email: str, name: str | None, seen_at: datetime, count: int
    ) -> int:
        row = self._conn.execute(
            "SELECT id FROM contacts WHERE user_id = ? AND email = ?", (user_id, email)
        ).fetchone()
        if row is not None:
            # SET expressions see the pre-update last_email_at
            self._conn.execute(
                "UPDATE contacts SET email_count = email_count + ?, "
                "name = CASE WHEN ? AND ? >= last_email_at THEN ? ELSE name END, "
                "last_email_at = MAX(last_email_at, ?) WHERE id = ?",
                (count, name is not None, _to_ms(seen_at), self._enc(user_id, name), _to_ms(seen_at), row["id"]),
            )
            return row["id"]

        cursor = self._conn.execute(
            "INSERT INTO contacts (user_id, email, name, email_count, last_email_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (user_id, email, self._enc(user_id, name), count, _to_ms(seen_at)),
        )
        return cursor.lastrowid

    def _ensure_contact_once(self, user_id: str, email: str, name: str | None, seen_at: datetime) -> int:
        row = self._conn.execute(
            "SELECT id FROM contacts WHERE user_id = ? AND email = ?", (user_id, email)
        ).fetchone()
        if row is not None:
            return row["id"]
        cursor = self._conn.execute(
            "INSERT INTO contacts (user_id, email, name, email_count, last_email_at) "
            "VALUES (?, ?, ?, 0, ?)",
            (user_id, email, self._enc(user_id, name), _to_ms(seen_at)),
        )
        return cursor.lastrowid

    def _contact_write(self, email: str, write) -> int:
        """Run ``write`` in a transaction, retrying once if the insert collides."""
        for attempt in range(2):
            try:
                with self._lock, self._conn:
                    return write()
            except sqlite3.IntegrityError as exc:
                logger.info("Contact upsert collided (attempt %d): %s", attempt + 1, exc)
        raise WriteConflict(f"Contact upsert for {email} conflicted twice")

    @staticmethod
    def _contact_key(email: str, name: str | None) -> tuple[str, str | None]:
        email = email.strip().lower()
        if name and name.strip().lower() == email:
            name = None
        return email, name or None

    def upsert_contact(
        self,
        user_id: str,
        email: str,
        name: str | None = None,
        seen_at: datetime | None = None,
        count: int = 1,
    ) -> int:
        """Create or bump the contact keyed by (user_id, email); return its id.

        ``count`` messages are added to email_count and last_email_at only
        moves forward. The name is replaced only by one seen at or after
        last_email_at, and a name equal to the address is not stored. An
        insert that loses a race to a concurrent writer is retried once as
        an update.
        """
        email, name = self._contact_key(email, name)
        seen_at = seen_at or _now()
        self.codec.ensure_key(user_id)
        return self._contact_write(
            email, lambda: self._upsert_contact_once(user_id, email, name, seen_at, count)
        )

    def ensure_contact(
        self, user_id: str, email: str, name: str | None = None, seen_at: datetime | None = None
    ) -> int:
        """Return the contact id for (user_id, email), creating it with no messages counted."""
        email, name = self._contact_key(email, name)
        seen_at = seen_at or _now()
        self.codec.ensure_key(user_id)
        return self._contact_write(email, lambda: self._ensure_contact_once(user_id, email, name, seen_at))

    def get_contact(self, contact_id: int) -> Contact:
        with self._lock:
            row = self._conn.execute("SELECT * FROM contacts WHERE id = ?", (contact_id,)).fetchone()
        if row is None:
            raise MessageNotFound(f"No contact with id {contact_id}")
        return self._contact_from_row(row)

    def get_contact_by_email(self, user_id: str, email: str) -> Contact | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM contacts WHERE user_id = ? AND email = ?",
                (user_id, email.strip().lower()),
            ).fetchone()
        return self._contact_from_row(row) if row else None

    def _contact_from_row(self, row: sqlite3.Row) -> Contact:
        return Contact(
            id=row["id"],
            user_id=row["user_id"],
            email=row["email"],
            name=self._dec(row["user_id"], row["name"]),
            email_count=row["email_count"],
            last_email_at=_from_ms(row["last_email_at"]),
        )

    # --- messages ---

    def existing_external_ids(self, provider: Provider, external_ids: list[str]) -> set[str]:
        """Return the subset of ``external_ids`` already stored for ``provider``."""
        found: set[str] = set()
        with self._lock:
            # chunk to stay under SQLite's bound parameter limit
            for start in range(0, len(external_ids), 500):
                chunk = external_ids[start:start + 500]
                placeholders = ",".join("?" * len(chunk))
                rows = self._conn.execute(
                    f"SELECT external_id FROM messages WHERE provider = ? AND external_id IN ({placeholders})",
                    (provider.value, *chunk),
                ).fetchall()
                found.update(r["external_id"] for r in rows)
        return found

    def upsert_message(self, record: MessageRecord) -> tuple[int, bool]:
        """Insert a message keyed by (external_id, provider); return (id, is_new).

        On a hit only previously-absent fields (direction, subscription flags)
        are back-filled. Subject, preview and body are write-once.
        """
        user_id = record.user_id
        self.codec.ensure_key(user_id)
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "INSERT INTO messages (external_id, provider, user_id, account_id, thread_id, "
                "from_contact_id, to_contact_ids_json, cc_contact_ids_json, subject, preview, "
                "received_at, is_read, direction, is_subscription, list_unsubscribe, list_unsubscribe_post) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (external_id, provider) DO NOTHING",
                (
                    record.external_id,
                    record.provider.value,
                    user_id,
                    record.account_id,
                    record.thread_id,
                    record.from_contact_id,
                    json.dumps(record.to_contact_ids),
                    json.dumps(record.cc_contact_ids),
                    self._enc(user_id, record.subject),
                    self._enc(user_id, record.preview),
                    _to_ms(record.received_at),
                    int(record.is_read),
                    record.direction.value if record.direction else None,
                    None if record.is_subscription is None else int(record.is_subscription),
                    record.list_unsubscribe,
                    None if record.list_unsubscribe_post is None else int(record.list_unsubscribe_post),
                ),
            )

            if cursor.rowcount == 1:
                message_id = cursor.lastrowid
                self._insert_body(message_id, user_id, DecodedBody(record.body_html, record.body_plain))
                self._insert_attachments(message_id, record.attachments)
                return message_id, True

            row = self._conn.execute(
                "SELECT id FROM messages WHERE external_id = ? AND provider = ?",
                (record.external_id, record.provider.value),
            ).fetchone()
            self._conn.execute(
                "UPDATE messages SET direction = COALESCE(direction, ?), "
                "is_subscription = COALESCE(is_subscription, ?), "
                "list_unsubscribe = COALESCE(list_unsubscribe, ?), "
                "list_unsubscribe_post = COALESCE(list_unsubscribe_post, ?) WHERE id = ?",
                (
                    record.direction.value if record.direction else None,
                    None if record.is_subscription is None else int(record.is_subscription),
                    record.list_unsubscribe,
                    None if record.list_unsubscribe_post is None else int(record.list_unsubscribe_post),
                    row["id"],
                ),
            )
            return row["id"], False

    def _insert_body(self, message_id: int, user_id: str, body: DecodedBody) -> None:
        self._conn.execute(
            "INSERT OR IGNORE INTO message_bodies (message_id, user_id, html, plain) VALUES (?, ?, ?, ?)",
            (message_id, user_id, self._enc(user_id, body.html), self._enc(user_id, body.plain)),
        )

    def _insert_attachments(self, message_id: int, attachments: list[AttachmentMeta]) -> None:
        for meta in attachments:
            self._conn.execute(
                "INSERT OR IGNORE INTO attachments (message_id, filename, mime_type, size, "
                "attachment_id, content_id) VALUES (?, ?, ?, ?, ?, ?)",
                (message_id, meta.filename, meta.mime_type, meta.size, meta.attachment_id, meta.content_id),
            )

    def _message_from_row(self, row: sqlite3.Row) -> StoredMessage:
        user_id = row["user_id"]
        return StoredMessage(
            id=row["id"],
            external_id=row["external_id"],
            provider=Provider(row["provider"]),
            user_id=user_id,
            account_id=row["account_id"],
            from_contact_id=row["from_contact_id"],
            subject=self._dec(user_id, row["subject"]),
            preview=self._dec(user_id, row["preview"]),
            received_at=_from_ms(row["received_at"]),
            thread_id=row["thread_id"],
            to_contact_ids=json.loads(row["to_contact_ids_json"]),
            cc_contact_ids=json.loads(row["cc_contact_ids_json"]),
            is_read=bool(row["is_read"]),
            is_triaged=bool(row["is_triaged"]),
            direction=Direction(row["direction"]) if row["direction"] else None,
            is_subscription=bool(row["is_subscription"]),
            list_unsubscribe=row["list_unsubscribe"],
            list_unsubscribe_post=bool(row["list_unsubscribe_post"]),
        )

    def get_message(self, message_id: int) -> StoredMessage:
        with self._lock:
            row = self._conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        if row is None:
            raise MessageNotFound(f"No message with id {message_id}")
        return self._message_from_row(row)

    def get_message_by_external_id(self, external_id: str, provider: Provider) -> StoredMessage | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM messages WHERE external_id = ? AND provider = ?",
                (external_id, provider.value),
            ).fetchone()
        return self._message_from_row(row) if row else None

    def count_messages(self, external_id: str, provider: Provider) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS c FROM messages WHERE external_id = ? AND provider = ?",
                (external_id, provider.value),
            ).fetchone()
        return row["c"]

    def get_body(self, message_id: int) -> MessageBody | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM message_bodies WHERE message_id = ?", (message_id,)
            ).fetchone()
        if row is None:
            return None
        user_id = row["user_id"]
        return MessageBody(html=self._dec(user_id, row["html"]), plain=self._dec(user_id, row["plain"]))

    def store_body(
        self, message_id: int, user_id: str, body: DecodedBody, attachments: list[AttachmentMeta]
    ) -> None:
        """Store a body fetched on demand for a message that had none."""
        self.codec.ensure_key(user_id)
        with self._lock, self._conn:
            self._insert_body(message_id, user_id, body)
            self._insert_attachments(message_id, attachments)

    # --- attachments ---

    def _attachment_from_row(self, row: sqlite3.Row) -> StoredAttachment:
        return StoredAttachment(
            id=row["id"],
            message_id=row["message_id"],
            filename=row["filename"],
            mime_type=row["mime_type"],
            size=row["size"],
            attachment_id=row["attachment_id"],
            content_id=row["content_id"],
            blob_path=row["blob_path"],
        )

    def list_attachments(self, message_id: int) -> list[StoredAttachment]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM attachments WHERE message_id = ? ORDER BY id", (message_id,)
            ).fetchall()
        return [self._attachment_from_row(r) for r in rows]

    def get_attachment(self, message_id: int, attachment_id: str) -> StoredAttachment:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM attachments WHERE message_id = ? AND attachment_id = ?",
                (message_id, attachment_id),
            ).fetchone()
        if row is None:
            raise MessageNotFound(f"No attachment {attachment_id} on message {message_id}")
        return self._attachment_from_row(row)

    def set_attachment_blob(self, attachment_row_id: int, blob_path: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE attachments SET blob_path = ? WHERE id = ?", (blob_path, attachment_row_id)
            )

    # --- subscriptions ---

    def upsert_subscription(
        self,
        user_id: str,
        sender_email: str,
        message_id: int,
        received_at: datetime,
        sender_name: str | None = None,
        list_unsubscribe: str | None = None,
        list_unsubscribe_post: bool = False,
        subject: str | None = None,
    ) -> int:
        """Create or advance the subscription aggregate keyed by (user_id, sender_email)."""
        sender_email = sender_email.strip().lower()
        method = determine_unsubscribe_method(list_unsubscribe, list_unsubscribe_post)
        received_ms = _to_ms(received_at)
        self.codec.ensure_key(user_id)

        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT * FROM subscriptions WHERE user_id = ? AND sender_email = ?",
                (user_id, sender_email),
            ).fetchone()

            if row is None:
                cursor = self._conn.execute(
                    "INSERT INTO subscriptions (user_id, sender_email, sender_domain, sender_name, "
                    "list_unsubscribe, list_unsubscribe_post, unsubscribe_method, email_count, "
                    "first_email_at, last_email_at, status, most_recent_message_id, most_recent_subject) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?)",
                    (
                        user_id,
                        sender_email,
                        sender_email.split("@", 1)[-1],
                        self._enc(user_id, sender_name),
                        list_unsubscribe,
                        int(list_unsubscribe_post),
                        method.value,
                        received_ms,
                        received_ms,
                        SubscriptionStatus.SUBSCRIBED.value,
                        message_id,
                        self._enc(user_id, subject),
                    ),
                )
                return cursor.lastrowid

            updates: dict[str, object] = {
                "email_count": row["email_count"] + 1,
                "last_email_at": max(row["last_email_at"], received_ms),
                "first_email_at": min(row["first_email_at"], received_ms),
            }
            if received_ms > row["last_email_at"]:
                updates["most_recent_message_id"] = message_id
                if subject:
                    updates["most_recent_subject"] = self._enc(user_id, subject)
            if list_unsubscribe and (not row["list_unsubscribe"] or method != UnsubscribeMethod.NONE):
                updates["list_unsubscribe"] = list_unsubscribe
                updates["list_unsubscribe_post"] = int(list_unsubscribe_post)
                updates["unsubscribe_method"] = method.value
            if sender_name and not row["sender_name"]:
                updates["sender_name"] = self._enc(user_id, sender_name)

            assignments = ", ".join(f"{column} = ?" for column in updates)
            self._conn.execute(
                f"UPDATE subscriptions SET {assignments} WHERE id = ?",
                (*updates.values(), row["id"]),
            )
            return row["id"]

    def _subscription_from_row(self, row: sqlite3.Row) -> Subscription:
        user_id = row["user_id"]
        return Subscription(
            id=row["id"],
            user_id=user_id,
            sender_email=row["sender_email"],
            sender_domain=row["sender_domain"],
            email_count=row["email_count"],
            first_email_at=_from_ms(row["first_email_at"]),
            last_email_at=_from_ms(row["last_email_at"]),
            status=SubscriptionStatus(row["status"]),
            sender_name=self._dec(user_id, row["sender_name"]),
            list_unsubscribe=row["list_unsubscribe"],
            list_unsubscribe_post=bool(row["list_unsubscribe_post"]),
            unsubscribe_method=UnsubscribeMethod(row["unsubscribe_method"]),
            unsubscribed_at=_from_ms(row["unsubscribed_at"]),
            most_recent_message_id=row["most_recent_message_id"],
            most_recent_subject=self._dec(user_id, row["most_recent_subject"]),
        )

    def list_subscriptions(self, user_id: str | None = None) -> list[Subscription]:
        """Return subscriptions, most recently active first."""
        with self._lock:
            if user_id is not None:
                rows = self._conn.execute(
                    "SELECT * FROM subscriptions WHERE user_id = ? ORDER BY last_email_at DESC",
                    (user_id,),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM subscriptions ORDER BY last_email_at DESC"
                ).fetchall()
        return [self._subscription_from_row(r) for r in rows]

    def get_subscription(self, user_id: str, sender_email: str) -> Subscription | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM subscriptions WHERE user_id = ? AND sender_email = ?",
                (user_id, sender_email.strip().lower()),
            ).fetchone()
        return self._subscription_from_row(row) if row else None

    def update_subscription_status(self, subscription_id: int, status: SubscriptionStatus) -> None:
        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT status FROM subscriptions WHERE id = ?", (subscription_id,)
            ).fetchone()
            if row is None:
                raise ValueError(f"No subscription with id {subscription_id}")
            current = SubscriptionStatus(row["status"])
            if not can_transition(current, status):
                raise ValueError(f"Cannot move subscription from {current.value} to {status.value}")
            unsubscribed_at = _to_ms(_now()) if status == SubscriptionStatus.UNSUBSCRIBED else None
            self._conn.execute(
                "UPDATE subscriptions SET status = ?, unsubscribed_at = COALESCE(?, unsubscribed_at) "
                "WHERE id = ?",
                (status.value, unsubscribed_at, subscription_id),
            )

    # --- summaries ---

    def store_summary(self, message_id: int, user_id: str, summary: EmailSummary) -> None:
        self.codec.ensure_key(user_id)
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO email_summaries (message_id, user_id, summary_json, created_at) "
                "VALUES (?, ?, ?, ?)",
                (message_id, user_id, self._enc(user_id, json.dumps(asdict(summary))), _to_ms(_now())),
            )

    def get_summary(self, message_id: int) -> EmailSummary | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM email_summaries WHERE message_id = ?", (message_id,)
            ).fetchone()
        if row is None:
            return None
        payload = self._dec(row["user_id"], row["summary_json"])
        if payload is None:
            return None
        return EmailSummary(**json.loads(payload))

    # --- stats ---

    def get_info(self) -> dict:
        """Return store statistics."""
        file_size = self.db_path.stat().st_size if self.db_path.exists() else 0
        counts = {}
        with self._lock:
            for table in ("accounts", "messages", "attachments", "contacts", "subscriptions"):
                counts[f"{table}_count"] = self._conn.execute(
                    f"SELECT COUNT(*) AS c FROM {table}"
                ).fetchone()["c"]
        return {"db_file_size": file_size, **counts}

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    # --- context manager ---

    def __enter__(self) -> MailStore:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        self.close()
