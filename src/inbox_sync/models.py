"""Data models for inbox-sync."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Union


class Provider(str, Enum):
    GMAIL = "gmail"
    IMAP = "imap"
    OUTLOOK = "outlook"


class AuthSource(str, Enum):
    DIRECT_OAUTH = "direct-oauth"
    BROKER_REFRESH = "broker-refresh"
    PASSWORD = "password"


class Direction(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class UnsubscribeMethod(str, Enum):
    HTTP_POST = "http_post"
    HTTP_GET = "http_get"
    MAILTO = "mailto"
    NONE = "none"


class SubscriptionStatus(str, Enum):
    SUBSCRIBED = "subscribed"
    PENDING = "pending"
    UNSUBSCRIBED = "unsubscribed"
    FAILED = "failed"
    MANUAL_REQUIRED = "manual_required"


class SyncState(str, Enum):
    IDLE = "idle"
    LISTING = "listing"
    FETCHING = "fetching"
    DECODING = "decoding"
    PERSISTING = "persisting"
    FAILED = "failed"


# --- MIME part tree ---


@dataclass
class Leaf:
    """A MIME part that carries a body (inline bytes or a provider attachment reference)."""

    mime_type: str
    data: bytes | None = None
    filename: str = ""
    attachment_id: str | None = None  # provider handle for bodies not sent inline
    size: int = 0
    headers: list[tuple[str, str]] = field(default_factory=list)


@dataclass
class Container:
    """A multipart MIME part holding sub-parts."""

    mime_type: str
    children: list[Part] = field(default_factory=list)
    headers: list[tuple[str, str]] = field(default_factory=list)


Part = Union[Leaf, Container]


# --- Decoder output ---


@dataclass
class Sender:
    name: str
    email: str


@dataclass
class DecodedBody:
    html: str = ""
    plain: str = ""


@dataclass
class AttachmentMeta:
    filename: str
    mime_type: str
    size: int
    attachment_id: str
    content_id: str | None = None  # set for inline images


@dataclass
class SubscriptionInfo:
    is_subscription: bool = False
    list_unsubscribe: str | None = None
    list_unsubscribe_post: bool = False


@dataclass
class ProviderMessage:
    """A raw message as fetched from a provider, before decoding."""

    external_id: str
    payload: Part
    headers: list[tuple[str, str]] = field(default_factory=list)
    thread_id: str | None = None
    snippet: str = ""
    label_ids: list[str] = field(default_factory=list)
    received_at: datetime | None = None
    is_read: bool = False
    uid: int | None = None  # IMAP only


@dataclass
class DecodedMessage:
    """Canonical message produced by the decoder, with contacts not yet resolved."""

    external_id: str
    provider: Provider
    sender: Sender
    subject: str
    preview: str
    body: DecodedBody
    received_at: datetime
    thread_id: str | None = None
    to: list[Sender] = field(default_factory=list)
    cc: list[Sender] = field(default_factory=list)
    is_read: bool = False
    direction: Direction = Direction.INCOMING
    subscription: SubscriptionInfo = field(default_factory=SubscriptionInfo)
    attachments: list[AttachmentMeta] = field(default_factory=list)


# --- Persisted entities ---


@dataclass
class Account:
    """One mailbox connection owned by a user."""

    id: int
    user_id: str
    provider: Provider
    address: str
    auth_source: AuthSource
    access_token: str | None = None
    refresh_token: str | None = None  # provider or broker refresh token, per auth_source
    token_expires_at: datetime | None = None
    password: str | None = None  # IMAP only
    imap_host: str | None = None
    imap_port: int | None = None
    imap_tls: bool = True
    last_synced_uid: int | None = None
    uid_validity: int | None = None
    is_primary: bool = False
    connected: bool = True
    auth_error: str | None = None
    last_synced_at: datetime | None = None
    credentials_unavailable: bool = False  # stored secrets exist but could not be decrypted


@dataclass
class MessageRecord:
    """A decoded message with contact references, ready for the upsert path."""

    external_id: str
    provider: Provider
    user_id: str
    account_id: int
    from_contact_id: int
    subject: str
    preview: str
    body_html: str
    body_plain: str
    received_at: datetime
    thread_id: str | None = None
    to_contact_ids: list[int] = field(default_factory=list)
    cc_contact_ids: list[int] = field(default_factory=list)
    is_read: bool = False
    direction: Direction | None = None
    is_subscription: bool | None = None
    list_unsubscribe: str | None = None
    list_unsubscribe_post: bool | None = None
    attachments: list[AttachmentMeta] = field(default_factory=list)


@dataclass
class StoredMessage:
    id: int
    external_id: str
    provider: Provider
    user_id: str
    account_id: int
    from_contact_id: int
    subject: str | None  # None when the user's key is unavailable
    preview: str | None
    received_at: datetime
    thread_id: str | None = None
    to_contact_ids: list[int] = field(default_factory=list)
    cc_contact_ids: list[int] = field(default_factory=list)
    is_read: bool = False
    is_triaged: bool = False
    direction: Direction | None = None
    is_subscription: bool = False
    list_unsubscribe: str | None = None
    list_unsubscribe_post: bool = False


@dataclass
class MessageBody:
    html: str | None
    plain: str | None


@dataclass
class StoredAttachment:
    id: int
    message_id: int
    filename: str
    mime_type: str
    size: int
    attachment_id: str
    content_id: str | None = None
    blob_path: str | None = None


@dataclass
class Contact:
    id: int
    user_id: str
    email: str
    name: str | None
    email_count: int
    last_email_at: datetime


@dataclass
class Subscription:
    id: int
    user_id: str
    sender_email: str
    sender_domain: str
    email_count: int
    first_email_at: datetime
    last_email_at: datetime
    status: SubscriptionStatus = SubscriptionStatus.SUBSCRIBED
    sender_name: str | None = None
    list_unsubscribe: str | None = None
    list_unsubscribe_post: bool = False
    unsubscribe_method: UnsubscribeMethod = UnsubscribeMethod.NONE
    unsubscribed_at: datetime | None = None
    most_recent_message_id: int | None = None
    most_recent_subject: str | None = None


# --- Credentials and results ---


@dataclass
class TokenResult:
    access_token: str | None
    refreshed: bool = False
    password: str | None = None  # IMAP session parameter


@dataclass
class SummaryRequest:
    subject: str
    body_full: str
    sender_context: str = ""


@dataclass
class EmailSummary:
    summary: str
    urgency_score: int  # 0-100
    urgency_reason: str = ""
    action_required: bool = False
    suggested_reply: str | None = None
    quick_replies: list[str] | None = None
    calendar_event: dict | None = None


@dataclass
class SyncResult:
    """Outcome of one sync_account run."""

    account_id: int
    state: SyncState = SyncState.IDLE
    new_messages: int = 0
    synced: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    error: str | None = None
