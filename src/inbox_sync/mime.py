"""MIME decoding: part trees, bodies, attachments, headers and senders.

Everything in this module is pure. Provider payloads are first converted into
a tree of :class:`Leaf` / :class:`Container` parts (Gmail JSON via
:func:`part_from_gmail`, raw RFC 822 bytes via :func:`part_from_email`), and
the decoders only ever walk that tree.
"""

from __future__ import annotations

import base64
import binascii
import html as html_lib
import re
from datetime import datetime, timezone
from email.message import Message
from email.utils import getaddresses, parsedate_to_datetime

from .classifier import classify
from .constants import (
    APPLE_PLAIN_MIN_CONTENT,
    APPLE_PLAIN_PROBE_LENGTH,
    NO_SUBJECT,
    PREVIEW_LENGTH,
    SENT_LABEL,
)
from .errors import DecodeFailure
from .models import (
    AttachmentMeta,
    Container,
    DecodedBody,
    DecodedMessage,
    Direction,
    Leaf,
    Part,
    Provider,
    ProviderMessage,
    Sender,
)

_FOLD_RE = re.compile(r"\r?\n\s+")
_ANGLE_SENDER_RE = re.compile(r'^\s*(?:"?(?P<name>[^"<]*?)"?\s*)?<(?P<email>[^<>\s]+@[^<>\s]+)>\s*$')
_BARE_SENDER_RE = re.compile(r"^\s*(?P<email>[^<>\s\"]+@[^<>\s\"]+)\s*$")
_ANY_ADDRESS_RE = re.compile(r"[^<>\s\"',;]+@[^<>\s\"',;]+")
_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


# --- Low level decoding ---


def decode_base64url(data: str) -> bytes:
    """Decode Gmail's base64url body data, tolerating missing padding.

    Returns empty bytes when the data is not valid base64.
    """
    if not data:
        return b""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        return b""


def _text(data: bytes | None) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


def unfold_header(raw: str) -> str:
    """Remove RFC 2822 folding (CRLF followed by whitespace) from a header value."""
    return _FOLD_RE.sub("", raw or "").strip()


def get_header(headers: list[tuple[str, str]], name: str) -> str:
    """Case-insensitive header lookup returning the unfolded value, or ''."""
    wanted = name.lower()
    for header_name, value in headers:
        if header_name.lower() == wanted:
            return unfold_header(value)
    return ""


def parse_sender(from_header: str) -> Sender:
    """Parse a From header into a :class:`Sender`.

    Handles formats like:
      "John Doe <john@example.com>" -> ("John Doe", "john@example.com")
      "<john@example.com>"          -> ("john@example.com", "john@example.com")
      "john@example.com"            -> ("john@example.com", "john@example.com")

    The address is lowercased. Raises DecodeFailure when no address with an
    ``@`` can be found.
    """
    value = unfold_header(from_header)
    name = ""
    email = ""

    m = _ANGLE_SENDER_RE.match(value)
    if m:
        name = (m.group("name") or "").strip().strip("'").strip()
        email = m.group("email")
    else:
        m = _BARE_SENDER_RE.match(value)
        if m:
            email = m.group("email")
        else:
            m = _ANY_ADDRESS_RE.search(value)
            if m:
                email = m.group(0)

    email = email.strip().lower()
    if "@" not in email:
        raise DecodeFailure(f"Unparseable sender: {value!r}")
    return Sender(name=name or email, email=email)


def parse_address_list(value: str) -> list[Sender]:
    """Parse a To/Cc header. Entries without an address are dropped."""
    senders = []
    for name, email in getaddresses([unfold_header(value)]):
        email = email.strip().lower()
        if "@" not in email:
            continue
        senders.append(Sender(name=name.strip() or email, email=email))
    return senders


# --- Building part trees ---


def part_from_gmail(payload: dict) -> Part:
    """Convert a Gmail API ``payload`` object into a part tree."""
    headers = [(h.get("name", ""), h.get("value", "")) for h in payload.get("headers", [])]
    mime_type = (payload.get("mimeType") or "application/octet-stream").lower()

    if payload.get("parts") or mime_type.startswith("multipart/"):
        return Container(
            mime_type=mime_type,
            children=[part_from_gmail(p) for p in payload.get("parts", [])],
            headers=headers,
        )

    body = payload.get("body") or {}
    data = body.get("data")
    return Leaf(
        mime_type=mime_type,
        data=decode_base64url(data) if data else None,
        filename=payload.get("filename") or "",
        attachment_id=body.get("attachmentId"),
        size=body.get("size") or 0,
        headers=headers,
    )


def part_from_email(message: Message, _path: str = "") -> Part:
    """Convert a parsed RFC 822 message into a part tree.

    Text bodies are normalised to UTF-8. Attachment leaves are not kept in
    memory; their ``attachment_id`` is the dotted MIME part path so they can
    be located again with :func:`email_part_at`.
    """
    headers = [(k, str(v)) for k, v in message.items()]
    mime_type = message.get_content_type()

    if message.is_multipart():
        children = []
        for index, sub in enumerate(message.get_payload(), start=1):
            children.append(part_from_email(sub, f"{_path}.{index}" if _path else str(index)))
        return Container(mime_type=mime_type, children=children, headers=headers)

    filename = message.get_filename() or ""
    payload = message.get_payload(decode=True) or b""

    if filename:
        return Leaf(
            mime_type=mime_type,
            filename=filename,
            attachment_id=_path or "1",
            size=len(payload),
            headers=headers,
        )

    if message.get_content_maintype() == "text":
        charset = message.get_content_charset() or "utf-8"
        try:
            payload = payload.decode(charset, errors="replace").encode("utf-8")
        except LookupError:
            payload = payload.decode("utf-8", errors="replace").encode("utf-8")

    return Leaf(mime_type=mime_type, data=payload, size=len(payload), headers=headers)


def email_part_at(message: Message, path: str) -> Message | None:
    """Return the sub-message at a dotted part path produced by :func:`part_from_email`."""
    current = message
    for token in path.split("."):
        if not current.is_multipart():
            return current if token == "1" and current is message else None
        children = current.get_payload()
        index = int(token) - 1
        if index < 0 or index >= len(children):
            return None
        current = children[index]
    return current


# --- Body and attachment extraction ---


def _is_attachment(leaf: Leaf) -> bool:
    return bool(leaf.filename and leaf.attachment_id)


def _collect_text(part: Part, html_parts: list[str], plain_parts: list[str]) -> None:
    if isinstance(part, Container):
        for child in part.children:
            _collect_text(child, html_parts, plain_parts)
        return
    if part.filename or not part.data:
        return
    if part.mime_type == "text/html":
        html_parts.append(_text(part.data))
    elif part.mime_type == "text/plain":
        plain_parts.append(_text(part.data))


def strip_html(markup: str) -> str:
    """Reduce HTML to whitespace-collapsed visible text."""
    text = _SCRIPT_STYLE_RE.sub(" ", markup or "")
    text = _TAG_RE.sub(" ", text)
    return _WS_RE.sub(" ", html_lib.unescape(text)).strip()


def is_apple_mail_layout(part: Part) -> bool:
    """True for multipart/alternative wrapping a multipart/mixed child.

    The usual nesting is the reverse (mixed containing alternative); Apple
    Mail produces this shape, and its HTML branch is then a stub.
    """
    if not isinstance(part, Container) or part.mime_type != "multipart/alternative":
        return False
    return any(
        isinstance(child, Container) and child.mime_type == "multipart/mixed"
        for child in part.children
    )


def _plain_has_missing_content(plain: str, markup: str) -> bool:
    first_line = next((line.strip() for line in plain.splitlines() if line.strip()), "")
    probe = _WS_RE.sub(" ", first_line[:APPLE_PLAIN_PROBE_LENGTH]).strip()
    if len(probe) < APPLE_PLAIN_MIN_CONTENT:
        return False
    return probe.lower() not in strip_html(markup).lower()


def render_plain_as_html(plain: str) -> str:
    return (
        '<pre style="white-space: pre-wrap; word-wrap: break-word; font-family: inherit;">'
        f"{html_lib.escape(plain)}</pre>"
    )


def decode_body(part: Part) -> DecodedBody:
    """Extract the canonical HTML and plain-text bodies of a part tree.

    The longest HTML leaf and the longest plain leaf win. When the tree has
    the Apple Mail layout, or the plain text opens with content the HTML does
    not contain, the plain text is used for display as a ``<pre>`` block.
    """
    html_parts: list[str] = []
    plain_parts: list[str] = []
    _collect_text(part, html_parts, plain_parts)

    markup = max(html_parts, key=len, default="")
    plain = max(plain_parts, key=len, default="")

    if markup and plain and (is_apple_mail_layout(part) or _plain_has_missing_content(plain, markup)):
        markup = render_plain_as_html(plain)

    return DecodedBody(html=markup, plain=plain)


def decode_attachments(part: Part) -> list[AttachmentMeta]:
    """Return metadata for every attachment leaf. Attachment bodies are never decoded."""
    found: list[AttachmentMeta] = []

    def _walk(node: Part) -> None:
        if isinstance(node, Container):
            for child in node.children:
                _walk(child)
            return
        if not _is_attachment(node):
            return
        content_id = get_header(node.headers, "Content-ID")
        found.append(
            AttachmentMeta(
                filename=node.filename,
                mime_type=node.mime_type or "application/octet-stream",
                size=node.size,
                attachment_id=node.attachment_id,
                content_id=content_id.strip("<>") or None,
            )
        )

    _walk(part)
    return found


# --- Whole messages ---


def _received_at(raw: ProviderMessage) -> datetime:
    if raw.received_at is not None:
        return raw.received_at
    date_header = get_header(raw.headers, "Date")
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
        except (TypeError, ValueError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    return datetime.now(timezone.utc)


def _preview(raw: ProviderMessage, body: DecodedBody) -> str:
    if raw.snippet:
        text = html_lib.unescape(raw.snippet)
    elif body.plain:
        text = body.plain
    else:
        text = strip_html(body.html)
    return _WS_RE.sub(" ", text).strip()[:PREVIEW_LENGTH]


def decode_message(raw: ProviderMessage, provider: Provider, account_address: str) -> DecodedMessage:
    """Normalise a fetched provider message into a :class:`DecodedMessage`.

    Raises DecodeFailure when the sender cannot be parsed.
    """
    sender = parse_sender(get_header(raw.headers, "From"))
    body = decode_body(raw.payload)

    outgoing = sender.email == account_address.lower() or SENT_LABEL in raw.label_ids

    return DecodedMessage(
        external_id=raw.external_id,
        provider=provider,
        sender=sender,
        subject=get_header(raw.headers, "Subject") or NO_SUBJECT,
        preview=_preview(raw, body),
        body=body,
        received_at=_received_at(raw),
        thread_id=raw.thread_id,
        to=parse_address_list(get_header(raw.headers, "To")),
        cc=parse_address_list(get_header(raw.headers, "Cc")),
        is_read=raw.is_read,
        direction=Direction.OUTGOING if outgoing else Direction.INCOMING,
        subscription=classify(raw.headers),
        attachments=decode_attachments(raw.payload),
    )
