"""Sync orchestration - list, fetch, decode and persist one account at a time.

Each run walks ``idle -> listing -> fetching -> decoding -> persisting -> idle``
and falls to ``failed`` when the account cannot be authorised. Per-message
failures are collected in the result instead of aborting the run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from .config import Settings
from .constants import IMAP_INITIAL_SYNC_CAP, INBOX_LABEL, SENT_LABEL
from .credentials import CredentialRefresher
from .errors import AuthExpired, DecodeFailure, MailboxReset, MessageNotFound, ProviderRateLimited, WriteConflict
from .gmail_client import GmailClient
from .imap_client import (
    ImapMailbox,
    imap_external_id,
    parse_raw_message,
    provider_message_from_raw,
    uid_from_external_id,
)
from .mime import decode_attachments, decode_body, decode_message, email_part_at, strip_html
from .models import (
    Account,
    DecodedMessage,
    EmailSummary,
    MessageBody,
    MessageRecord,
    Provider,
    ProviderMessage,
    SummaryRequest,
    SyncResult,
    SyncState,
)
from .store import MailStore

logger = logging.getLogger(__name__)

GmailClientFactory = Callable[[str, Account], GmailClient]
ImapConnector = Callable[[Account, str], ImapMailbox]
Summarizer = Callable[[SummaryRequest], EmailSummary]


def default_gmail_client(access_token: str, account: Account) -> GmailClient:
    return GmailClient(access_token, account_id=account.id)


def default_imap_connector(account: Account, password: str) -> ImapMailbox:
    return ImapMailbox(
        host=account.imap_host,
        username=account.address,
        password=password,
        port=account.imap_port,
        tls=account.imap_tls,
        account_id=account.id,
    )


@dataclass
class SyncContext:
    """State carried through a single sync_account call."""

    account: Account
    result: SyncResult
    contact_ids: dict[str, int] = field(default_factory=dict)
    listed_uids: list[int] = field(default_factory=list)
    uid_validity: int | None = None

    def transition(self, state: SyncState) -> None:
        logger.info("Account %s: %s -> %s", self.account.id, self.result.state.value, state.value)
        self.result.state = state

    def fail(self, error: str) -> SyncResult:
        self.transition(SyncState.FAILED)
        self.result.error = error
        return self.result

    def record_failure(self, external_id: str, exc: BaseException) -> None:
        logger.warning("Account %s: message %s failed: %s", self.account.id, external_id, exc)
        self.result.failed.append(external_id)


class SyncEngine:
    """Per-account sync entry points plus on-demand body and attachment reads."""

    def __init__(
        self,
        store: MailStore,
        settings: Settings | None = None,
        refresher: CredentialRefresher | None = None,
        gmail_client_factory: GmailClientFactory | None = None,
        imap_connector: ImapConnector | None = None,
        summarizer: Summarizer | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or Settings.from_env()
        self.refresher = refresher or CredentialRefresher(store, self.settings)
        self.gmail_client_factory = gmail_client_factory or default_gmail_client
        self.imap_connector = imap_connector or default_imap_connector
        self.summarizer = summarizer

    # --- entry points ---

    async def sync_account(self, account_id: int) -> SyncResult:
        """Pull new mail for one account and persist it.

        Raises AccountNotFound for an unknown id. Every other failure is
        reported through the returned :class:`SyncResult`.
        """
        account = self.store.get_account(account_id)
        ctx = SyncContext(account=account, result=SyncResult(account_id=account.id))

        if account.credentials_unavailable:
            logger.warning("Account %s: stored credentials cannot be decrypted, skipping", account.id)
            return ctx.fail("credentials_unavailable")
        if account.provider not in (Provider.GMAIL, Provider.IMAP):
            logger.warning("Account %s: provider %s is not synced", account.id, account.provider.value)
            return ctx.fail("unsupported_provider")

        try:
            token = await asyncio.to_thread(self.refresher.ensure_valid_token, account)
            if account.provider == Provider.IMAP:
                fetched = await asyncio.to_thread(self._imap_session, ctx, token.password)
            else:
                fetched = await self._gmail_session(ctx, token.access_token)
        except AuthExpired as exc:
            logger.warning("Account %s needs re-authentication: %s", account.id, exc)
            self.store.set_auth_error(account.id, exc.reason or "auth_expired")
            return ctx.fail("auth_expired")
        except Exception as exc:  # noqa: BLE001
            logger.error("Account %s: listing failed: %s", account.id, exc)
            return ctx.fail(f"listing_failed: {exc}")

        decoded = self._decode(ctx, fetched)
        await self._persist(ctx, decoded)

        if account.provider == Provider.IMAP and ctx.uid_validity is not None:
            previous = account.last_synced_uid if account.uid_validity == ctx.uid_validity else None
            last_uid = max([*ctx.listed_uids, previous or 0]) or None
            self.store.update_imap_watermark(account.id, last_uid, ctx.uid_validity)
        self.store.mark_synced(account.id)

        ctx.transition(SyncState.IDLE)
        logger.info(
            "Account %s synced: %d new, %d failed",
            account.id,
            ctx.result.new_messages,
            len(ctx.result.failed),
        )
        return ctx.result

    async def sync_all(self) -> list[SyncResult]:
        """Sync every connected account that is not waiting for re-authentication."""
        results: list[SyncResult] = []
        for account in self.store.list_accounts(connected_only=True):
            if account.auth_error:
                logger.info("Skipping account %s: %s", account.id, account.auth_error)
                continue
            results.append(await self.sync_account(account.id))
        return results

    # --- listing and fetching ---

    def _uncached(self, ctx: SyncContext, external_ids: list[str]) -> list[str]:
        existing = self.store.existing_external_ids(ctx.account.provider, external_ids)
        if existing:
            logger.debug("Account %s: %d of %d already stored", ctx.account.id, len(existing), len(external_ids))
        return [i for i in external_ids if i not in existing]

    def _list_gmail_ids(self, client: GmailClient) -> list[str]:
        limit = self.settings.max_messages_per_sync
        ids = client.list_message_ids(label_ids=[INBOX_LABEL], max_results=limit)
        if self.settings.include_sent:
            ids += client.list_message_ids(label_ids=[SENT_LABEL], max_results=limit)
        return list(dict.fromkeys(ids))

    async def _gmail_session(self, ctx: SyncContext, access_token: str) -> list[ProviderMessage]:
        client = await asyncio.to_thread(self.gmail_client_factory, access_token, ctx.account)
        ctx.transition(SyncState.LISTING)
        try:
            ids = await asyncio.to_thread(self._list_gmail_ids, client)
        except ProviderRateLimited:
            logger.warning(
                "Account %s: rate limited while listing, retrying in %.1fs",
                ctx.account.id,
                self.settings.rate_limit_delay,
            )
            await asyncio.sleep(self.settings.rate_limit_delay)
            ids = await asyncio.to_thread(self._list_gmail_ids, client)
        uncached = self._uncached(ctx, ids)
        ctx.transition(SyncState.FETCHING)
        return await self._fetch_in_batches(ctx, uncached, client.get_message)

    async def _fetch_in_batches(
        self, ctx: SyncContext, ids: list[str], fetch_one: Callable[[str], ProviderMessage]
    ) -> list[ProviderMessage]:
        """Fetch ``ids`` a few at a time with a pause between batches.

        Rate-limited items are retried once after a longer pause. AuthExpired
        aborts the run; any other per-item error lands in ``failed``.
        """
        fetched: list[ProviderMessage] = []
        size = max(1, self.settings.fetch_concurrency)

        for start in range(0, len(ids), size):
            if start:
                await asyncio.sleep(self.settings.batch_delay)
            batch = ids[start:start + size]
            outcomes = await asyncio.gather(
                *(asyncio.to_thread(fetch_one, i) for i in batch), return_exceptions=True
            )
            limited = self._collect(ctx, batch, outcomes, fetched, retry_rate_limited=True)
            if limited:
                logger.warning(
                    "Account %s: rate limited, retrying %d messages in %.1fs",
                    ctx.account.id,
                    len(limited),
                    self.settings.rate_limit_delay,
                )
                await asyncio.sleep(self.settings.rate_limit_delay)
                outcomes = await asyncio.gather(
                    *(asyncio.to_thread(fetch_one, i) for i in limited), return_exceptions=True
                )
                self._collect(ctx, limited, outcomes, fetched, retry_rate_limited=False)

        return fetched

    @staticmethod
    def _collect(
        ctx: SyncContext,
        batch: list[str],
        outcomes: list,
        fetched: list[ProviderMessage],
        retry_rate_limited: bool,
    ) -> list[str]:
        limited: list[str] = []
        for external_id, outcome in zip(batch, outcomes):
            if isinstance(outcome, AuthExpired):
                raise outcome
            if isinstance(outcome, ProviderRateLimited) and retry_rate_limited:
                limited.append(external_id)
            elif isinstance(outcome, BaseException):
                ctx.record_failure(external_id, outcome)
            else:
                fetched.append(outcome)
        return limited

    def _imap_candidates(self, ctx: SyncContext, mailbox: ImapMailbox) -> list[int]:
        account = ctx.account
        current = mailbox.select_inbox()
        ctx.uid_validity = current

        try:
            if account.uid_validity is not None and account.uid_validity != current:
                raise MailboxReset(account.uid_validity, current)
            if account.last_synced_uid:
                last = account.last_synced_uid
                # "n:*" always matches the highest UID, even when it is below n
                return [u for u in mailbox.search(["UID", f"{last + 1}:*"]) if u > last]
        except MailboxReset as exc:
            logger.info("Account %s: %s; rescanning INBOX", account.id, exc)

        return mailbox.search(["ALL"])[-IMAP_INITIAL_SYNC_CAP:]

    def _imap_session(self, ctx: SyncContext, password: str | None) -> list[ProviderMessage]:
        """Run one IMAP session in the calling worker thread."""
        account = ctx.account
        fetched: list[ProviderMessage] = []

        with self.imap_connector(account, password) as mailbox:
            ctx.transition(SyncState.LISTING)
            uids = sorted(self._imap_candidates(ctx, mailbox))[: self.settings.max_messages_per_sync]
            ctx.listed_uids = uids
            by_id = {imap_external_id(account.imap_host, uid): uid for uid in uids}
            uncached = self._uncached(ctx, list(by_id))

            ctx.transition(SyncState.FETCHING)
            size = max(1, self.settings.fetch_concurrency)
            for start in range(0, len(uncached), size):
                if start:
                    time.sleep(self.settings.batch_delay)
                batch = uncached[start:start + size]
                try:
                    messages = mailbox.fetch([by_id[i] for i in batch])
                except Exception as exc:  # noqa: BLE001
                    for external_id in batch:
                        ctx.record_failure(external_id, exc)
                    continue
                for external_id in batch:
                    uid = by_id[external_id]
                    if uid not in messages:
                        ctx.record_failure(external_id, MessageNotFound("not returned by FETCH"))
                        continue
                    raw, flags = messages[uid]
                    try:
                        fetched.append(provider_message_from_raw(account.imap_host, uid, raw, flags))
                    except Exception as exc:  # noqa: BLE001
                        ctx.record_failure(external_id, exc)

        return fetched

    # --- decoding ---

    def _decode(self, ctx: SyncContext, raws: list[ProviderMessage]) -> list[DecodedMessage]:
        ctx.transition(SyncState.DECODING)
        decoded: list[DecodedMessage] = []
        for raw in raws:
            try:
                decoded.append(decode_message(raw, ctx.account.provider, ctx.account.address))
            except DecodeFailure as exc:
                ctx.record_failure(raw.external_id, exc)
        return decoded

    # --- persisting ---

    @staticmethod
    def _tally(messages: list[DecodedMessage]) -> dict[str, tuple[str | None, int, datetime]]:
        """Map each distinct address to (latest name, message count, latest received_at)."""
        seen: dict[str, tuple[str | None, int, datetime]] = {}
        for message in messages:
            people = {}
            for person in [message.sender, *message.to, *message.cc]:
                people.setdefault(person.email.lower(), person.name)
            for email_addr, name in people.items():
                if "@" not in email_addr:
                    continue
                prev_name, count, latest = seen.get(email_addr, (None, 0, message.received_at))
                if message.received_at >= latest and name:
                    prev_name = name
                elif prev_name is None:
                    prev_name = name
                seen[email_addr] = (prev_name, count + 1, max(latest, message.received_at))
        return seen

    def _resolve_contacts(self, ctx: SyncContext, messages: list[DecodedMessage]) -> None:
        """Look up or create every sender and recipient of the batch, one at a time."""
        for email_addr, (name, _, latest) in self._tally(messages).items():
            try:
                ctx.contact_ids[email_addr] = self.store.ensure_contact(
                    ctx.account.user_id, email_addr, name=name, seen_at=latest
                )
            except WriteConflict as exc:
                logger.warning("Account %s: %s", ctx.account.id, exc)

    def _count_contacts(self, ctx: SyncContext, created: list[DecodedMessage]) -> None:
        """Add newly stored messages to their contacts' counters, one contact at a time."""
        for email_addr, (name, count, latest) in self._tally(created).items():
            try:
                self.store.upsert_contact(ctx.account.user_id, email_addr, name=name, seen_at=latest, count=count)
            except WriteConflict as exc:
                logger.warning("Account %s: %s", ctx.account.id, exc)

    def _record_for(self, ctx: SyncContext, message: DecodedMessage) -> MessageRecord:
        sender_id = ctx.contact_ids.get(message.sender.email)
        if sender_id is None:
            raise WriteConflict(f"sender contact {message.sender.email} was not resolved")
        return MessageRecord(
            external_id=message.external_id,
            provider=message.provider,
            user_id=ctx.account.user_id,
            account_id=ctx.account.id,
            from_contact_id=sender_id,
            to_contact_ids=[ctx.contact_ids[p.email] for p in message.to if p.email in ctx.contact_ids],
            cc_contact_ids=[ctx.contact_ids[p.email] for p in message.cc if p.email in ctx.contact_ids],
            subject=message.subject,
            preview=message.preview,
            body_html=message.body.html,
            body_plain=message.body.plain,
            received_at=message.received_at,
            thread_id=message.thread_id,
            is_read=message.is_read,
            direction=message.direction,
            is_subscription=message.subscription.is_subscription,
            list_unsubscribe=message.subscription.list_unsubscribe,
            list_unsubscribe_post=message.subscription.list_unsubscribe_post,
            attachments=message.attachments,
        )

    def _store_message(self, ctx: SyncContext, message: DecodedMessage) -> tuple[int, bool]:
        message_id, is_new = self.store.upsert_message(self._record_for(ctx, message))
        if is_new and message.subscription.is_subscription:
            self.store.upsert_subscription(
                ctx.account.user_id,
                message.sender.email,
                message_id,
                message.received_at,
                sender_name=message.sender.name,
                list_unsubscribe=message.subscription.list_unsubscribe,
                list_unsubscribe_post=message.subscription.list_unsubscribe_post,
                subject=message.subject,
            )
        return message_id, is_new

    async def _persist(self, ctx: SyncContext, messages: list[DecodedMessage]) -> None:
        ctx.transition(SyncState.PERSISTING)
        self._resolve_contacts(ctx, messages)

        outcomes = await asyncio.gather(
            *(asyncio.to_thread(self._store_message, ctx, m) for m in messages), return_exceptions=True
        )
        created: list[tuple[int, DecodedMessage]] = []
        for message, outcome in zip(messages, outcomes):
            if isinstance(outcome, BaseException):
                ctx.record_failure(message.external_id, outcome)
                continue
            message_id, is_new = outcome
            ctx.result.synced.append(message.external_id)
            if is_new:
                ctx.result.new_messages += 1
                created.append((message_id, message))

        self._count_contacts(ctx, [message for _, message in created])

        if self.summarizer is not None:
            for message_id, message in created:
                await self._summarize(ctx, message_id, message)

    async def _summarize(self, ctx: SyncContext, message_id: int, message: DecodedMessage) -> None:
        request = SummaryRequest(
            subject=message.subject,
            body_full=message.body.plain or strip_html(message.body.html),
            sender_context=f"{message.sender.name} <{message.sender.email}>",
        )
        try:
            summary = await asyncio.to_thread(self.summarizer, request)
            self.store.store_summary(message_id, ctx.account.user_id, summary)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Summary for message %s failed: %s", message_id, exc)

    # --- on-demand reads ---

    async def _authorised(self, account: Account):
        try:
            return await asyncio.to_thread(self.refresher.ensure_valid_token, account)
        except AuthExpired as exc:
            self.store.set_auth_error(account.id, exc.reason or "auth_expired")
            raise

    def _imap_fetch_raw(self, account: Account, password: str | None, external_id: str) -> bytes:
        with self.imap_connector(account, password) as mailbox:
            mailbox.select_inbox()
            raw = mailbox.fetch_raw(uid_from_external_id(external_id))
        if raw is None:
            raise MessageNotFound(f"{external_id} is no longer on the server")
        return raw

    async def _fetch_full(self, account: Account, external_id: str) -> ProviderMessage:
        token = await self._authorised(account)
        if account.provider == Provider.IMAP:
            raw = await asyncio.to_thread(self._imap_fetch_raw, account, token.password, external_id)
            return provider_message_from_raw(account.imap_host, uid_from_external_id(external_id), raw)
        client = await asyncio.to_thread(self.gmail_client_factory, token.access_token, account)
        return await asyncio.to_thread(client.get_message, external_id)

    async def fetch_message_body(self, message_id: int) -> MessageBody:
        """Return a message's body, fetching and storing it first if it is missing."""
        message = self.store.get_message(message_id)
        body = self.store.get_body(message_id)
        if body is not None:
            return body

        account = self.store.get_account(message.account_id)
        raw = await self._fetch_full(account, message.external_id)
        self.store.store_body(message_id, account.user_id, decode_body(raw.payload), decode_attachments(raw.payload))
        return self.store.get_body(message_id)

    async def download_attachment(self, message_id: int, attachment_id: str) -> bytes:
        """Return attachment bytes, downloading them on first request.

        Downloaded bytes are sealed with the owner's key and kept under the
        blob directory; later calls read the blob instead of the provider.
        """
        message = self.store.get_message(message_id)
        attachment = self.store.get_attachment(message_id, attachment_id)
        codec = self.store.codec

        if attachment.blob_path:
            try:
                with open(attachment.blob_path, "rb") as f:
                    data = codec.decrypt_bytes(message.user_id, f.read())
            except FileNotFoundError:
                data = None
            if data is not None:
                return data
            logger.warning("Blob for attachment %s is unreadable, downloading again", attachment.id)

        account = self.store.get_account(message.account_id)
        token = await self._authorised(account)
        if account.provider == Provider.IMAP:
            raw = await asyncio.to_thread(self._imap_fetch_raw, account, token.password, message.external_id)
            part = email_part_at(parse_raw_message(raw), attachment.attachment_id)
            if part is None:
                raise MessageNotFound(f"Attachment {attachment_id} not found in {message.external_id}")
            data = part.get_payload(decode=True) or b""
        else:
            client = await asyncio.to_thread(self.gmail_client_factory, token.access_token, account)
            data = await asyncio.to_thread(client.get_attachment, message.external_id, attachment_id)

        blob_path = self.settings.blob_dir / message.user_id / f"{attachment.id}.bin"
        blob_path.parent.mkdir(parents=True, exist_ok=True)
        blob_path.write_bytes(codec.encrypt_bytes(message.user_id, data))
        self.store.set_attachment_blob(attachment.id, str(blob_path))
        return data
