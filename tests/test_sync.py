"""Tests for the sync orchestrator, driven with in-memory providers."""

import asyncio
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage

import pytest
from google.auth.exceptions import RefreshError

import inbox_sync.credentials as credentials_module
import inbox_sync.sync as sync_module
from inbox_sync.errors import AccountNotFound, AuthExpired, ProviderRateLimited, WriteConflict
from inbox_sync.gmail_client import provider_message_from_gmail
from inbox_sync.models import EmailSummary, Provider, SyncState
from inbox_sync.sync import SyncEngine

IMAP_HOST = "imap.fastmail.test"


class FakeGmail:
    def __init__(self, messages: dict, inbox=None, sent=(), failing=(), rate_limited=()):
        self.messages = messages
        self.labels = {"INBOX": list(inbox if inbox is not None else messages), "SENT": list(sent)}
        self.failing = set(failing)
        self.rate_limited = set(rate_limited)
        self.fetched: list[str] = []
        self.listed_labels: list[list[str]] = []
        self.attachment_calls = 0
        self.list_rate_limits = 0

    def list_message_ids(self, label_ids=None, max_results=None, query=None):
        self.listed_labels.append(label_ids)
        if self.list_rate_limits:
            self.list_rate_limits -= 1
            raise ProviderRateLimited("Gmail rate limit (429)")
        return self.labels[label_ids[0]][:max_results]

    def get_message(self, message_id, format="full"):
        self.fetched.append(message_id)
        if message_id in self.failing:
            raise ConnectionResetError("connection reset by peer")
        if message_id in self.rate_limited:
            self.rate_limited.discard(message_id)
            raise ProviderRateLimited("Gmail rate limit (429)")
        return provider_message_from_gmail(self.messages[message_id])

    def get_attachment(self, message_id, attachment_id):
        self.attachment_calls += 1
        return b"%PDF-1.4 quarterly"


class FakeMailbox:
    def __init__(self, uid_validity: int, messages: dict):
        self.uid_validity = uid_validity
        self.messages = messages
        self.searches: list[list] = []
        self.passwords: list[str] = []

    def __call__(self, account, password):
        self.passwords.append(password)
        return self

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return None

    def select_inbox(self):
        return self.uid_validity

    def search(self, criteria):
        self.searches.append(criteria)
        uids = sorted(self.messages)
        if criteria == ["ALL"]:
            return uids
        start = int(criteria[1].split(":")[0])
        # a server answers "n:*" with the highest UID even when it is below n
        return [u for u in uids if u >= start] or uids[-1:]

    def fetch(self, uids):
        return {uid: (self.messages[uid], (b"\\Seen",)) for uid in uids if uid in self.messages}

    def fetch_raw(self, uid):
        return self.messages.get(uid)


def _engine(store, settings, gmail=None, mailbox=None, summarizer=None) -> SyncEngine:
    return SyncEngine(
        store,
        settings=settings,
        gmail_client_factory=(lambda token, account: gmail) if gmail else None,
        imap_connector=mailbox,
        summarizer=summarizer,
    )


def _run(engine: SyncEngine, account_id: int):
    return asyncio.run(engine.sync_account(account_id))


def test_failed_fetch_does_not_abort_batch(store, settings, gmail_account, gmail_message):
    gmail = FakeGmail({i: gmail_message(i) for i in ("m1", "m2", "m3")}, failing={"m2"})

    result = _run(_engine(store, settings, gmail), gmail_account.id)

    assert result.synced == ["m1", "m3"]
    assert result.failed == ["m2"]
    assert result.new_messages == 2
    assert result.state == SyncState.IDLE
    assert result.error is None


def test_cached_ids_are_not_fetched_again(store, settings, gmail_account, gmail_message):
    gmail = FakeGmail({i: gmail_message(i) for i in ("m1", "m2")})
    engine = _engine(store, settings, gmail)

    first = _run(engine, gmail_account.id)
    gmail.messages["m3"] = gmail_message("m3")
    gmail.labels["INBOX"].append("m3")
    second = _run(engine, gmail_account.id)

    assert first.new_messages == 2
    assert second.synced == ["m3"]
    assert second.new_messages == 1
    assert gmail.fetched.count("m1") == 1
    assert store.count_messages("m1", Provider.GMAIL) == 1


def test_batches_respect_concurrency(store, settings, gmail_account, gmail_message):
    settings.fetch_concurrency = 2
    ids = [f"m{i}" for i in range(5)]
    gmail = FakeGmail({i: gmail_message(i) for i in ids})

    result = _run(_engine(store, settings, gmail), gmail_account.id)

    assert sorted(result.synced) == sorted(ids)
    assert sorted(gmail.fetched) == sorted(ids)


def test_rate_limited_items_are_retried(store, settings, gmail_account, gmail_message):
    gmail = FakeGmail({i: gmail_message(i) for i in ("m1", "m2")}, rate_limited={"m1"})

    result = _run(_engine(store, settings, gmail), gmail_account.id)

    assert sorted(result.synced) == ["m1", "m2"]
    assert result.failed == []
    assert gmail.fetched.count("m1") == 2


def test_rate_limited_listing_is_retried_once(store, settings, gmail_account, gmail_message):
    gmail = FakeGmail({"m1": gmail_message("m1")})
    gmail.list_rate_limits = 1

    result = _run(_engine(store, settings, gmail), gmail_account.id)

    assert result.state == SyncState.IDLE
    assert result.synced == ["m1"]
    assert gmail.listed_labels == [["INBOX"], ["INBOX"]]


def test_listing_still_rate_limited_fails_run(store, settings, gmail_account, gmail_message):
    gmail = FakeGmail({"m1": gmail_message("m1")})
    gmail.list_rate_limits = 2

    result = _run(_engine(store, settings, gmail), gmail_account.id)

    assert result.state == SyncState.FAILED
    assert result.error.startswith("listing_failed")
    assert gmail.fetched == []


def test_contact_conflict_fails_only_its_messages(store, settings, gmail_account, gmail_message, monkeypatch):
    ensure_contact = store.ensure_contact

    def conflicting(user_id, email, name=None, seen_at=None):
        if email == "alice@example.com":
            raise WriteConflict(f"Contact upsert for {email} conflicted twice")
        return ensure_contact(user_id, email, name=name, seen_at=seen_at)

    monkeypatch.setattr(store, "ensure_contact", conflicting)
    gmail = FakeGmail({"m1": gmail_message("m1"), "m2": gmail_message("m2", sender="Bob <bob@example.org>")})

    result = _run(_engine(store, settings, gmail), gmail_account.id)

    assert result.failed == ["m1"]
    assert result.synced == ["m2"]
    assert store.get_message_by_external_id("m1", Provider.GMAIL) is None


def test_contact_counts_only_stored_messages(store, settings, gmail_account, gmail_message, monkeypatch):
    upsert_message = store.upsert_message
    attempts = []

    def flaky(record):
        if record.external_id == "m2" and not attempts:
            attempts.append(record.external_id)
            raise OSError("disk I/O error")
        return upsert_message(record)

    monkeypatch.setattr(store, "upsert_message", flaky)
    gmail = FakeGmail({"m1": gmail_message("m1"), "m2": gmail_message("m2")})
    engine = _engine(store, settings, gmail)

    first = _run(engine, gmail_account.id)
    assert first.failed == ["m2"]
    assert store.get_contact_by_email("user-1", "alice@example.com").email_count == 1

    second = _run(engine, gmail_account.id)
    assert second.synced == ["m2"]
    assert store.get_contact_by_email("user-1", "alice@example.com").email_count == 2
    assert store.get_contact_by_email("user-1", "me@example.com").email_count == 2


def test_undecodable_sender_is_a_per_item_failure(store, settings, gmail_account, gmail_message):
    gmail = FakeGmail({"m1": gmail_message("m1"), "m2": gmail_message("m2", sender="MAILER-DAEMON")})

    result = _run(_engine(store, settings, gmail), gmail_account.id)

    assert result.synced == ["m1"]
    assert result.failed == ["m2"]


def test_expired_grant_flags_account(store, settings, gmail_account, gmail_message, monkeypatch):
    def _revoked(self, request):
        raise RefreshError("invalid_grant")

    monkeypatch.setattr(credentials_module.Credentials, "refresh", _revoked)
    store.update_account_tokens(gmail_account.id, "access-1", datetime.now(timezone.utc) - timedelta(minutes=1))
    gmail = FakeGmail({"m1": gmail_message("m1")})
    engine = _engine(store, settings, gmail)

    result = _run(engine, gmail_account.id)

    assert result.state == SyncState.FAILED
    assert result.error == "auth_expired"
    assert gmail.fetched == []
    assert store.get_account(gmail_account.id).auth_error
    assert asyncio.run(engine.sync_all()) == []


def test_provider_401_during_fetch_aborts_run(store, settings, gmail_account, gmail_message):
    class RevokedGmail(FakeGmail):
        def get_message(self, message_id, format="full"):
            raise AuthExpired(gmail_account.id, "Gmail rejected the access token")

    gmail = RevokedGmail({"m1": gmail_message("m1")})
    result = _run(_engine(store, settings, gmail), gmail_account.id)

    assert result.state == SyncState.FAILED
    assert result.error == "auth_expired"


def test_undecryptable_credentials_are_skipped(store, settings, gmail_account, gmail_message):
    with store._conn:
        store._conn.execute("DELETE FROM user_keys")
    gmail = FakeGmail({"m1": gmail_message("m1")})

    result = _run(_engine(store, settings, gmail), gmail_account.id)

    assert result.state == SyncState.FAILED
    assert result.error == "credentials_unavailable"
    assert gmail.listed_labels == []


def test_unknown_account(store, settings):
    with pytest.raises(AccountNotFound):
        _run(_engine(store, settings), 42)


def test_contacts_and_subscriptions_are_recorded(store, settings, gmail_account, gmail_message):
    unsub = [("List-Unsubscribe", "<https://shop.example/u>"), ("List-Unsubscribe-Post", "List-Unsubscribe=One-Click")]
    gmail = FakeGmail(
        {
            "m1": gmail_message("m1", sender="Shop <deals@shop.example>", extra_headers=unsub, internal_date=1_700_000_000_000),
            "m2": gmail_message("m2", sender="Shop Deals <deals@shop.example>", extra_headers=unsub, internal_date=1_700_000_500_000),
            "m3": gmail_message("m3", internal_date=1_700_000_100_000),
        }
    )

    _run(_engine(store, settings, gmail), gmail_account.id)

    shop = store.get_contact_by_email("user-1", "deals@shop.example")
    assert shop.email_count == 2
    assert shop.name == "Shop Deals"
    assert shop.last_email_at == datetime.fromtimestamp(1_700_000_500, tz=timezone.utc)
    assert store.get_contact_by_email("user-1", "me@example.com").email_count == 3

    sub = store.get_subscription("user-1", "deals@shop.example")
    assert sub.email_count == 2
    assert sub.unsubscribe_method.value == "http_post"
    assert store.get_subscription("user-1", "alice@example.com") is None

    message = store.get_message_by_external_id("m1", Provider.GMAIL)
    assert message.is_subscription
    assert message.from_contact_id == shop.id


def test_include_sent_lists_sent_label(store, settings, gmail_account, gmail_message):
    settings.include_sent = True
    gmail = FakeGmail(
        {"m1": gmail_message("m1"), "s1": gmail_message("s1", sender="me@example.com", labels=["SENT"])},
        inbox=["m1"],
        sent=["s1"],
    )

    result = _run(_engine(store, settings, gmail), gmail_account.id)

    assert gmail.listed_labels == [["INBOX"], ["SENT"]]
    assert sorted(result.synced) == ["m1", "s1"]
    assert store.get_message_by_external_id("s1", Provider.GMAIL).direction.value == "outgoing"


def test_summarizer_runs_for_new_messages(store, settings, gmail_account, gmail_message):
    requests = []

    def summarize(request):
        requests.append(request)
        if "boom" in request.subject:
            raise RuntimeError("model unavailable")
        return EmailSummary(summary="Short note", urgency_score=10)

    gmail = FakeGmail({"m1": gmail_message("m1"), "m2": gmail_message("m2", subject="boom")})
    result = _run(_engine(store, settings, gmail, summarizer=summarize), gmail_account.id)

    assert sorted(result.synced) == ["m1", "m2"]
    assert len(requests) == 2
    assert requests[0].sender_context == "Alice Smith <alice@example.com>"
    m1 = store.get_message_by_external_id("m1", Provider.GMAIL)
    assert store.get_summary(m1.id).summary == "Short note"


def _imap_account_with_watermark(store, account, uid_validity, last_uid):
    store.update_imap_watermark(account.id, last_uid, uid_validity)
    return store.get_account(account.id)


def test_uidvalidity_change_triggers_full_search(store, settings, imap_account, raw_email):
    account = _imap_account_with_watermark(store, imap_account, uid_validity=100, last_uid=5)
    mailbox = FakeMailbox(200, {1: raw_email(subject="one"), 2: raw_email(subject="two")})

    result = _run(_engine(store, settings, mailbox=mailbox), account.id)

    assert mailbox.searches == [["ALL"]]
    assert result.synced == [f"imap:{IMAP_HOST}:INBOX:1", f"imap:{IMAP_HOST}:INBOX:2"]
    stored = store.get_account(account.id)
    assert stored.uid_validity == 200
    assert stored.last_synced_uid == 2


def test_incremental_uid_search(store, settings, imap_account, raw_email):
    account = _imap_account_with_watermark(store, imap_account, uid_validity=100, last_uid=5)
    mailbox = FakeMailbox(100, {u: raw_email(subject=f"uid {u}") for u in (4, 5, 6, 7)})

    result = _run(_engine(store, settings, mailbox=mailbox), account.id)

    assert mailbox.searches == [["UID", "6:*"]]
    assert result.synced == [f"imap:{IMAP_HOST}:INBOX:6", f"imap:{IMAP_HOST}:INBOX:7"]
    assert mailbox.passwords == ["app-password"]
    assert store.get_account(account.id).last_synced_uid == 7
    message = store.get_message_by_external_id(f"imap:{IMAP_HOST}:INBOX:6", Provider.IMAP)
    assert message.is_read
    assert message.subject == "uid 6"


def test_incremental_search_with_nothing_new(store, settings, imap_account, raw_email):
    account = _imap_account_with_watermark(store, imap_account, uid_validity=100, last_uid=5)
    mailbox = FakeMailbox(100, {4: raw_email(), 5: raw_email()})

    result = _run(_engine(store, settings, mailbox=mailbox), account.id)

    assert result.synced == []
    assert result.state == SyncState.IDLE
    assert store.get_account(account.id).last_synced_uid == 5


def test_first_imap_sync_is_bounded(store, settings, imap_account, raw_email, monkeypatch):
    monkeypatch.setattr(sync_module, "IMAP_INITIAL_SYNC_CAP", 2)
    mailbox = FakeMailbox(100, {u: raw_email(subject=f"uid {u}") for u in range(1, 6)})

    result = _run(_engine(store, settings, mailbox=mailbox), imap_account.id)

    assert mailbox.searches == [["ALL"]]
    assert result.synced == [f"imap:{IMAP_HOST}:INBOX:4", f"imap:{IMAP_HOST}:INBOX:5"]
    stored = store.get_account(imap_account.id)
    assert stored.uid_validity == 100
    assert stored.last_synced_uid == 5


def test_unparseable_imap_message_fails_alone(store, settings, imap_account, raw_email):
    broken = raw_email(subject="broken").replace(b"To: me@fastmail.test\r\n", b"To: a@[\r\n")
    mailbox = FakeMailbox(100, {1: raw_email(subject="one"), 2: broken, 3: raw_email(subject="three")})

    result = _run(_engine(store, settings, mailbox=mailbox), imap_account.id)

    assert result.synced == [f"imap:{IMAP_HOST}:INBOX:1", f"imap:{IMAP_HOST}:INBOX:3"]
    assert result.failed == [f"imap:{IMAP_HOST}:INBOX:2"]
    assert result.state == SyncState.IDLE


def test_imap_subscription_from_list_id(store, settings, imap_account, raw_email):
    mailbox = FakeMailbox(
        100, {1: raw_email(sender="Dev List <dev@lists.example.org>", extra_headers="List-Id: <dev.lists.example.org>\r\n")}
    )

    _run(_engine(store, settings, mailbox=mailbox), imap_account.id)

    assert store.get_subscription("user-1", "dev@lists.example.org") is not None


def test_sync_all_skips_disconnected(store, settings, gmail_account, imap_account, gmail_message, raw_email):
    gmail = FakeGmail({"m1": gmail_message("m1")})
    mailbox = FakeMailbox(100, {1: raw_email()})
    store.disconnect_account(imap_account.id)

    results = asyncio.run(_engine(store, settings, gmail, mailbox).sync_all())

    assert [r.account_id for r in results] == [gmail_account.id]
    assert mailbox.searches == []


def test_fetch_message_body_backfills(store, settings, gmail_account, gmail_message):
    gmail = FakeGmail({"m1": gmail_message("m1", plain="Original body text")})
    engine = _engine(store, settings, gmail)
    _run(engine, gmail_account.id)
    message = store.get_message_by_external_id("m1", Provider.GMAIL)

    assert asyncio.run(engine.fetch_message_body(message.id)).plain == "Original body text"
    assert gmail.fetched == ["m1"]

    with store._conn:
        store._conn.execute("DELETE FROM message_bodies")
    body = asyncio.run(engine.fetch_message_body(message.id))

    assert body.plain == "Original body text"
    assert gmail.fetched == ["m1", "m1"]
    assert store.get_body(message.id) is not None


def test_gmail_attachment_is_downloaded_once(store, settings, gmail_account, gmail_message):
    data = gmail_message("m1")
    data["payload"]["mimeType"] = "multipart/mixed"
    data["payload"]["parts"].append(
        {"mimeType": "application/pdf", "filename": "q3.pdf", "body": {"attachmentId": "att-1", "size": 18}}
    )
    gmail = FakeGmail({"m1": data})
    engine = _engine(store, settings, gmail)
    _run(engine, gmail_account.id)
    message = store.get_message_by_external_id("m1", Provider.GMAIL)

    first = asyncio.run(engine.download_attachment(message.id, "att-1"))
    second = asyncio.run(engine.download_attachment(message.id, "att-1"))

    assert first == second == b"%PDF-1.4 quarterly"
    assert gmail.attachment_calls == 1
    blob_path = store.get_attachment(message.id, "att-1").blob_path
    assert blob_path.startswith(str(settings.blob_dir))
    with open(blob_path, "rb") as f:
        assert b"quarterly" not in f.read()


def test_imap_attachment_is_located_by_part_path(store, settings, imap_account):
    email = EmailMessage()
    email["From"] = "Carol <carol@example.net>"
    email["To"] = "me@fastmail.test"
    email["Subject"] = "Slides"
    email.set_content("Slides attached.")
    email.add_attachment(b"slide-bytes", maintype="application", subtype="pdf", filename="slides.pdf")
    mailbox = FakeMailbox(100, {9: email.as_bytes()})
    engine = _engine(store, settings, mailbox=mailbox)

    _run(engine, imap_account.id)
    message = store.get_message_by_external_id(f"imap:{IMAP_HOST}:INBOX:9", Provider.IMAP)
    attachments = store.list_attachments(message.id)

    assert [a.attachment_id for a in attachments] == ["2"]
    assert asyncio.run(engine.download_attachment(message.id, "2")) == b"slide-bytes"
