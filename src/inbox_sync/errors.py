"""Exception taxonomy for the sync engine."""


class InboxSyncError(Exception):
    """Base class for all inbox-sync errors."""


class AuthExpired(InboxSyncError):
    """The account's grant was revoked or could not be refreshed; re-auth required."""

    def __init__(self, account_id: int | None, reason: str = "") -> None:
        self.account_id = account_id
        self.reason = reason
        super().__init__(f"Authorization expired for account {account_id}: {reason}".rstrip(": "))


class ProviderRateLimited(InboxSyncError):
    """The provider answered with a rate limit signal (HTTP 429)."""


class DecodeFailure(InboxSyncError):
    """A single message could not be decoded (malformed MIME or sender)."""


class WriteConflict(InboxSyncError):
    """A contact upsert collided with a concurrent writer twice in a row."""


class MailboxReset(InboxSyncError):
    """IMAP UIDVALIDITY changed; stored UIDs no longer identify messages."""

    def __init__(self, previous: int, current: int) -> None:
        self.previous = previous
        self.current = current
        super().__init__(f"UIDVALIDITY changed from {previous} to {current}")


class AccountNotFound(InboxSyncError):
    """No account with the given id exists."""


class MessageNotFound(InboxSyncError):
    """No message (or attachment) with the given id exists."""
