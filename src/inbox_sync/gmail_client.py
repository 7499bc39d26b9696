"""Gmail API client for listing and fetching messages."""

from __future__ import annotations

from datetime import datetime, timezone

import google_auth_httplib2
import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .constants import HTTP_TIMEOUT_SECONDS, INBOX_LABEL, PAGE_SIZE, UNREAD_LABEL
from .errors import AuthExpired, ProviderRateLimited
from .mime import decode_base64url, part_from_gmail
from .models import ProviderMessage

_RATE_LIMIT_REASONS = ("rateLimitExceeded", "userRateLimitExceeded")


def _is_retryable_http_error(exc: BaseException) -> bool:
    return isinstance(exc, HttpError) and exc.resp.status in (500, 502, 503)


@retry(
    retry=retry_if_exception(_is_retryable_http_error),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    stop=stop_after_attempt(3),
    reraise=True,
)
def _execute(request, http):
    return request.execute(http=http)


def provider_message_from_gmail(data: dict) -> ProviderMessage:
    """Convert a ``messages.get`` response into a :class:`ProviderMessage`."""
    payload = data.get("payload") or {}
    labels = data.get("labelIds") or []
    internal_date = data.get("internalDate")
    received_at = (
        datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc) if internal_date else None
    )
    return ProviderMessage(
        external_id=data["id"],
        payload=part_from_gmail(payload),
        headers=[(h.get("name", ""), h.get("value", "")) for h in payload.get("headers", [])],
        thread_id=data.get("threadId"),
        snippet=data.get("snippet") or "",
        label_ids=labels,
        received_at=received_at,
        is_read=UNREAD_LABEL not in labels,
    )


class GmailClient:
    """Thin wrapper over the Gmail REST API bound to one access token.

    Each call executes over its own ``httplib2.Http`` so calls may run in
    parallel worker threads.
    """

    def __init__(self, access_token: str, account_id: int | None = None, timeout: int = HTTP_TIMEOUT_SECONDS) -> None:
        self.account_id = account_id
        self._credentials = Credentials(token=access_token)
        self._timeout = timeout
        self.service = build("gmail", "v1", credentials=self._credentials, cache_discovery=False)

    def _new_http(self) -> google_auth_httplib2.AuthorizedHttp:
        return google_auth_httplib2.AuthorizedHttp(self._credentials, http=httplib2.Http(timeout=self._timeout))

    def _run(self, request):
        try:
            return _execute(request, self._new_http())
        except HttpError as exc:
            status = exc.resp.status
            if status == 429 or (status == 403 and any(r in str(exc.content) for r in _RATE_LIMIT_REASONS)):
                raise ProviderRateLimited(f"Gmail rate limit ({status})") from exc
            if status == 401:
                raise AuthExpired(self.account_id, "Gmail rejected the access token") from exc
            raise

    def list_message_ids(
        self,
        label_ids: list[str] | None = None,
        max_results: int | None = None,
        query: str | None = None,
    ) -> list[str]:
        """List message IDs carrying all of ``label_ids``, handling pagination."""
        ids: list[str] = []
        page_token: str | None = None

        while True:
            kwargs: dict = {
                "userId": "me",
                "labelIds": label_ids or [INBOX_LABEL],
                "maxResults": min(PAGE_SIZE, max_results) if max_results else PAGE_SIZE,
                "fields": "messages/id,nextPageToken",
            }
            if query:
                kwargs["q"] = query
            if page_token:
                kwargs["pageToken"] = page_token

            resp = self._run(self.service.users().messages().list(**kwargs))
            for msg in resp.get("messages", []):
                ids.append(msg["id"])
                if max_results and len(ids) >= max_results:
                    return ids[:max_results]

            page_token = resp.get("nextPageToken")
            if not page_token:
                break

        return ids

    def get_message(self, message_id: str, format: str = "full") -> ProviderMessage:
        """Fetch one message (``format`` is ``full`` or ``metadata``)."""
        data = self._run(self.service.users().messages().get(userId="me", id=message_id, format=format))
        return provider_message_from_gmail(data)

    def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        """Download one attachment body."""
        data = self._run(
            self.service.users().messages().attachments().get(
                userId="me", messageId=message_id, id=attachment_id
            )
        )
        return decode_base64url(data.get("data", ""))

    def get_profile_email(self) -> str:
        profile = self._run(self.service.users().getProfile(userId="me"))
        return profile["emailAddress"]
