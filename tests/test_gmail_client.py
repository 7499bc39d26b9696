"""Tests for the Gmail client wrapper."""

from datetime import datetime, timezone

import httplib2
import pytest
from googleapiclient.errors import HttpError

import inbox_sync.gmail_client as gmail_client
from inbox_sync.errors import AuthExpired, ProviderRateLimited
from inbox_sync.gmail_client import GmailClient, provider_message_from_gmail
from inbox_sync.models import Container


class FakeRequest:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = 0

    def execute(self, http=None):
        self.calls += 1
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _http_error(status: int, content: bytes = b"{}") -> HttpError:
    return HttpError(resp=httplib2.Response({"status": status}), content=content)


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(gmail_client, "build", lambda *args, **kwargs: None)
    return GmailClient("access-token", account_id=7)


def test_provider_message_from_gmail(gmail_message):
    raw = provider_message_from_gmail(gmail_message("m1", labels=["INBOX"]))
    assert raw.external_id == "m1"
    assert raw.thread_id == "thread-m1"
    assert raw.is_read
    assert raw.received_at == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert isinstance(raw.payload, Container)
    assert ("Subject", "Hello") in raw.headers


def test_missing_internal_date(gmail_message):
    data = gmail_message("m1")
    del data["internalDate"]
    assert provider_message_from_gmail(data).received_at is None


def test_429_is_rate_limited(client):
    with pytest.raises(ProviderRateLimited):
        client._run(FakeRequest([_http_error(429)]))


def test_403_rate_limit_reason_is_rate_limited(client):
    content = b'{"error": {"errors": [{"reason": "userRateLimitExceeded"}]}}'
    with pytest.raises(ProviderRateLimited):
        client._run(FakeRequest([_http_error(403, content)]))


def test_401_is_auth_expired(client):
    with pytest.raises(AuthExpired) as exc_info:
        client._run(FakeRequest([_http_error(401)]))
    assert exc_info.value.account_id == 7


def test_other_errors_propagate(client):
    request = FakeRequest([_http_error(404)])
    with pytest.raises(HttpError):
        client._run(request)
    assert request.calls == 1


def test_list_message_ids_paginates(client, monkeypatch):
    pages = [
        {"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "p2"},
        {"messages": [{"id": "c"}]},
    ]
    monkeypatch.setattr(client, "_run", lambda request: pages.pop(0))

    class _Messages:
        def list(self, **kwargs):
            return kwargs

    class _Users:
        def messages(self):
            return _Messages()

    class _Service:
        def users(self):
            return _Users()

    client.service = _Service()
    assert client.list_message_ids(label_ids=["INBOX"]) == ["a", "b", "c"]


def test_list_message_ids_respects_max(client, monkeypatch):
    monkeypatch.setattr(
        client, "_run", lambda request: {"messages": [{"id": str(i)} for i in range(10)], "nextPageToken": "more"}
    )

    class _Service:
        def users(self):
            return self

        def messages(self):
            return self

        def list(self, **kwargs):
            return kwargs

    client.service = _Service()
    assert client.list_message_ids(max_results=3) == ["0", "1", "2"]
