"""Subscription classification from list headers."""

from __future__ import annotations

import re

from .models import SubscriptionInfo, SubscriptionStatus, UnsubscribeMethod

_URL_RE = re.compile(r"<([^>]+)>")
_FOLD_RE = re.compile(r"\r?\n\s+")

# Allowed status moves; anything else is rejected.
STATUS_TRANSITIONS = {
    SubscriptionStatus.SUBSCRIBED: {SubscriptionStatus.PENDING, SubscriptionStatus.MANUAL_REQUIRED},
    SubscriptionStatus.PENDING: {
        SubscriptionStatus.UNSUBSCRIBED,
        SubscriptionStatus.FAILED,
        SubscriptionStatus.MANUAL_REQUIRED,
    },
    SubscriptionStatus.FAILED: {SubscriptionStatus.PENDING, SubscriptionStatus.MANUAL_REQUIRED},
    SubscriptionStatus.MANUAL_REQUIRED: {SubscriptionStatus.PENDING, SubscriptionStatus.UNSUBSCRIBED},
    SubscriptionStatus.UNSUBSCRIBED: set(),
}


def _header(headers: list[tuple[str, str]], name: str) -> str | None:
    wanted = name.lower()
    for header_name, value in headers:
        if header_name.lower() == wanted:
            return _FOLD_RE.sub("", value or "").strip()
    return None


def classify(headers: list[tuple[str, str]]) -> SubscriptionInfo:
    """Classify a message as a subscription from its headers.

    Presence of List-Unsubscribe (or List-Id) is sufficient. List-Unsubscribe-Post
    signals that RFC 8058 one-click unsubscribe is available.
    """
    list_unsubscribe = _header(headers, "List-Unsubscribe")
    list_id = _header(headers, "List-Id")
    return SubscriptionInfo(
        is_subscription=list_unsubscribe is not None or list_id is not None,
        list_unsubscribe=list_unsubscribe or None,
        list_unsubscribe_post=_header(headers, "List-Unsubscribe-Post") is not None,
    )


def unsubscribe_urls(list_unsubscribe: str | None) -> tuple[str | None, str | None]:
    """Return the (http_url, mailto_url) advertised in a List-Unsubscribe value."""
    http_url = None
    mailto_url = None
    for url in _URL_RE.findall(list_unsubscribe or ""):
        url = url.strip()
        if url.startswith(("http://", "https://")):
            http_url = url
        elif url.lower().startswith("mailto:"):
            mailto_url = url
    return http_url, mailto_url


def determine_unsubscribe_method(
    list_unsubscribe: str | None,
    list_unsubscribe_post: bool,
) -> UnsubscribeMethod:
    """Pick the best unsubscribe method for a sender."""
    if not list_unsubscribe:
        return UnsubscribeMethod.NONE

    http_url, mailto_url = unsubscribe_urls(list_unsubscribe)

    if http_url and list_unsubscribe_post:
        return UnsubscribeMethod.HTTP_POST
    # mailto is more reliable than a GET that may need a confirmation page
    if mailto_url:
        return UnsubscribeMethod.MAILTO
    if http_url:
        return UnsubscribeMethod.HTTP_GET
    return UnsubscribeMethod.NONE


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in STATUS_TRANSITIONS.get(current, set())
