"""Per-user PII encryption codec.

Sensitive fields are sealed with AES-256-GCM under a key that belongs to the
owning user. The user id is bound as associated data, so a ciphertext copied
into another user's row does not decrypt.

Ciphertext layout: ``v1:`` + urlsafe base64 of ``nonce || ciphertext+tag``.
"""

from __future__ import annotations

import base64
import binascii
import logging
import secrets
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

KEY_SIZE_BYTES = 32
NONCE_SIZE_BYTES = 12
TAG_SIZE_BYTES = 16
VERSION_PREFIX = "v1:"


class KeyStore(Protocol):
    def get_user_key(self, user_id: str) -> bytes | None: ...

    def create_user_key(self, user_id: str, key: bytes) -> bytes:
        """Store ``key`` unless one exists; return the key now on record."""
        ...


class MemoryKeyStore:
    """Process-local key store, used by tests and dry runs."""

    def __init__(self) -> None:
        self._keys: dict[str, bytes] = {}

    def get_user_key(self, user_id: str) -> bytes | None:
        return self._keys.get(user_id)

    def create_user_key(self, user_id: str, key: bytes) -> bytes:
        return self._keys.setdefault(user_id, key)


class PiiCodec:
    """Encrypt and decrypt PII strings for a given user."""

    def __init__(self, keys: KeyStore) -> None:
        self._keys = keys

    def ensure_key(self, user_id: str) -> bytes:
        """Return the user's key, creating it on first use."""
        key = self._keys.get_user_key(user_id)
        if key is None:
            key = self._keys.create_user_key(user_id, secrets.token_bytes(KEY_SIZE_BYTES))
        return key

    def encrypt_bytes(self, user_id: str, plaintext: bytes) -> bytes:
        key = self.ensure_key(user_id)
        nonce = secrets.token_bytes(NONCE_SIZE_BYTES)
        return nonce + AESGCM(key).encrypt(nonce, plaintext, user_id.encode("utf-8"))

    def decrypt_bytes(self, user_id: str, sealed: bytes) -> bytes | None:
        key = self._keys.get_user_key(user_id)
        if key is None:
            return None
        if len(sealed) < NONCE_SIZE_BYTES + TAG_SIZE_BYTES:
            logger.warning("Truncated ciphertext for user %s", user_id)
            return None
        nonce, body = sealed[:NONCE_SIZE_BYTES], sealed[NONCE_SIZE_BYTES:]
        try:
            return AESGCM(key).decrypt(nonce, body, user_id.encode("utf-8"))
        except InvalidTag:
            logger.warning("Ciphertext for user %s failed authentication", user_id)
            return None

    def encrypt(self, user_id: str, plaintext: str | None) -> str | None:
        """Seal a string. ``None`` passes through; a user key is created on first use."""
        if plaintext is None:
            return None
        sealed = self.encrypt_bytes(user_id, plaintext.encode("utf-8"))
        return VERSION_PREFIX + base64.urlsafe_b64encode(sealed).decode("ascii")

    def decrypt(self, user_id: str, ciphertext: str | None) -> str | None:
        """Open a sealed string.

        Returns None when the field is empty, when the user has no key yet,
        or when the ciphertext is unreadable. Callers treat None as
        "field unavailable".
        """
        if ciphertext is None:
            return None
        if not ciphertext.startswith(VERSION_PREFIX):
            logger.warning("Unrecognised ciphertext format for user %s", user_id)
            return None
        try:
            sealed = base64.urlsafe_b64decode(ciphertext[len(VERSION_PREFIX):])
        except (binascii.Error, ValueError):
            logger.warning("Malformed ciphertext for user %s", user_id)
            return None
        plaintext = self.decrypt_bytes(user_id, sealed)
        if plaintext is None:
            return None
        return plaintext.decode("utf-8")
