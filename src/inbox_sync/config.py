"""Runtime settings read from the environment.

Values are validated by pydantic, so a malformed variable fails with a
``ValidationError`` naming the field instead of surfacing mid-sync.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, field_validator

from . import constants

_ENV_FIELDS = {
    "INBOX_SYNC_HOME": "home",
    "GOOGLE_CLIENT_ID": "google_client_id",
    "GOOGLE_CLIENT_SECRET": "google_client_secret",
    "BROKER_API_KEY": "broker_api_key",
    "BROKER_CLIENT_ID": "broker_client_id",
    "INBOX_SYNC_INCLUDE_SENT": "include_sent",
    "INBOX_SYNC_MAX_MESSAGES": "max_messages_per_sync",
}


def _client_secrets(path: Path) -> dict[str, str]:
    """Read the OAuth client id and secret from a downloaded client secrets file."""
    if not path.exists():
        return {}
    data = json.loads(path.read_text())
    client = data.get("installed") or data.get("web") or {}
    found = {
        "google_client_id": client.get("client_id"),
        "google_client_secret": client.get("client_secret"),
    }
    return {k: v for k, v in found.items() if v}


class Settings(BaseModel):
    """Settings shared by the credential refresher and the sync engine."""

    home: Path = Field(default=constants.CONFIG_DIR, description="Directory for the store and blobs")
    google_client_id: str = ""
    google_client_secret: SecretStr = SecretStr("")
    broker_api_key: SecretStr = SecretStr("")
    broker_client_id: str = ""
    include_sent: bool = False
    max_messages_per_sync: int = Field(constants.MAX_MESSAGES_PER_SYNC, ge=1)
    fetch_concurrency: int = Field(constants.FETCH_CONCURRENCY, ge=1)
    batch_delay: float = Field(constants.BATCH_DELAY_SECONDS, ge=0)
    rate_limit_delay: float = Field(constants.RATE_LIMIT_DELAY_SECONDS, ge=0)

    @field_validator("home")
    def _expand_home(cls, value: Path) -> Path:
        return value.expanduser()

    @property
    def db_path(self) -> Path:
        return self.home / constants.STORE_DB_PATH.name

    @property
    def credentials_path(self) -> Path:
        return self.home / constants.CREDENTIALS_PATH.name

    @property
    def blob_dir(self) -> Path:
        return self.home / constants.BLOB_DIR.name

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from ``INBOX_SYNC_*``, ``GOOGLE_*`` and ``BROKER_*`` variables.

        The OAuth client id and secret fall back to ``credentials.json`` in
        the home directory. Raises ``pydantic.ValidationError`` on bad values.
        """
        data = {field: os.environ[env] for env, field in _ENV_FIELDS.items() if os.environ.get(env)}
        home = Path(data.get("home", constants.CONFIG_DIR)).expanduser()
        for key, value in _client_secrets(home / constants.CREDENTIALS_PATH.name).items():
            data.setdefault(key, value)
        return cls.model_validate(data)
