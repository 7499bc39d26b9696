"""Constants for inbox-sync."""

from datetime import timedelta
from pathlib import Path

# --- Config paths ---
CONFIG_DIR = Path.home() / ".inbox-sync"
CREDENTIALS_PATH = CONFIG_DIR / "credentials.json"
STORE_DB_PATH = CONFIG_DIR / "mail.db"
BLOB_DIR = CONFIG_DIR / "blobs"

# --- Gmail API ---
SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
    "openid",
]
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
PAGE_SIZE = 100  # ids per messages.list page
INBOX_LABEL = "INBOX"
SENT_LABEL = "SENT"
UNREAD_LABEL = "UNREAD"

# --- Identity broker ---
BROKER_TOKEN_URL = "https://api.workos.com/user_management/authenticate"
BROKER_ACCESS_TOKEN_TTL = timedelta(hours=1)  # provider tokens handed out by the broker

# --- Tokens ---
TOKEN_REFRESH_BUFFER = timedelta(minutes=5)

# --- Fetching ---
FETCH_CONCURRENCY = 5  # concurrent fetches per batch
BATCH_DELAY_SECONDS = 0.2
RATE_LIMIT_DELAY_SECONDS = 10.0
MAX_MESSAGES_PER_SYNC = 50
HTTP_TIMEOUT_SECONDS = 30

# --- IMAP ---
IMAP_DEFAULT_PORT = 993
IMAP_MAILBOX = "INBOX"
IMAP_INITIAL_SYNC_CAP = 100
IMAP_TIMEOUT_SECONDS = 30

# --- Records ---
PREVIEW_LENGTH = 200
NO_SUBJECT = "(No subject)"
APPLE_PLAIN_PROBE_LENGTH = 50  # chars of the plain first line compared against the HTML
APPLE_PLAIN_MIN_CONTENT = 15  # shorter first lines are greetings, not content
