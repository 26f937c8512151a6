import os
from dotenv import load_dotenv

load_dotenv()

# Database (only used when STATE_BACKEND=mongo)
DATABASE_URL = os.getenv("DATABASE_URL")

# Persistence
# "json" keeps state + thread graph in STATE_DIR, "mongo" keeps them in DATABASE_URL
STATE_BACKEND = os.getenv("STATE_BACKEND", "json").lower()
STATE_DIR = os.getenv("STATE_DIR", "./campaign_state")
CAMPAIGN_ID = os.getenv("CAMPAIGN_ID", "default")
THREAD_FLUSH_EVERY = int(os.getenv("THREAD_FLUSH_EVERY", "1"))  # batches between graph checkpoints

# Inputs (produced by the provisioning / content collaborators)
IDENTITY_FILE = os.getenv("IDENTITY_FILE", "./identities.csv")
IDENTITY_SENTINEL = os.getenv("IDENTITY_SENTINEL", "!FAILED")
CONTENT_DIR = os.getenv("CONTENT_DIR", "./content")

# Send endpoint (TLS is mandatory: "starttls" on 587 or "implicit" on 465)
SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_TLS_MODE = os.getenv("SMTP_TLS_MODE", "starttls").lower()
SMTP_VALIDATE_CERTS = os.getenv("SMTP_VALIDATE_CERTS", "true").lower() == "true"
SEND_TIMEOUT_SECONDS = float(os.getenv("SEND_TIMEOUT_SECONDS", "60"))

# Campaign targets
# Overall mailbox size we want to reach, in bytes (default 10 GB)
TARGET_BYTES = int(os.getenv("TARGET_BYTES", str(10 * 1024 ** 3)))
# Used only to derive how many sends the campaign needs
AVERAGE_MESSAGE_BYTES = int(os.getenv("AVERAGE_MESSAGE_BYTES", str(200 * 1024)))
NEW_RATIO = float(os.getenv("NEW_RATIO", "0.5"))
REPLY_RATIO = float(os.getenv("REPLY_RATIO", "0.3"))
FORWARD_RATIO = float(os.getenv("FORWARD_RATIO", "0.2"))

# Batching + concurrency (per stage)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "50"))
NEW_CONCURRENCY = int(os.getenv("NEW_CONCURRENCY", "10"))
REPLY_CONCURRENCY = int(os.getenv("REPLY_CONCURRENCY", "10"))
FORWARD_CONCURRENCY = int(os.getenv("FORWARD_CONCURRENCY", "10"))
OVERFLOW_CONCURRENCY = int(os.getenv("OVERFLOW_CONCURRENCY", "10"))
PREFLIGHT_CONCURRENCY = int(os.getenv("PREFLIGHT_CONCURRENCY", "4"))
PREFLIGHT_ATTEMPTS = int(os.getenv("PREFLIGHT_ATTEMPTS", "3"))
PREFLIGHT_BACKOFF_SECONDS = float(os.getenv("PREFLIGHT_BACKOFF_SECONDS", "5"))

# Stop the campaign (state kept) after this many batches in a row with zero successes
MAX_EMPTY_BATCHES = int(os.getenv("MAX_EMPTY_BATCHES", "5"))

# Generation policy
INLINE_IMAGE_PROBABILITY = float(os.getenv("INLINE_IMAGE_PROBABILITY", "0.3"))
CC_PROBABILITY = float(os.getenv("CC_PROBABILITY", "0.4"))

# Size estimation heuristics (tuned empirically, not exact)
MIME_INFLATION = float(os.getenv("MIME_INFLATION", "1.33"))
ENVELOPE_BYTES = int(os.getenv("ENVELOPE_BYTES", "2048"))
DUPLICATION_FACTOR = int(os.getenv("DUPLICATION_FACTOR", "2"))  # Sent Items + Inbox

# Reporting
TARGET_TIMEZONE = os.getenv("TARGET_TIMEZONE", "UTC")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")
LOG_JSON = os.getenv("LOG_JSON", "false").lower() == "true"

# Alerts (Slack / Discord / Telegram webhook)
ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL", "")
ALERT_CHANNEL = os.getenv("ALERT_CHANNEL", "slack").lower()
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "")
