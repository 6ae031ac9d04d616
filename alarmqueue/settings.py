"""Configuration for the alarm notification queue."""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
LOGS_DIR = Path(os.getenv("LOGS_DIR", str(BASE_DIR / "logs")))
LOGS_DIR.mkdir(parents=True, exist_ok=True)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
BETTERSTACK_SOURCE_TOKEN = os.getenv("BETTERSTACK_SOURCE_TOKEN")
BETTERSTACK_INGEST_HOST = os.getenv("BETTERSTACK_INGEST_HOST")

# Storage backend: memory, postgres or thingsboard
STORE_BACKEND = os.getenv("STORE_BACKEND", "memory").lower()
DATABASE_URL = os.getenv("DATABASE_URL")
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX", "10"))
THINGSBOARD_BASE_URL = os.getenv("THINGSBOARD_BASE_URL", "").rstrip("/")
THINGSBOARD_USERNAME = os.getenv("THINGSBOARD_USERNAME")
THINGSBOARD_PASSWORD = os.getenv("THINGSBOARD_PASSWORD")
THINGSBOARD_TIMEOUT = int(os.getenv("THINGSBOARD_TIMEOUT", "30"))

# Tenants served by this dispatcher
TENANT_IDS = [t.strip() for t in os.getenv("TENANT_IDS", "").split(",") if t.strip()]

# Dispatch settings
DISPATCH_INTERVAL = int(os.getenv("DISPATCH_INTERVAL", "60"))  # seconds between ticks
DEFAULT_BATCH_SIZE = int(os.getenv("DEFAULT_BATCH_SIZE", "5"))
DEFAULT_MIN_INTERVAL_SECONDS = int(os.getenv("DEFAULT_MIN_INTERVAL_SECONDS", "60"))
DEFAULT_MAX_RETRIES = int(os.getenv("DEFAULT_MAX_RETRIES", "3"))
DEFAULT_RETRY_BACKOFF = os.getenv("DEFAULT_RETRY_BACKOFF", "exponential")
DEFAULT_RETRY_BASE_DELAY_SECONDS = int(os.getenv("DEFAULT_RETRY_BASE_DELAY_SECONDS", "10"))

# Priority rule cache; unset keeps rules for the process lifetime
PRIORITY_CACHE_TTL = int(os.getenv("PRIORITY_CACHE_TTL")) if os.getenv("PRIORITY_CACHE_TTL") else None

# Telegram
TELEGRAM_API_BASE = os.getenv("TELEGRAM_API_BASE", "https://api.telegram.org").rstrip("/")
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "")
TELEGRAM_TIMEOUT = int(os.getenv("TELEGRAM_TIMEOUT", "30"))


def validate_config():
    """Validate required configuration."""
    errors = []

    if STORE_BACKEND not in ("memory", "postgres", "thingsboard"):
        errors.append(f"STORE_BACKEND must be memory, postgres or thingsboard: {STORE_BACKEND}")

    if STORE_BACKEND == "postgres" and not DATABASE_URL:
        errors.append("DATABASE_URL is required for the postgres backend")

    if STORE_BACKEND == "thingsboard":
        if not THINGSBOARD_BASE_URL:
            errors.append("THINGSBOARD_BASE_URL is required for the thingsboard backend")
        if not THINGSBOARD_USERNAME or not THINGSBOARD_PASSWORD:
            errors.append("THINGSBOARD_USERNAME and THINGSBOARD_PASSWORD are required")

    if not TENANT_IDS:
        errors.append("TENANT_IDS is required")

    if DISPATCH_INTERVAL <= 0:
        errors.append(f"DISPATCH_INTERVAL must be positive: {DISPATCH_INTERVAL}")

    if DEFAULT_RETRY_BACKOFF not in ("exponential", "linear"):
        errors.append(f"DEFAULT_RETRY_BACKOFF must be exponential or linear: {DEFAULT_RETRY_BACKOFF}")

    if errors:
        raise ValueError("Config errors:\n  " + "\n  ".join(errors))
