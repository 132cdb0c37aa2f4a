# ----------------------------
# Config & Constants
# ----------------------------
import os


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./orderwatch.db")
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
# concurrent DB work; 0 = pool size
DB_GATE_LIMIT = int(os.getenv("DB_GATE_LIMIT", "0"))


def default_feed_backend(database_url: str) -> str:
    # PostgreSQL notifies every insert from a trigger, whoever the writer is.
    # The redis feed only carries inserts announced by POST /api/orders;
    # rows from other writers are only seen with WATCH_MODE=polling.
    if database_url.startswith(("postgres://", "postgresql")):
        return "pg"
    return "redis"


# 'redis' | 'pg'
FEED_BACKEND = os.getenv(
    "FEED_BACKEND", default_feed_backend(DATABASE_URL)
).lower()
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
FEED_CHANNEL = os.getenv("FEED_CHANNEL", "orders:insert")

# 'realtime' | 'polling'
WATCH_MODE = os.getenv("WATCH_MODE", "realtime").lower()
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))
POLL_COALESCE = _flag("POLL_COALESCE", "1")
REALTIME_SETTLE_SECONDS = float(os.getenv("REALTIME_SETTLE_SECONDS", "1.0"))

RECONNECT_BASE_SECONDS = float(os.getenv("RECONNECT_BASE_SECONDS", "1.0"))
RECONNECT_MAX_SECONDS = float(os.getenv("RECONNECT_MAX_SECONDS", "30"))
RECONNECT_MAX_ATTEMPTS = int(os.getenv("RECONNECT_MAX_ATTEMPTS", "5"))

ALERT_REPEAT_SECONDS = float(os.getenv("ALERT_REPEAT_SECONDS", "6"))
AUDIO_ENABLED = _flag("AUDIO_ENABLED", "1")

SESSION_SECRET = os.getenv("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "supasecret")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

VIBRATION_PATTERN = (200, 100, 200)  # ms on/off/on
