"""
Application configuration from environment variables.

Load with python-dotenv in main so env vars are available before imports.
Secrets are read here but validated where they are used (require_setting), so
the pipeline and its tests import cleanly without OAuth credentials.
"""
import os

from subtracker.errors import ConfigurationError

# --- Secrets (validated on use) ---
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GOOGLE_REDIRECT_URI = os.getenv("GOOGLE_REDIRECT_URI")

JWT_ALGORITHM = "HS256"


def require_setting(name: str) -> str:
    """
    Return the current value of a required env var. Read at call time so a
    rotated or late-loaded .env is honoured. Raises ConfigurationError if missing.
    """
    val = os.getenv(name)
    if not val or not str(val).strip():
        raise ConfigurationError(f"Required env var {name} is missing or empty")
    return val


def _int_env(key: str, default: int, minimum: int = 1) -> int:
    try:
        return max(minimum, int(os.getenv(key, str(default))))
    except ValueError:
        return default


# --- Optional with defaults ---
# Frontend URL for post-connect redirect
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173").rstrip("/")

# Session identity issued by the auth layer: Bearer header or this cookie
JWT_COOKIE_NAME = os.getenv("JWT_COOKIE_NAME", "session")

# OAuth state token lifetime
OAUTH_STATE_MAX_AGE = 600  # 10 minutes

# Gmail scope: read-only is all the pipeline needs
GMAIL_SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]

# Scan window and limits
SCAN_LOOKBACK_DAYS = _int_env("SCAN_LOOKBACK_DAYS", 180)
MAX_SCAN_MESSAGES = _int_env("MAX_SCAN_MESSAGES", 500)
SCAN_BATCH_SIZE = _int_env("SCAN_BATCH_SIZE", 10)

# Raw-content retention for processed messages
RETENTION_DAYS = _int_env("RETENTION_DAYS", 30)
# Background purge cadence; 0 disables the sweeper
RETENTION_SWEEP_INTERVAL_SECONDS = _int_env("RETENTION_SWEEP_INTERVAL_SECONDS", 3600, minimum=0)

SNIPPET_MAX_LENGTH = 500

# Access tokens this close to expiry are refreshed before use
TOKEN_EXPIRY_MARGIN_SECONDS = _int_env("TOKEN_EXPIRY_MARGIN_SECONDS", 60, minimum=0)

# Request timeouts (connect, read) in seconds
GMAIL_REQUEST_TIMEOUT = (5, 30)

# Database URL (SQLite default; use Postgres URL in production)
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./subtracker.db")

# Skip create_all at startup (set in production when using migrations)
SKIP_DB_INIT = os.getenv("SKIP_DB_INIT", "false").lower() in ("1", "true", "yes")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Environment: development | production (affects .env loading)
ENV = os.getenv("ENV", "development").lower()
