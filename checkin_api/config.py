import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("CHECKIN_DB_PATH", BASE_DIR / "checkin_db" / "checkin.db"))
PAYLOAD_SECRET = os.getenv("CHECKIN_PAYLOAD_SECRET", "dev-secret").strip() or "dev-secret"
SIGNING_KEY = (
    os.getenv("CHECKIN_SIGNING_KEY", "").strip()
    or PAYLOAD_SECRET
    or secrets.token_urlsafe(32)
)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("CHECKIN_AUTH_TOKEN_TTL_SECONDS", "43200"))
LOG_LEVEL = os.getenv("CHECKIN_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_int(value: str | None, fallback: int, *, minimum: int = 0) -> int:
    if not value:
        return fallback
    try:
        return max(minimum, int(value.strip()))
    except ValueError:
        return fallback


DB_TIMEOUT_SECONDS = _parse_int(os.getenv("CHECKIN_DB_TIMEOUT_SECONDS"), 5, minimum=1)

CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("CHECKIN_CORS_ALLOW_ORIGINS"),
    ["http://localhost:3000", "http://127.0.0.1:3000"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("CHECKIN_CORS_ALLOW_METHODS"),
    ["GET", "POST", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("CHECKIN_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("CHECKIN_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("CHECKIN_ENABLE_DEBUG_ENDPOINTS"), False)

# Check-in window: expires_at = end_time + grace.
SESSION_GRACE_MINUTES = _parse_int(os.getenv("CHECKIN_SESSION_GRACE_MINUTES"), 120)
SESSION_DEFAULT_LENGTH_MINUTES = _parse_int(
    os.getenv("CHECKIN_SESSION_DEFAULT_LENGTH_MINUTES"),
    60,
    minimum=1,
)

# Scanner webhook fallback: "<account>@<domain>" is also tried against users.email.
SCANNER_EMAIL_DOMAIN = os.getenv("CHECKIN_SCANNER_EMAIL_DOMAIN", "").strip().lstrip("@")

# Bootstrap account with a global ADMIN grant, created on first startup.
ADMIN_ACCOUNT = os.getenv("CHECKIN_ADMIN_ACCOUNT", "admin").strip()
ADMIN_PASSWORD = os.getenv("CHECKIN_ADMIN_PASSWORD", "admin123").strip()
