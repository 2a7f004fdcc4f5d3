import os
import re
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if value is None:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


APP_ENV = os.getenv("APP_ENV", "development")
DEBUG = _get_bool(os.getenv("DEBUG"), default=False)

CORS_ALLOW_ORIGINS = _get_list(os.getenv("CORS_ALLOW_ORIGINS"), ["http://localhost:3000"])

APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = _get_int(os.getenv("PORT"), 8000)

# Single time zone for every slot and remote event.
CALENDAR_TIMEZONE = os.getenv("CALENDAR_TIMEZONE", "UTC")

GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET", "")
GOOGLE_TOKEN_URI = os.getenv("GOOGLE_TOKEN_URI", "https://oauth2.googleapis.com/token")
GOOGLE_CALENDAR_SCOPE = os.getenv("GOOGLE_CALENDAR_SCOPE", "https://www.googleapis.com/auth/calendar")

REFRESH_TOKEN_ENCRYPTION_KEY = os.getenv("REFRESH_TOKEN_ENCRYPTION_KEY", "")

CALENDAR_TIMEOUT_SECONDS = _get_int(os.getenv("CALENDAR_TIMEOUT_SECONDS"), 20)
CALENDAR_LIST_RETRIES = _get_int(os.getenv("CALENDAR_LIST_RETRIES"), 2)
SYNC_WORKERS = _get_int(os.getenv("SYNC_WORKERS"), 2)
LOCK_TIMEOUT_SECONDS = _get_int(os.getenv("LOCK_TIMEOUT_SECONDS"), 5)
# A crashed holder blocks its doctor until the lease runs out.
LOCK_LEASE_SECONDS = _get_int(os.getenv("LOCK_LEASE_SECONDS"), 300)

MAX_WINDOW_DAYS = _get_int(os.getenv("MAX_WINDOW_DAYS"), 92)
DEFAULT_LIST_DAYS = _get_int(os.getenv("DEFAULT_LIST_DAYS"), 7)
DEFAULT_SYNC_DAYS = _get_int(os.getenv("DEFAULT_SYNC_DAYS"), 7)
DEFAULT_EXPORT_DAYS = _get_int(os.getenv("DEFAULT_EXPORT_DAYS"), 30)
DEFAULT_IMPORT_DAYS = _get_int(os.getenv("DEFAULT_IMPORT_DAYS"), 30)
DEFAULT_SLOT_DURATION_MINUTES = _get_int(os.getenv("DEFAULT_SLOT_DURATION_MINUTES"), 30)

_HEX_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


def validate_runtime_config() -> None:
    if REFRESH_TOKEN_ENCRYPTION_KEY and not _HEX_KEY_PATTERN.match(REFRESH_TOKEN_ENCRYPTION_KEY):
        raise RuntimeError("REFRESH_TOKEN_ENCRYPTION_KEY must be a 64-character hex string.")
    if APP_ENV.lower() == "production" and not REFRESH_TOKEN_ENCRYPTION_KEY:
        raise RuntimeError("REFRESH_TOKEN_ENCRYPTION_KEY must be set in production.")
    if APP_ENV.lower() == "production" and not (GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET):
        raise RuntimeError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set in production.")
    if CALENDAR_TIMEOUT_SECONDS <= 0:
        raise RuntimeError("CALENDAR_TIMEOUT_SECONDS must be positive.")
    if LOCK_LEASE_SECONDS <= 0:
        raise RuntimeError("LOCK_LEASE_SECONDS must be positive.")
    try:
        ZoneInfo(CALENDAR_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise RuntimeError(f"CALENDAR_TIMEZONE \"{CALENDAR_TIMEZONE}\" is not a known time zone.") from exc
