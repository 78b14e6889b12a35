import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("SCHOOLDESK_DB_PATH", BASE_DIR / "database" / "schooldesk.db"))
ADMIN_USERNAME = os.getenv("SCHOOLDESK_ADMIN_USERNAME", "admin").strip() or "admin"
ADMIN_PASSWORD = os.getenv("SCHOOLDESK_ADMIN_PASSWORD", "admin123").strip() or "admin123"
SIGNING_KEY = os.getenv("SCHOOLDESK_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("SCHOOLDESK_AUTH_TOKEN_TTL_SECONDS", "43200"))
LOG_LEVEL = os.getenv("SCHOOLDESK_LOG_LEVEL", "INFO").strip().upper() or "INFO"


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


def _parse_choice(value: str | None, choices: set[str], fallback: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized in choices:
        return normalized
    return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("SCHOOLDESK_CORS_ALLOW_ORIGINS"),
    ["http://localhost:3000", "http://127.0.0.1:3000"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("SCHOOLDESK_CORS_ALLOW_CREDENTIALS"), True)

# One-time codes guarding the factory reset
OTP_EXPIRY_SECONDS = max(60, int(os.getenv("SCHOOLDESK_OTP_EXPIRY_SECONDS", "300")))
OTP_CHANNEL = _parse_choice(os.getenv("SCHOOLDESK_OTP_CHANNEL"), {"whatsapp", "console"}, "whatsapp")
OTP_STORE = _parse_choice(os.getenv("SCHOOLDESK_OTP_STORE"), {"memory", "sqlite"}, "memory")

# WhatsApp delivery
WHATSAPP_COUNTRY_CODE = os.getenv("SCHOOLDESK_WHATSAPP_COUNTRY_CODE", "92").strip() or "92"
WHATSAPP_GRAPH_API_URL = (
    os.getenv("SCHOOLDESK_WHATSAPP_GRAPH_API_URL", "https://graph.facebook.com/v19.0").strip().rstrip("/")
)
WHATSAPP_TIMEOUT_SECONDS = float(os.getenv("SCHOOLDESK_WHATSAPP_TIMEOUT_SECONDS", "15"))

# Defaults for the school settings document (editable at runtime via /settings)
DEFAULT_SCHOOL_NAME = os.getenv("SCHOOLDESK_SCHOOL_NAME", "The Spirit School Samundri").strip()
DEFAULT_SCHOOL_PHONE = os.getenv("SCHOOLDESK_SCHOOL_PHONE", "+92 300 1234567").strip()

RESET_HISTORY_LIMIT = int(os.getenv("SCHOOLDESK_RESET_HISTORY_LIMIT", "50"))
