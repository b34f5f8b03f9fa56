"""Configuration and constants for the application."""
import os
import logging

from dotenv import load_dotenv

load_dotenv()


# Setup logging first
class RequestIDLoggingFilter(logging.Filter):
    """Logging filter that adds request ID from contextvars if available."""
    def filter(self, record: logging.LogRecord) -> bool:
        # Always set request_id attribute to avoid KeyError in format string
        try:
            from middleware import get_request_id
            record.request_id = get_request_id() or "no-request-id"
        except (ImportError, AttributeError, RuntimeError):
            # Middleware not importable yet (module import time)
            record.request_id = "no-request-id"
        return True


class SafeRequestIDFormatter(logging.Formatter):
    """Formatter that safely handles missing request_id attribute."""
    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "request_id"):
            record.request_id = "no-request-id"
        return super().format(record)


LOG_FORMAT = "%(asctime)s | [%(request_id)s] | %(name)s | %(levelname)-8s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_request_id_filter = RequestIDLoggingFilter()
_formatter = SafeRequestIDFormatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format=LOG_FORMAT,
    datefmt=LOG_DATE_FORMAT,
)

root_logger = logging.getLogger()
root_logger.filters = [f for f in root_logger.filters if not isinstance(f, RequestIDLoggingFilter)]
root_logger.addFilter(_request_id_filter)

for handler in root_logger.handlers:
    handler.filters = [f for f in handler.filters if not isinstance(f, RequestIDLoggingFilter)]
    handler.addFilter(_request_id_filter)
    handler.setFormatter(_formatter)

logger = logging.getLogger("expo_registration.config")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}='{raw}'. Using default {default}.")
        return default


def _env_list(name: str) -> list:
    return [part.strip() for part in os.getenv(name, "").split(",") if part.strip()]


# Application Settings
APP_ENV = os.getenv("APP_ENV", "production").lower()
DEBUG_TICKETS = os.getenv("DEBUG_TICKETS", "false").lower() in {"true", "1", "yes"}

# MongoDB
MONGO_URI = os.getenv("MONGO_URI", "mongodb://mongo:27017/")
DB_NAME = os.getenv("DB_NAME", "expo_registrations")
MONGO_MAX_POOL_SIZE = _env_int("MONGO_MAX_POOL_SIZE", 50)
MONGO_MIN_POOL_SIZE = _env_int("MONGO_MIN_POOL_SIZE", 5)

# Public URLs
API_BASE = (os.getenv("API_BASE") or os.getenv("BACKEND_URL") or "/api").rstrip("/")
FRONTEND_BASE = (os.getenv("FRONTEND_BASE") or os.getenv("APP_URL") or "http://localhost:3000").rstrip("/")

if not API_BASE.startswith("http"):
    logger.warning(
        f"⚠️ API_BASE='{API_BASE}' is not an absolute URL. Paid upgrades will fail until it is set."
    )

# Admin access and notification recipients
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")
if not ADMIN_API_KEY:
    logger.warning("⚠️ ADMIN_API_KEY not set. Admin endpoints are unauthenticated. DO NOT USE IN PRODUCTION.")

ADMIN_EMAILS = _env_list("ADMIN_EMAILS")
EXHIBITOR_ADMIN_EMAILS = _env_list("EXHIBITOR_ADMIN_EMAILS") or ADMIN_EMAILS

# Ticket codes and lookup
TICKET_CODE_PREFIX = os.getenv("TICKET_CODE_PREFIX", "TICK-")
TICKET_CODE_LENGTH = _env_int("TICKET_CODE_LENGTH", 6)
TICKET_CODE_MAX_ATTEMPTS = 6
TICKET_SCAN_SCAN_LIMIT = _env_int("TICKET_SCAN_SCAN_LIMIT", 1000)

# Payments
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "INR")
PAYMENT_ORDER_PATH = "/payment/create-order"

# Mail
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = _env_int("SMTP_PORT", 587)
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASS = os.getenv("SMTP_PASS")
MAIL_FROM = os.getenv("MAIL_FROM", "support@example.com")
MAIL_FROM_NAME = os.getenv("MAIL_FROM_NAME", "Expo Registrations")
MAIL_REPLYTO = os.getenv("MAIL_REPLYTO", "")
EVENT_NAME = os.getenv("EVENT_NAME", "Expo")
# ISO date used for reminders when a registration carries no event date of its own
EVENT_DATE = os.getenv("EVENT_DATE", "")

if not SMTP_HOST:
    logger.warning("⚠️ SMTP_HOST not set. Outgoing mail will be logged only, not delivered.")

# Roles and their per-role collections
ROLE_COLLECTIONS = {
    "visitor": "visitors",
    "exhibitor": "exhibitors",
    "partner": "partners",
    "speaker": "speakers",
    "awardee": "awardees",
}
# Roles whose registrations wait for an admin decision
APPROVAL_ROLES = {"exhibitor", "partner"}

# Browser origins allowed to call the API (registration forms, scanner app)
CORS_ORIGINS = _env_list("CORS_ORIGINS") or ["*"]
