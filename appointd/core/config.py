import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_optional_int(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    return int(value)


APP_ENV = os.getenv("APP_ENV", "development")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./appointd.db")
DATABASE_ECHO = _get_bool(os.getenv("DATABASE_ECHO"), default=False)

CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

# All appointment times are wall-clock times of the doctor's clinic.
CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "")

SLOT_INCREMENT_MINUTES = int(os.getenv("SLOT_INCREMENT_MINUTES", "30"))
DEFAULT_APPOINTMENT_DURATION_MINUTES = int(os.getenv("DEFAULT_APPOINTMENT_DURATION_MINUTES", "30"))
MAX_APPOINTMENT_NOTES_LENGTH = int(os.getenv("MAX_APPOINTMENT_NOTES_LENGTH", "600"))

PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", "")
PLATFORM_FEE_RATE = float(os.getenv("PLATFORM_FEE_RATE", "0.15"))
# Unset disables expiry of unpaid appointments.
PAYMENT_PENDING_EXPIRY_MINUTES = _get_optional_int(os.getenv("PAYMENT_PENDING_EXPIRY_MINUTES"))

NOTIFICATION_WORKERS = int(os.getenv("NOTIFICATION_WORKERS", "4"))
NOTIFICATION_MAX_ATTEMPTS = int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "3"))
NOTIFICATION_RETRY_BACKOFF_SECONDS = float(os.getenv("NOTIFICATION_RETRY_BACKOFF_SECONDS", "0.5"))


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if APP_ENV.lower() == "production" and not PAYMENT_WEBHOOK_SECRET:
        raise RuntimeError("PAYMENT_WEBHOOK_SECRET must be set in production.")
    if SLOT_INCREMENT_MINUTES <= 0 or 1440 % SLOT_INCREMENT_MINUTES != 0:
        raise RuntimeError("SLOT_INCREMENT_MINUTES must evenly divide a day.")
