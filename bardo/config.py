import os


def _flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# -------------------------
# Configuration
# -------------------------
class Config:
    ENVIRONMENT = os.environ.get("APP_ENV") or os.environ.get("NODE_ENV") or "production"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

    MONGO_URI = os.environ.get("MONGODB_URI") or os.environ.get("MONGO_URI", "mongodb://localhost:27017")
    MONGO_DB = os.environ.get("MONGO_DB", "bardo")

    SECRET_KEY = os.environ.get("SECRET_KEY", "CHANGE_ME_IN_PRODUCTION")
    SESSION_COOKIE_SECURE = _flag("SESSION_COOKIE_SECURE")  # set to 1 behind HTTPS
    SESSION_COOKIE_SAMESITE = os.environ.get("SESSION_COOKIE_SAMESITE", "Lax")
    SESSION_COOKIE_HTTPONLY = True

    ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "admin@example.com")
    ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "Admin123!")

    MERCADOPAGO_ACCESS_TOKEN = os.environ.get("MERCADOPAGO_ACCESS_TOKEN", "")
    MERCADOPAGO_API_URL = os.environ.get("MERCADOPAGO_API_URL", "https://api.mercadopago.com")
    MERCADOPAGO_TIMEOUT = float(os.environ.get("MERCADOPAGO_TIMEOUT", "10"))
    CURRENCY_ID = os.environ.get("CURRENCY_ID", "ARS")
    STATEMENT_DESCRIPTOR = os.environ.get("STATEMENT_DESCRIPTOR", "BARDOEVENTS")

    FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:8100").rstrip("/")
    BACKEND_URL = os.environ.get("BACKEND_URL", "http://localhost:5000").rstrip("/")

    RESERVATION_CODE_PREFIX = os.environ.get("RESERVATION_CODE_PREFIX", "BARDO")

    SWEEPER_ENABLED = _flag("SWEEPER_ENABLED", "1")
    SWEEPER_RUN_AT = os.environ.get("SWEEPER_RUN_AT", "00:00")  # UTC HH:MM

    # Event images may arrive inline as base64.
    MAX_CONTENT_LENGTH = int(os.environ.get("MAX_CONTENT_LENGTH", str(50 * 1024 * 1024)))
