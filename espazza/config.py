import os


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./espazza.db")
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "64"))

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

# hosted auth service that issues user sessions
AUTH_URL = os.environ.get("AUTH_URL", "")
AUTH_API_KEY = os.environ.get("AUTH_API_KEY", "")

PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000")

# 'mockpay' | 'ikhokha' | 'yoco'
PAYMENT_PROVIDER = os.getenv("PAYMENT_PROVIDER", "mockpay").lower()
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    f"{PUBLIC_BASE_URL}/payments/webhook"
)
IKHOKHA_API_URL = os.environ.get(
    "IKHOKHA_API_URL",
    "https://api.ikhokha.com/public-api/v1/api/payment"
)
IKHOKHA_APP_ID = os.environ.get("IKHOKHA_APP_ID", "")
IKHOKHA_APP_KEY = os.environ.get("IKHOKHA_APP_KEY", "")
YOCO_API_URL = os.environ.get(
    "YOCO_API_URL",
    "https://payments.yoco.com/api/checkouts"
)
YOCO_SECRET_KEY = os.environ.get("YOCO_SECRET_KEY", "")
YOCO_WEBHOOK_SECRET = os.environ.get("YOCO_WEBHOOK_SECRET", "")

RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
NOTIFY_FROM = os.environ.get("NOTIFY_FROM", "noreply@espazza.co.za")

DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "ZAR")
RELEASE_LISTING_FEE = int(os.getenv("RELEASE_LISTING_FEE", "2000"))  # cents

# abandoned checkout handling
PENDING_TIMEOUT_SECONDS = int(os.getenv("PENDING_TIMEOUT_SECONDS", "1800"))
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
STRUCTURED_LOGS_ENABLED = _flag("STRUCTURED_LOGS_ENABLED", "1")
REQUEST_ID_HEADER = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")
