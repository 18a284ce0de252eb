import os
from typing import List


def env_int(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


def env_float(name: str, default: float) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_csv(name: str, default: str = "") -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# Deposit share of the quoted price when a provider does not send one.
DEFAULT_DEPOSIT_PERCENT = env_float("DEFAULT_DEPOSIT_PERCENT", 25.0)

# User ids that receive admin_message alerts for admin-managed providers.
ADMIN_USER_IDS = env_csv("ADMIN_USER_IDS", "admin")

NOTIFICATION_MAX_ATTEMPTS = env_int("NOTIFICATION_MAX_ATTEMPTS", 5)
NOTIFICATION_WORKER_ENABLED = env_flag("NOTIFICATION_WORKER_ENABLED", True)
NOTIFICATION_DRAIN_INTERVAL_SECONDS = env_float("NOTIFICATION_DRAIN_INTERVAL_SECONDS", 5.0)

REALTIME_QUEUE_SIZE = env_int("REALTIME_QUEUE_SIZE", 256)
# Seconds between SSE keep-alive comments on idle streams.
REALTIME_KEEPALIVE_SECONDS = env_float("REALTIME_KEEPALIVE_SECONDS", 15.0)
# How often an idle SSE stream checks its subscription and the client connection.
REALTIME_POLL_SECONDS = env_float("REALTIME_POLL_SECONDS", 0.25)

STRIPE_API_KEY = os.getenv("STRIPE_API_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_SUCCESS_URL = os.getenv("STRIPE_SUCCESS_URL", "http://localhost:5173/booking/{booking_id}?status=success")
STRIPE_CANCEL_URL = os.getenv("STRIPE_CANCEL_URL", "http://localhost:5173/booking/{booking_id}?status=cancelled")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd")

# Service account JSON for Firebase Cloud Messaging; push is off when unset.
FIREBASE_CREDENTIALS_PATH = os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip()
