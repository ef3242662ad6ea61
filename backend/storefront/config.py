# backend/storefront/config.py
from __future__ import annotations
import os


def _positive_int(name: str, fallback: int) -> int:
    """Read a positive integer from the environment, falling back on junk."""
    raw = os.environ.get(name)
    if raw is None:
        return fallback
    try:
        parsed = int(raw.strip())
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


def _csv(name: str, default: str = "") -> tuple[str, ...]:
    raw = os.environ.get(name, default)
    return tuple(part.strip() for part in raw.split(",") if part.strip())


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/storefront.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///storefront.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Order submission throttling (per IP and per customer email)
    ORDER_RATE_LIMIT_MAX_REQUESTS = _positive_int("ORDER_RATE_LIMIT_MAX_REQUESTS", 10)
    ORDER_RATE_LIMIT_WINDOW_MS = _positive_int("ORDER_RATE_LIMIT_WINDOW_MS", 15 * 60 * 1000)
    RATE_LIMIT_STORAGE = os.environ.get("RATE_LIMIT_STORAGE", "database")  # database | memory

    # Volume pricing: quantity breaks advertised on every product page
    PRICING_BREAKS = tuple(int(q) for q in _csv("PRICING_BREAKS", "1,5,10"))
    # Products that always price single units at the one-unit rate
    POOLING_EXEMPT_PRODUCTS = _csv("POOLING_EXEMPT_PRODUCTS", "bpc-tb-combo")

    # Shipping: free at or above the threshold, flat fee otherwise
    FREE_SHIPPING_THRESHOLD_CENTS = _positive_int("FREE_SHIPPING_THRESHOLD_CENTS", 30000)
    FLAT_SHIPPING_CENTS = _positive_int("FLAT_SHIPPING_CENTS", 1000)

    # Notifications (Resend HTTP API); unset key means log-only
    RESEND_API_KEY = os.environ.get("RESEND_API_KEY")
    RESEND_API_URL = os.environ.get("RESEND_API_URL", "https://api.resend.com/emails")
    RESEND_FROM_EMAIL = os.environ.get("RESEND_FROM_EMAIL", "orders@storefront.local")
    ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "admin@storefront.local")
    ADMIN_SMS_EMAIL = os.environ.get("ADMIN_SMS_EMAIL")
    NOTIFIER_TIMEOUT_SECONDS = float(os.environ.get("NOTIFIER_TIMEOUT_SECONDS", "10"))
    NOTIFIER_MAX_WORKERS = _positive_int("NOTIFIER_MAX_WORKERS", 4)
    NOTIFICATIONS_INLINE = False

    # Browser origins allowed to call the API (storefront / admin frontends)
    CORS_ALLOWED_ORIGINS = _csv(
        "CORS_ALLOWED_ORIGINS",
        "http://localhost:5173,http://127.0.0.1:5173,http://localhost:4173,http://127.0.0.1:4173",
    )

    # bcrypt hash of the admin API key (see `flask admin hash-key`)
    ADMIN_API_KEY_HASH = os.environ.get("ADMIN_API_KEY_HASH")
