"""Billing configuration.

Everything the billing services need from the environment is read once into a
BillingSettings object and handed to the services at construction time.

Recognised environment variables:
- STRIPE_SECRET_KEY (fallback STRIPE_API_KEY)
- STRIPE_MONTHLY_PRICE_ID / STRIPE_YEARLY_PRICE_ID
- STRIPE_WEBHOOK_SECRET (subscription webhooks)
- STRIPE_CONNECT_WEBHOOK_SECRET (Connect webhooks)
- FRONTEND_URL
- PLATFORM_FEE_PERCENTAGE (fraction, e.g. 0.01 for 1%)
- STRIPE_TIMEOUT_SECONDS
- STRICT_TIERS (defaults to true outside ENVIRONMENT=production)
"""
import os
import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

DEFAULT_FRONTEND_URL = "http://localhost:3000"


class BillingSettings(BaseModel):
    """Explicit billing configuration injected into the billing services."""
    stripe_secret_key: str = ""
    monthly_price_id: str = ""
    yearly_price_id: str = ""
    webhook_secret: str = ""
    connect_webhook_secret: str = ""
    frontend_url: str = DEFAULT_FRONTEND_URL
    platform_fee_percentage: float = Field(default=0.01, ge=0, lt=1)
    stripe_timeout_seconds: float = Field(default=10.0, gt=0)
    # Unknown plan tiers raise in strict mode; otherwise they degrade to free
    strict_tiers: bool = True

    @field_validator("frontend_url")
    @classmethod
    def _ensure_scheme(cls, value: str) -> str:
        value = (value or DEFAULT_FRONTEND_URL).strip().rstrip("/")
        if not value.startswith("http://") and not value.startswith("https://"):
            value = f"http://{value}"
        return value

    @property
    def stripe_mode(self) -> str:
        if self.stripe_secret_key.startswith("sk_live_"):
            return "live"
        if self.stripe_secret_key.startswith("sk_test_"):
            return "test"
        return "unknown"


def _env(name: str, fallback: Optional[str] = None) -> str:
    value = (os.getenv(name) or "").strip()
    if not value and fallback:
        value = (os.getenv(fallback) or "").strip()
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def load_billing_settings() -> BillingSettings:
    """Build BillingSettings from the current environment."""
    is_production = (os.getenv("ENVIRONMENT") or "development").strip().lower() == "production"
    settings = BillingSettings(
        stripe_secret_key=_env("STRIPE_SECRET_KEY", "STRIPE_API_KEY"),
        monthly_price_id=_env("STRIPE_MONTHLY_PRICE_ID"),
        yearly_price_id=_env("STRIPE_YEARLY_PRICE_ID"),
        webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
        connect_webhook_secret=_env("STRIPE_CONNECT_WEBHOOK_SECRET"),
        frontend_url=_env("FRONTEND_URL") or DEFAULT_FRONTEND_URL,
        platform_fee_percentage=float(_env("PLATFORM_FEE_PERCENTAGE") or 0.01),
        stripe_timeout_seconds=float(_env("STRIPE_TIMEOUT_SECONDS") or 10),
        strict_tiers=_env_bool("STRICT_TIERS", not is_production),
    )
    if not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY is not set. Checkout, portal and Connect calls will fail.")
    if not settings.webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set. Subscription webhooks will be rejected.")
    return settings


# Process-wide settings; services take an explicit BillingSettings so tests can pass their own
billing_settings = load_billing_settings()
