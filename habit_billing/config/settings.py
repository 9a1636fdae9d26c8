"""
Billing engine settings loaded from environment variables.

Usage:
    from habit_billing.config.settings import get_settings

    settings = get_settings()
    settings.grace_period_days  # 7

Environment variables:
    DATABASE_URL: SQLAlchemy connection string
    STRIPE_SECRET_KEY: Secret API key for outbound Stripe calls
    STRIPE_WEBHOOK_SECRET: Signing secret for inbound webhooks (whsec_...)
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: Max webhook age (default: 300)
    STRIPE_PRICE_PLUS / STRIPE_PRICE_PRO: Price IDs mapped to tiers
    BILLING_GRACE_PERIOD_DAYS: Grace period after payment failure (default: 7)
    ENTITLEMENT_CACHE_TTL: Entitlement cache TTL in seconds (default: 300)
    GRACE_RECONCILE_INTERVAL: Seconds between reconciler sweeps (default: 300)
    PROCESSED_EVENT_RETENTION_DAYS: Dedup record retention (default: 30)
    FRONTEND_URL: Base URL for checkout/portal redirects
"""

import logging
import os
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_DAYS = 7
DEFAULT_WEBHOOK_TOLERANCE_SECONDS = 300
DEFAULT_CACHE_TTL_SECONDS = 300
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
DEFAULT_EVENT_RETENTION_DAYS = 30


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer in environment, using default", extra={
            "variable": name,
            "value": raw,
            "default": default,
        })
        return default


@dataclass(frozen=True)
class BillingSettings:
    """Immutable snapshot of billing configuration."""

    database_url: Optional[str] = None
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    webhook_tolerance_seconds: int = DEFAULT_WEBHOOK_TOLERANCE_SECONDS
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS
    entitlement_cache_ttl: int = DEFAULT_CACHE_TTL_SECONDS
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    processed_event_retention_days: int = DEFAULT_EVENT_RETENTION_DAYS
    frontend_url: str = "http://localhost:3000"
    price_tiers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "BillingSettings":
        price_tiers = {}
        for tier in ("plus", "pro"):
            price_id = os.getenv(f"STRIPE_PRICE_{tier.upper()}")
            if price_id:
                price_tiers[price_id] = tier

        return cls(
            database_url=os.getenv("DATABASE_URL"),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            webhook_tolerance_seconds=_int_env(
                "STRIPE_WEBHOOK_TOLERANCE_SECONDS", DEFAULT_WEBHOOK_TOLERANCE_SECONDS
            ),
            grace_period_days=_int_env("BILLING_GRACE_PERIOD_DAYS", DEFAULT_GRACE_PERIOD_DAYS),
            entitlement_cache_ttl=_int_env("ENTITLEMENT_CACHE_TTL", DEFAULT_CACHE_TTL_SECONDS),
            reconcile_interval_seconds=_int_env(
                "GRACE_RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            processed_event_retention_days=_int_env(
                "PROCESSED_EVENT_RETENTION_DAYS", DEFAULT_EVENT_RETENTION_DAYS
            ),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/"),
            price_tiers=price_tiers,
        )

    def tier_for_price(self, price_id: Optional[str]) -> Optional[str]:
        """Map a Stripe price ID to a tier, if configured."""
        if not price_id:
            return None
        return self.price_tiers.get(price_id)


_settings: Optional[BillingSettings] = None
_settings_lock = Lock()


def get_settings() -> BillingSettings:
    """Get the process-wide settings snapshot, loading it on first use."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = BillingSettings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop the cached snapshot so the next call re-reads the environment."""
    global _settings
    with _settings_lock:
        _settings = None
