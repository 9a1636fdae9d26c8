"""
Unit tests for BillingSettings environment loading.
"""

import pytest

from habit_billing.config.settings import BillingSettings, get_settings, reset_settings


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


class TestFromEnv:
    """Tests for BillingSettings.from_env."""

    def test_defaults(self, monkeypatch):
        for name in (
            "BILLING_GRACE_PERIOD_DAYS", "ENTITLEMENT_CACHE_TTL",
            "STRIPE_PRICE_PLUS", "STRIPE_PRICE_PRO", "STRIPE_WEBHOOK_SECRET",
        ):
            monkeypatch.delenv(name, raising=False)

        settings = BillingSettings.from_env()

        assert settings.grace_period_days == 7
        assert settings.entitlement_cache_ttl == 300
        assert settings.webhook_tolerance_seconds == 300
        assert settings.stripe_webhook_secret == ""
        assert settings.price_tiers == {}

    def test_price_map(self, monkeypatch):
        monkeypatch.setenv("STRIPE_PRICE_PLUS", "price_plus")
        monkeypatch.setenv("STRIPE_PRICE_PRO", "price_pro")

        settings = BillingSettings.from_env()

        assert settings.tier_for_price("price_pro") == "pro"
        assert settings.tier_for_price("price_plus") == "plus"
        assert settings.tier_for_price("price_other") is None
        assert settings.tier_for_price(None) is None

    def test_invalid_integer_falls_back(self, monkeypatch):
        monkeypatch.setenv("BILLING_GRACE_PERIOD_DAYS", "seven")

        assert BillingSettings.from_env().grace_period_days == 7

    def test_frontend_url_trailing_slash(self, monkeypatch):
        monkeypatch.setenv("FRONTEND_URL", "https://app.test/")

        assert BillingSettings.from_env().frontend_url == "https://app.test"


class TestGetSettings:
    """Tests for the process-wide snapshot."""

    def test_snapshot_is_cached_until_reset(self, monkeypatch):
        monkeypatch.setenv("BILLING_GRACE_PERIOD_DAYS", "3")
        first = get_settings()
        monkeypatch.setenv("BILLING_GRACE_PERIOD_DAYS", "5")

        assert get_settings() is first
        reset_settings()
        assert get_settings().grace_period_days == 5
