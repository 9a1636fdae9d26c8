"""
Root test configuration and fixtures.

Provides:
- clock: Fixed, manually advanced UTC clock
- db_engine / session_factory / db_session: Fresh in-memory SQLite per test
  with all tables created and the default entitlement matrix seeded
- settings: BillingSettings with a test webhook secret and price map
- cache / state_machine / webhook_handler: Engine components wired together
- temp_config_dir / make_yaml_config: YAML config file helpers
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from habit_billing.config.settings import BillingSettings
from habit_billing.entitlements.cache import EntitlementCache
from habit_billing.entitlements.loader import seed_feature_entitlements
from habit_billing.entitlements.service import EntitlementService
from habit_billing.models import Base
from habit_billing.services.billing_webhook_handler import BillingWebhookHandler
from habit_billing.services.subscription_state_machine import SubscriptionStateMachine

# Set test environment
os.environ.setdefault("ENV", "test")

TEST_WEBHOOK_SECRET = "whsec_test_secret"
TEST_START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = TEST_START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def unix(self, offset_seconds: int = 0) -> int:
        return int(self.now.timestamp()) + offset_seconds


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def db_engine():
    """
    Create an in-memory SQLite engine with all tables.

    StaticPool keeps a single connection so every session sees the same
    database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    """Session factory bound to the test engine, with entitlements seeded."""
    factory = sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=db_engine,
    )
    session = factory()
    try:
        seed_feature_entitlements(session)
        session.commit()
    finally:
        session.close()
    return factory


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    """A session for arranging and asserting test data."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings() -> BillingSettings:
    return BillingSettings(
        database_url="sqlite:///:memory:",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=TEST_WEBHOOK_SECRET,
        price_tiers={"price_plus_monthly": "plus", "price_pro_monthly": "pro"},
    )


@pytest.fixture
def entitlement_service(session_factory) -> EntitlementService:
    return EntitlementService(session_factory)


@pytest.fixture
def cache(entitlement_service, clock) -> EntitlementCache:
    return EntitlementCache(ttl_seconds=300, compute=entitlement_service.compute, clock=clock)


@pytest.fixture
def state_machine(session_factory, cache, settings, clock) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(session_factory, cache=cache, settings=settings, clock=clock)


@pytest.fixture
def webhook_handler(session_factory, cache, settings, clock) -> BillingWebhookHandler:
    return BillingWebhookHandler(session_factory, cache=cache, settings=settings, clock=clock)


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: exercises the webhook route end to end")


# =============================================================================
# Shared Config Fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("entitlements.yml", {"tiers": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
