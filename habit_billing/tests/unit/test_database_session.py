"""
Unit tests for database session management and the seed script.
"""

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from habit_billing.database import session as session_module
from habit_billing.models import Base, FeatureEntitlement


@pytest.fixture(autouse=True)
def _reset_factory():
    session_module.configure_session_factory(None)
    yield
    session_module.configure_session_factory(None)


class TestDatabaseUrl:
    """Tests for URL handling."""

    def test_postgres_scheme_is_normalized(self):
        url = session_module.normalize_database_url("postgres://u:p@db:5432/app")

        assert url == "postgresql://u:p@db:5432/app"

    def test_missing_url_raises(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with pytest.raises(ValueError):
            session_module.get_session_factory()

    def test_in_memory_sqlite_uses_static_pool(self):
        engine = session_module.build_engine("sqlite:///:memory:")

        assert isinstance(engine.pool, StaticPool)
        engine.dispose()


class TestSessionFactory:
    """Tests for the session factory singleton."""

    def test_factory_from_environment(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")

        factory = session_module.get_session_factory()

        assert factory is session_module.get_session_factory()

    def test_configured_factory_is_returned(self, session_factory):
        session_module.configure_session_factory(session_factory)
        factory = session_factory

        session = session_module.get_session_factory()()
        try:
            assert session_module.get_session_factory() is factory
            assert session.query(FeatureEntitlement).count() > 0
        finally:
            session.close()


class TestSeedScript:
    """Tests for scripts.seed_entitlements."""

    def test_seed_is_idempotent(self, tmp_path):
        from scripts.seed_entitlements import seed

        url = f"sqlite:///{tmp_path / 'billing.db'}"
        engine = session_module.build_engine(url)
        Base.metadata.create_all(bind=engine)

        first = seed(url)
        second = seed(url)

        session = sessionmaker(bind=engine)()
        try:
            assert first == second
            assert session.query(FeatureEntitlement).count() == first
        finally:
            session.close()
            engine.dispose()
