"""
Root test configuration and fixtures.

Each test gets its own SQLite in-memory database (StaticPool, so every
session shares one connection) because the lifecycle engine commits.

Shared fixtures:
- db_session / session_factory: sessions on the per-test database
- clock: FrozenClock at 2024-03-01 15:00 UTC
- settings: BillingSettings with test secrets
- provider: FakeBillingProvider on the same clock
- engine: SubscriptionLifecycleEngine wired to all of the above
- client: FastAPI TestClient running the full gate chain
"""

import os
from datetime import datetime, timezone
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from citaclick.tests.helpers.clock import FrozenClock
from citaclick.tests.helpers.factories import TEST_JWT_SECRET, TEST_WEBHOOK_SECRET
from citaclick.tests.helpers.fake_provider import FakeBillingProvider
from citaclick.tests.helpers.usage import FixedUsageCounter

# Set test environment
os.environ.setdefault("ENV", "test")

FROZEN_NOW = datetime(2024, 3, 1, 15, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def _httpx_app_kwarg_patch():
    """
    Compatibility patch for httpx>=0.28 where Client(app=...) is not supported.

    Starlette's TestClient (used by FastAPI) passes app= into httpx.Client
    on some versions. This patch removes the app kwarg to avoid TypeError.
    """
    import httpx

    original_init = httpx.Client.__init__

    def patched_init(self, *args, **kwargs):
        kwargs.pop("app", None)
        return original_init(self, *args, **kwargs)

    httpx.Client.__init__ = patched_init
    try:
        yield
    finally:
        httpx.Client.__init__ = original_init


@pytest.fixture(autouse=True)
def _reset_singletons():
    from citaclick.config.billing_settings import reset_billing_settings
    from citaclick.entitlements.catalog import reset_entitlement_catalog

    yield
    reset_billing_settings()
    reset_entitlement_catalog()


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from citaclick.db_base import Base
    import citaclick.models  # noqa: F401 - registers all tables

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(FROZEN_NOW)


@pytest.fixture
def settings():
    from citaclick.config.billing_settings import BillingSettings

    return BillingSettings(
        provider_api_key="sk_test_fake",
        webhook_secret=TEST_WEBHOOK_SECRET,
    )


@pytest.fixture
def provider(clock) -> FakeBillingProvider:
    return FakeBillingProvider(clock)


@pytest.fixture
def engine(db_session, provider, settings, clock):
    from citaclick.services.lifecycle_engine import SubscriptionLifecycleEngine

    return SubscriptionLifecycleEngine(db_session, provider, settings=settings, clock=clock)


@pytest.fixture
def usage_counter() -> FixedUsageCounter:
    return FixedUsageCounter()


@pytest.fixture
def app(session_factory, provider, settings, clock, usage_counter):
    from citaclick.api.app import create_app

    return create_app(
        session_factory=session_factory,
        provider=provider,
        settings=settings,
        clock=clock,
        usage_counter_factory=lambda db: usage_counter,
        jwt_secret=TEST_JWT_SECRET,
    )


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)
