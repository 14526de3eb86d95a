"""Pytest configuration for attribution engine tests

WHAT: Shared fixtures for service-level and HTTP endpoint tests
WHY: Consistent in-memory database, a scripted order feed, and seed helpers
REFERENCES:
    - attribution_engine/main.py: FastAPI application
    - attribution_engine/database.py: Database configuration
    - attribution_engine/routers/tracking.py: get_order_feed_factory override
"""

import os
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Generator, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

# Set test environment before any attribution_engine import
# Must be URL-safe base64-encoded 32-byte string (security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.pop("SENTRY_DSN", None)


# Fixed "now" for pipeline tests (naive UTC)
NOW = datetime(2025, 1, 15, 12, 0, 0)


# ============================================================================
# Fakes
# ============================================================================

class FakeOrderFeed:
    """Scripted order feed: returns `pages` in call order, then empty pages.

    `errors` maps a 1-based call number to an exception raised on that call.
    `on_call` runs before each call (tests use it to advance a fake clock).
    """

    def __init__(
        self,
        pages: Optional[List[List[Dict[str, Any]]]] = None,
        errors: Optional[Dict[int, Exception]] = None,
        on_call: Optional[Callable[[], None]] = None,
    ):
        self.pages = pages or []
        self.errors = errors or {}
        self.on_call = on_call
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def list_orders(self, since_id: int, created_at_min: datetime, limit: int = 250):
        self.calls.append({"since_id": since_id, "created_at_min": created_at_min, "limit": limit})
        if self.on_call:
            self.on_call()
        call_number = len(self.calls)
        if call_number in self.errors:
            raise self.errors[call_number]
        if call_number <= len(self.pages):
            return self.pages[call_number - 1]
        return []

    def close(self) -> None:
        self.closed = True


class FakeClock:
    """Monotonic clock tests advance by hand."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now


def make_order(order_id: int, created_at: datetime = NOW, total_price: str = "50.00", **fields) -> Dict[str, Any]:
    """Minimal Shopify order dict."""
    order = {
        "id": order_id,
        "created_at": created_at.isoformat() + "Z",
        "updated_at": created_at.isoformat() + "Z",
        "total_price": total_price,
        "currency": "USD",
        "financial_status": "paid",
        "note_attributes": [],
        "refunds": [],
    }
    order.update(fields)
    return order


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory engine shared across threads (worker tests use to_thread)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from attribution_engine.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_session_factory(test_db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture
def test_db_session(test_session_factory) -> Generator[Session, None, None]:
    session = test_session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def fake_feed() -> FakeOrderFeed:
    return FakeOrderFeed()


@pytest.fixture
def app(test_db_session, fake_feed):
    """FastAPI app with the test session and the scripted order feed."""
    from attribution_engine.main import create_app
    from attribution_engine.database import get_db
    from attribution_engine.routers.tracking import get_order_feed_factory

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_order_feed_factory] = lambda: (lambda shop_domain, token: fake_feed)
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


# ============================================================================
# Seed Fixtures
# ============================================================================

@pytest.fixture
def seed_connection(test_db_session):
    """Create an active Shopify connection with an encrypted token."""
    from attribution_engine.models import Connection
    from attribution_engine.security import encrypt_secret

    def _seed(store_id: str = "store-1", shop_domain: str = "demo.myshopify.com",
              token: Optional[str] = "shpat_test", raw_token_enc: Optional[str] = None,
              status: str = "active") -> Connection:
        connection = Connection(
            store_id=store_id,
            provider="shopify",
            shop_domain=shop_domain,
            access_token_enc=raw_token_enc if raw_token_enc is not None else (
                encrypt_secret(token, context="test") if token else None
            ),
            status=status,
        )
        test_db_session.add(connection)
        test_db_session.commit()
        return connection

    return _seed


@pytest.fixture
def add_event(test_db_session):
    """Upsert a tracking event through the store (defaults: mapped browser touch)."""
    from attribution_engine.services.event_store import TrackingEventInput, TrackingEventStore

    store = TrackingEventStore(test_db_session)
    counter = {"n": 0}

    def _add(occurred_at: datetime, store_id: str = "store-1", event_name: str = "PageView", **fields):
        counter["n"] += 1
        fields.setdefault("event_id", f"evt-{counter['n']}")
        fields.setdefault("source", "browser")
        event = TrackingEventInput(store_id=store_id, event_name=event_name, occurred_at=occurred_at, **fields)
        store.upsert(event)
        return event

    return _add


@pytest.fixture
def minutes_before():
    return lambda minutes: NOW - timedelta(minutes=minutes)
