"""
Shared pytest fixtures.

Uses a SQLite file database so no Postgres is required for tests. Pure
service tests build their own profiles and never touch the database.
"""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import nudge.models  # noqa: F401  (registers every table on Base.metadata)
from nudge.db.base import Base, get_db, get_session_factory
from nudge.main import app
from nudge.services.events import event_sink
from nudge.services.profile import create_default_profile
from nudge.services.types import Transaction

SQLITE_URL = "sqlite:///./test_nudge.db"

engine = create_engine(SQLITE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# A Wednesday, mid-month, mid-morning: outside every time-of-day signal
NOW = datetime(2026, 3, 11, 10, 0, tzinfo=timezone.utc)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


def override_get_session_factory():
    return TestingSessionLocal


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def client(db):
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = override_get_session_factory
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    # Undrained events from a failed request must not leak into the next test
    event_sink.drain(_NullTracker())


class _NullTracker:
    def track(self, event) -> None:
        pass


@pytest.fixture()
def now():
    return NOW


@pytest.fixture()
def profile(now):
    return create_default_profile("user-1", now)


def make_tx(
    tx_id: str,
    occurred_at: datetime,
    amount: float = 4.5,
    category: str = "coffee",
) -> Transaction:
    return Transaction(id=tx_id, amount=amount, category=category, occurred_at=occurred_at)


def filler_transactions(now: datetime, count: int = 12, prefix: str = "f") -> list[Transaction]:
    """Neutral mid-day groceries, one per day going back from `now`."""
    return [
        make_tx(
            f"{prefix}{i}",
            (now - timedelta(days=i + 1)).replace(hour=11),
            amount=60.0,
            category="groceries",
        )
        for i in range(count)
    ]
