# tests/conftest.py
"""
Pytest configuration and shared fixtures for the Foundry test suite.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from uuid import uuid4

# Point the app at a throwaway SQLite file before tradinta is imported
_TEST_DB_DIR = tempfile.mkdtemp(prefix="tradinta-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TEST_DB_DIR}/foundry_test.db")
os.environ.setdefault("STRUCTURED_LOGS_ENABLED", "false")
os.environ.setdefault("FLASK_TESTING", "true")

import pytest

from tradinta.database import Base, SessionLocal, init_database
from tradinta.models import Product, ProductStatus, User, UserRole
from tradinta.observability import reset_metrics
from tradinta.services.notification_service import NotificationService


class FakeClock:
    """Deterministic clock that tests can move forward."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="session")
def test_db():
    init_database()
    return SessionLocal


@pytest.fixture
def db_session(test_db):
    """Fresh session per test; every table is emptied afterwards."""
    session = test_db()
    try:
        yield session
    finally:
        session.rollback()
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
        session.close()
        NotificationService().clear_notifications()
        reset_metrics()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


def make_user(session, role: UserRole, name: str = "user") -> User:
    suffix = uuid4().hex[:8]
    user = User(
        username=f"test_{name}_{suffix}",
        email=f"{name}_{suffix}@example.com",
        display_name=f"{name.title()} {suffix}",
        role=role.value,
    )
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def seller(db_session):
    return make_user(db_session, UserRole.MANUFACTURER, "seller")


@pytest.fixture
def partner(db_session):
    return make_user(db_session, UserRole.PARTNER, "partner")


@pytest.fixture
def admin(db_session):
    return make_user(db_session, UserRole.ADMIN, "admin")


@pytest.fixture
def buyer(db_session):
    return make_user(db_session, UserRole.BUYER, "buyer")


@pytest.fixture
def buyer_factory(db_session):
    def _factory(count: int = 1):
        return [make_user(db_session, UserRole.BUYER, "buyer") for _ in range(count)]

    return _factory


@pytest.fixture
def product(db_session, seller):
    item = Product(
        sellerID=seller.userID,
        name="Industrial Steel Bolts (Box of 500)",
        description="Grade 8.8 zinc plated",
        image_url="https://cdn.example.com/bolts.png",
        price=1000.00,
        status=ProductStatus.PUBLISHED,
    )
    db_session.add(item)
    db_session.commit()
    return item


@pytest.fixture
def draft_product(db_session, seller):
    item = Product(
        sellerID=seller.userID,
        name="Prototype Hinge",
        price=250.00,
        status=ProductStatus.DRAFT,
    )
    db_session.add(item)
    db_session.commit()
    return item
