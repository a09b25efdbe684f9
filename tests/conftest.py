"""Shared pytest fixtures for the order service tests.

Each test gets its own SQLite database file. SQLite transactions take the
database write lock (BEGIN IMMEDIATE), so tests never keep a session open
while the API or another thread writes: the ``store`` fixture opens and
closes a session for every helper call.
"""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import pytest
import structlog
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from order_service.auth import issue_token
from order_service.capabilities import SchemaCapabilities
from order_service.database import Base, build_engine, get_db
from order_service.main import app, get_capabilities
from order_service.messaging.producer import get_publisher
from order_service.models import (
    Coupon,
    CouponType,
    Product,
    ProductStatus,
    User,
    UserRole,
)


@pytest.fixture(autouse=True)
def configure_structlog_for_tests() -> None:
    """Plain console output, uncached so capture_logs works in every test."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def engine(tmp_path):
    test_engine = build_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def capabilities(engine) -> SchemaCapabilities:
    return SchemaCapabilities.detect(engine)


class Store:
    """Seeds and inspects the test database, one short session per call."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def add(self, obj) -> int:
        with self.session_factory() as session:
            session.add(obj)
            session.commit()
            return obj.id

    def user(self, name="Alice", email=None, role=UserRole.USER) -> int:
        email = email or f"{name.lower()}@example.com"
        return self.add(User(name=name, email=email, password="hashed", role=role))

    def product(self, name="Phone", price=100000, stock=5) -> int:
        return self.add(
            Product(name=name, price=Decimal(price), stock=stock, status=ProductStatus.ACTIVE)
        )

    def coupon(self, code="SALE10", type=CouponType.PERCENT, value=10, **overrides: Any) -> int:
        now = datetime.now(timezone.utc)
        fields = {
            "code": code.upper(),
            "type": type,
            "value": Decimal(value),
            "min_order": Decimal(0),
            "used_count": 0,
            "start_at": now - timedelta(days=1),
            "end_at": now + timedelta(days=30),
            "status": "ACTIVE",
        }
        fields.update(overrides)
        for money in ("max_discount", "min_order"):
            if fields.get(money) is not None:
                fields[money] = Decimal(fields[money])
        return self.add(Coupon(**fields))

    def get(self, model, ident):
        with self.session_factory() as session:
            obj = session.get(model, ident)
            if obj is not None:
                session.expunge(obj)
            return obj

    def stock(self, product_id: int) -> int:
        return self.get(Product, product_id).stock

    def set_price(self, product_id: int, price) -> None:
        with self.session_factory() as session:
            session.get(Product, product_id).price = Decimal(price)
            session.commit()

    def count(self, model, *where) -> int:
        with self.session_factory() as session:
            stmt = select(func.count()).select_from(model)
            if where:
                stmt = stmt.where(*where)
            return session.execute(stmt).scalar_one()

    def all(self, model, *where, order_by=None) -> list:
        with self.session_factory() as session:
            stmt = select(model)
            if where:
                stmt = stmt.where(*where)
            stmt = stmt.order_by(order_by if order_by is not None else model.id)
            rows = session.execute(stmt).scalars().all()
            session.expunge_all()
            return rows


@pytest.fixture
def store(session_factory) -> Store:
    return Store(session_factory)


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish(self, routing_key, message):
        self.events.append((routing_key, message))
        return True


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def client(session_factory, capabilities, publisher):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_capabilities] = lambda: capabilities
    app.dependency_overrides[get_publisher] = lambda: publisher
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def bearer(user_id: int, role: str = "USER", email: str = "someone@example.com") -> dict:
    return {"Authorization": f"Bearer {issue_token(user_id, email, role)}"}


@pytest.fixture
def customer_headers(store):
    user_id = store.user("Alice")
    return user_id, bearer(user_id, "USER", "alice@example.com")


@pytest.fixture
def admin_headers(store):
    user_id = store.user("Admin", role=UserRole.ADMIN)
    return user_id, bearer(user_id, "ADMIN", "admin@example.com")


@pytest.fixture
def auth():
    """Build Authorization headers for an arbitrary user id and role."""
    return bearer


@pytest.fixture
def store_for():
    """Build a :class:`Store` over another engine, e.g. a legacy schema."""

    def build(other_engine) -> Store:
        return Store(sessionmaker(bind=other_engine, autocommit=False, autoflush=False))

    return build
