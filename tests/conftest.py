# tests/conftest.py
"""
Pytest configuration and shared fixtures.

The environment is pinned before ``retail_ops`` is imported so Config, the
engine and the Flask app all point at a throwaway SQLite file.
"""

import os
import tempfile
from datetime import datetime, timezone
from uuid import uuid4

_TEST_DB_DIR = tempfile.mkdtemp(prefix="retail_ops_tests_")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DB_DIR, 'retail_ops_test.db')}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["APP_ENV"] = "testing"
os.environ["STRUCTURED_LOGS_ENABLED"] = "false"
os.environ["STORE_RETRY_BASE_DELAY"] = "0"
os.environ["FINANCIAL_CONTROL_IDS"] = "finance-controller-1"

import pytest
from werkzeug.security import generate_password_hash

from retail_ops.database import Base, SessionLocal, engine
from retail_ops.models import DeliveryRoute, Order, OrderItem, OrderStatusChange, Person
from retail_ops.observability.metrics import reset_metrics

# Wednesday afternoon in La Paz
FIXED_NOW = datetime(2025, 3, 12, 18, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def test_db():
    """Create the schema once for the whole test session"""
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_metrics():
    reset_metrics()
    yield


@pytest.fixture
def db_session(test_db):
    """Fresh session per test; every table is emptied afterwards"""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        # Most dependent first
        for model in (OrderStatusChange, DeliveryRoute, OrderItem, Order, Person):
            session.query(model).delete(synchronize_session=False)
        session.commit()
        session.close()


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def make_person(db_session):
    def _make(role="LOGISTICA", password=None, active=True, **overrides):
        suffix = uuid4().hex[:8]
        person = Person(
            username=overrides.pop("username", f"person_{suffix}"),
            full_name=overrides.pop("full_name", f"Test Person {suffix}"),
            role=role,
            active=active,
            password_hash=generate_password_hash(password) if password else None,
            current_load=overrides.pop("current_load", 0),
            max_load=overrides.pop("max_load", 10),
            **overrides,
        )
        db_session.add(person)
        db_session.commit()
        return person

    return _make


@pytest.fixture
def make_order(db_session):
    def _make(address="Av. Busch 123", **overrides):
        order = Order(
            amount=overrides.pop("amount", 150),
            customer_name=overrides.pop("customer_name", "Maria Quispe"),
            delivery_address=address,
            **overrides,
        )
        order.items = [
            OrderItem(product_name="Colchon 2 plazas", quantity=1, unit_price=150, subtotal=150)
        ]
        db_session.add(order)
        db_session.commit()
        return order

    return _make
