"""
Pytest fixtures for shopledger backend tests.

Provides test database setup, a two-store tenant layout, staff users with
bearer tokens, and a stocked catalog variant.
"""

import pytest
from shopledger import create_app
from shopledger.config import TestConfig
from shopledger.extensions import db
from shopledger.models import (
    Store,
    User,
    Product,
    ProductVariant,
    Customer,
    InventoryLocation,
    InventoryItem,
)
from shopledger.services import session_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def store(db_session):
    """Create Store A (first tenant)."""
    store = Store(name="Store A", code="A1", currency="INR", is_active=True)
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def other_store(db_session):
    """Create Store B (second tenant)."""
    store = Store(name="Store B", code="B1", currency="INR", is_active=True)
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def admin_user(db_session, store):
    user = User(store_id=store.id, email="admin@store-a.test", name="Admin A", role="admin")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def staff_user(db_session, store):
    user = User(store_id=store.id, email="staff@store-a.test", name="Staff A", role="staff")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def other_admin(db_session, other_store):
    user = User(store_id=other_store.id, email="admin@store-b.test", name="Admin B", role="admin")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def customer(db_session, store):
    customer = Customer(store_id=store.id, email="buyer@example.com", first_name="Asha")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def location(db_session, store):
    location = InventoryLocation(
        store_id=store.id,
        name="Main Warehouse",
        code="MAIN",
        type="warehouse",
        is_active=True,
        is_default=True,
        fulfills_online_orders=True,
    )
    db_session.add(location)
    db_session.commit()
    return location


@pytest.fixture(scope='function')
def product(db_session, store):
    product = Product(store_id=store.id, title="Linen Shirt", handle="linen-shirt", is_active=True)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def variant(db_session, product):
    """Variant priced at 5000 minor units."""
    variant = ProductVariant(product_id=product.id, title="Medium", sku="LS-M", price=5000)
    db_session.add(variant)
    db_session.commit()
    return variant


@pytest.fixture(scope='function')
def stocked_variant(db_session, variant, location):
    """Variant with 10 units on hand at the default location."""
    item = InventoryItem(
        variant_id=variant.id,
        location_id=location.id,
        quantity=10,
        reserved_quantity=0,
        incoming_quantity=0,
    )
    db_session.add(item)
    db_session.commit()
    return variant


def issue_token(user) -> str:
    """Helper to get a bearer token for a user."""
    _, token = session_service.create_session(user.id)
    return token


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}
