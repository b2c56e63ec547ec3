"""
Pytest fixtures for stock ledger tests.

Provides test database setup, store / warehouse / product fixtures and test client.
"""

from datetime import timedelta

import pytest
from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import Store, Warehouse, Product
from stockledger.services import ledger_service
from stockledger.time_utils import utcnow


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RECONCILE_MAX_WORKERS': 1,
        'RECONCILE_BACKOFF_BASE': 0,
        'COUNT_SESSION_BACKEND': 'memory',
    })

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
    store = Store(name="Main Street", code="MAIN")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def other_store(db_session):
    store = Store(name="Harbour Road", code="HARB")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def warehouse(db_session, store):
    """Default warehouse of the main store."""
    warehouse = Warehouse(store_id=store.id, name="Shop floor", is_default=True)
    db_session.add(warehouse)
    db_session.commit()
    return warehouse


@pytest.fixture(scope='function')
def back_room(db_session, store, warehouse):
    warehouse = Warehouse(store_id=store.id, name="Back room")
    db_session.add(warehouse)
    db_session.commit()
    return warehouse


@pytest.fixture(scope='function')
def product(db_session, store):
    product = Product(store_id=store.id, sku="COF-1KG", name="Coffee beans 1kg")
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def second_product(db_session, store):
    product = Product(store_id=store.id, sku="MILK-1L", name="Milk 1L")
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def base_time():
    """A fixed point a few hours in the past; movements are placed relative to it."""
    return utcnow().replace(microsecond=0) - timedelta(hours=6)


def add_movement(store, product, warehouse, qty_delta, movement_type, occurred_at=None, **kwargs):
    """Helper to append a producer movement through the ledger service."""
    return ledger_service.append_movement(
        store_id=store.id,
        product_id=product.id,
        warehouse_id=warehouse.id if warehouse is not None else None,
        qty_delta=qty_delta,
        movement_type=movement_type,
        occurred_at=occurred_at,
        **kwargs,
    )
