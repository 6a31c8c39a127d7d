"""
Pytest fixtures for PharmaLedger backend tests.

Provides a fresh in-memory database per test, a test client, and factories
for products (with an opening ENTRY movement so the ledger replays) and lots.
"""

from datetime import date

import pytest
from pharmaledger import create_app
from pharmaledger.extensions import db
from pharmaledger.models import Lot, MovementKind, Product
from pharmaledger.services import stock_service


ACTOR = "user-1"


@pytest.fixture(scope='function')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'STOCK_RETRY_BACKOFF_SECONDS': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    yield db.session
    db.session.rollback()


@pytest.fixture(scope='function')
def actor_headers():
    return {'X-Actor-Id': ACTOR}


@pytest.fixture(scope='function')
def make_product(db_session):
    """
    Factory: make_product(stock=10, **fields) -> Product

    Opening stock is booked through the ledger so verify_ledger() holds.
    """
    counter = {'n': 0}

    def _make(stock: int = 0, **fields) -> Product:
        counter['n'] += 1
        fields.setdefault('name', f"Product {counter['n']}")
        fields.setdefault('price_cents', 1000)
        fields.setdefault('cost_price_cents', 600)
        fields.setdefault('minimum_stock', 5)
        product = Product(**fields)
        db_session.add(product)
        db_session.commit()
        if stock:
            stock_service.apply_movement(product.id, MovementKind.ENTRY, stock, "opening stock", ACTOR)
        return product

    return _make


@pytest.fixture(scope='function')
def make_lot(db_session):
    """
    Factory: make_lot(product, lot_number, quantity, expiry_date, ...) -> Lot

    Writes the lot row directly (no ledger movement). Use for allocator
    tests; receive_lot() covers the ledger-coupled path.
    """
    def _make(
        product: Product,
        lot_number: str,
        quantity: int,
        expiry_date: date,
        manufacture_date: date = date(2023, 1, 1),
        reserved: int = 0,
        active: bool = True,
    ) -> Lot:
        lot = Lot(
            product_id=product.id,
            lot_number=lot_number,
            manufacture_date=manufacture_date,
            expiry_date=expiry_date,
            initial_quantity=quantity,
            current_quantity=quantity,
            reserved_quantity=reserved,
            active=active,
        )
        db_session.add(lot)
        db_session.commit()
        return lot

    return _make
