"""
Pytest fixtures for the retail backend and POS client tests.

Provides the app on an in-memory database, a test client and
staff/product/branch factories.
"""

import pytest

from retail import create_app
from retail.extensions import db
from retail.models import Branch, Product
from retail.services import auth_service
from tests.helpers import PASSWORD, POS_TOKEN, auth_headers, get_auth_token


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SECRET_KEY': 'test-secret',
        'POS_SYNC_TOKEN': POS_TOKEN,
        'BCRYPT_ROUNDS': 4,
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
def branch(db_session):
    b = Branch(name="Main Branch")
    db_session.add(b)
    db_session.commit()
    return b


@pytest.fixture(scope='function')
def make_product(db_session):
    def _make(name="Widget", price_cents=500, cost_cents=200, stock=10, barcode=None):
        p = Product(name=name, price_cents=price_cents, cost_cents=cost_cents, stock=stock, barcode=barcode)
        db_session.add(p)
        db_session.commit()
        return p
    return _make


@pytest.fixture(scope='function')
def manager(db_session, branch):
    return auth_service.create_staff(
        db_session, name="Morgan Manager", username="manager", password=PASSWORD, rounds=4
    )


@pytest.fixture(scope='function')
def cashier(db_session, manager):
    return auth_service.create_staff(
        db_session,
        name="Casey Cashier",
        username="cashier",
        password=PASSWORD,
        role="cashier",
        actor=manager,
        rounds=4,
    )


@pytest.fixture(scope='function')
def manager_headers(client, manager):
    return auth_headers(get_auth_token(client, "manager"))


@pytest.fixture(scope='function')
def cashier_headers(client, cashier):
    return auth_headers(get_auth_token(client, "cashier"))


@pytest.fixture(scope='function')
def pos_headers():
    return {'X-POS-Token': POS_TOKEN}
