"""
Pytest fixtures for the POS ledger backend tests.

Provides an in-memory application, a per-test clean database, users and
actors for both roles, stocked products and a credit customer.
"""

from decimal import Decimal

import pytest

from posledger import create_app
from posledger.extensions import db
from posledger.models import Customer, User
from posledger.permissions import ROLE_ADMIN, ROLE_STAFF
from posledger.services import products_service
from posledger.services.auth_service import actor_for, hash_password
from posledger.services.requests import PaymentInput, SaleItemInput, SaleRequest


TEST_PASSWORD = "Password123"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
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


def _make_user(session, username: str, role: str) -> User:
    user = User(
        username=username,
        password_hash=hash_password(TEST_PASSWORD),
        role=role,
        is_active=True,
    )
    session.add(user)
    session.commit()
    return user


@pytest.fixture(scope='function')
def admin_user(db_session):
    return _make_user(db_session, "admin", ROLE_ADMIN)


@pytest.fixture(scope='function')
def staff_user(db_session):
    return _make_user(db_session, "clerk", ROLE_STAFF)


@pytest.fixture(scope='function')
def admin(admin_user):
    """Actor for the admin user."""
    return actor_for(admin_user)


@pytest.fixture(scope='function')
def staff(staff_user):
    """Actor for the staff user."""
    return actor_for(staff_user)


@pytest.fixture(scope='function')
def product(db_session, admin):
    """Product priced at 10.00 with 100 units on hand (posted through the ledger)."""
    return products_service.create_product(
        {"sku": "WATER-24", "name": "Water 24x500ml", "sell_price": "10.00", "cost_price": "7.00", "stock_qty": "100"},
        admin,
    )


@pytest.fixture(scope='function')
def second_product(db_session, admin):
    return products_service.create_product(
        {"sku": "JUICE-12", "name": "Juice 12x1L", "sell_price": "20.00", "cost_price": "15.00", "stock_qty": "50"},
        admin,
    )


@pytest.fixture(scope='function')
def customer(db_session):
    customer = Customer(name="Al Noor Grocery", phone="0500000000")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def admin_headers(client, admin_user):
    return auth_headers(get_auth_token(client, admin_user.username))


@pytest.fixture(scope='function')
def staff_headers(client, staff_user):
    return auth_headers(get_auth_token(client, staff_user.username))


def sale_request(product_id: int, qty="3", unit_price="10.00", customer_id=None, payments=None, **kwargs) -> SaleRequest:
    """Single-line SaleRequest helper."""
    return SaleRequest(
        items=[SaleItemInput(product_id=product_id, qty=Decimal(qty), unit_price=Decimal(unit_price))],
        customer_id=customer_id,
        payments=[PaymentInput(Decimal(p[0]), p[1]) for p in (payments or [])],
        **kwargs,
    )


def get_auth_token(client, username: str, password: str = TEST_PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'username': username,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}
