"""
Pytest fixtures for keyflow backend tests.

Provides test database setup, a full distribution hierarchy and an
authenticated test client.
"""

from types import SimpleNamespace

import pytest
from keyflow import create_app
from keyflow.extensions import db
from keyflow.models.accounts import ROLE_ADMIN, ROLE_ND, ROLE_SS, ROLE_DB, ROLE_RETAILER, ROLE_PARENT
from keyflow.services import account_service, ledger_service


PASSWORD = "Password123!"

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'BCRYPT_ROUNDS': 4,
    'TX_RETRY_BACKOFF': 0.01,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

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
def make_account(db_session):
    """Factory: make_account(role, creator=None, email=None) through the account service."""
    counter = {"n": 0}

    def _make(role, creator=None, email=None, name=None):
        counter["n"] += 1
        account, _ = account_service.create_account(
            creator.id if creator is not None else None,
            role,
            {
                "name": name or f"{role} {counter['n']}",
                "email": email or f"{role}{counter['n']}@keyflow.test",
            },
            password=PASSWORD,
        )
        return account

    return _make


@pytest.fixture(scope='function')
def chain(make_account):
    """One account per role, each created by the one above it."""
    admin = make_account(ROLE_ADMIN)
    nd = make_account(ROLE_ND, admin)
    ss = make_account(ROLE_SS, nd)
    dist = make_account(ROLE_DB, ss)
    retailer = make_account(ROLE_RETAILER, dist)
    parent = make_account(ROLE_PARENT, retailer)
    return SimpleNamespace(admin=admin, nd=nd, ss=ss, db=dist, retailer=retailer, parent=parent)


@pytest.fixture(scope='function')
def assert_ledger_consistent(db_session):
    """Callable that reconciles every account and fails on any drift."""
    def _check():
        db_session.expire_all()
        reports = ledger_service.reconcile_all()
        drifted = [r for r in reports if not r["consistent"]]
        assert not drifted, drifted
        return reports

    return _check


def get_auth_token(client, email: str, password: str = PASSWORD) -> str:
    """Helper to get auth token for an account."""
    response = client.post('/api/auth/login', json={
        'email': email,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def login(client):
    """login(account) -> Authorization headers for that account."""
    def _login(account):
        token = get_auth_token(client, account.email)
        assert token, f"login failed for {account.email}"
        return auth_headers(token)

    return _login
