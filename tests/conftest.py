import itertools
from datetime import UTC, datetime

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from membergate import hooks
from membergate.models import AccessKey, Account, Base, BoostKey, BoostScope
from membergate.services.auth import AuthService
from membergate.services.cache import account_cache

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture(scope="session")
def engine():
    """SQLite in-memory engine shared across threads (TestClient runs the app in another)."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN.
    @event.listens_for(eng, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(eng)
    return eng


@pytest.fixture
def db_session(engine):
    """Provide a transactional session that rolls back after each test.

    ``session.commit()`` only releases a savepoint, so code under test may
    commit freely.
    """
    connection = engine.connect()
    transaction = connection.begin()
    session = Session(bind=connection, join_transaction_mode="create_savepoint")
    yield session
    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(autouse=True)
def _reset_process_state():
    account_cache.clear()
    hooks.clear()
    yield
    account_cache.clear()
    hooks.clear()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def auth():
    return AuthService(secret_key="test-secret-key-for-membergate")


@pytest.fixture
def make_account(db_session):
    counter = itertools.count(1)

    def _make(email=None, **kwargs):
        account = Account(
            email=email or f"member{next(counter)}@example.com",
            password_hash="not-a-real-hash",
            **kwargs,
        )
        db_session.add(account)
        db_session.flush()
        return account

    return _make


@pytest.fixture
def account(make_account):
    return make_account()


@pytest.fixture
def make_access_key(db_session):
    counter = itertools.count(1)

    def _make(code=None, grant_duration_hours=720.0, **kwargs):
        kwargs.setdefault("max_uses", 1)
        key = AccessKey(
            code=code or f"XY-30D-TEST{next(counter):04d}",
            grant_duration_hours=grant_duration_hours,
            **kwargs,
        )
        db_session.add(key)
        db_session.flush()
        return key

    return _make


@pytest.fixture
def make_boost_key(db_session):
    counter = itertools.count(1)

    def _make(code=None, scope=BoostScope.DAILY, amount=5, **kwargs):
        kwargs.setdefault("max_uses", 1)
        key = BoostKey(
            code=code or f"AI-TEST-{next(counter):04d}",
            scope=scope,
            amount=amount,
            **kwargs,
        )
        db_session.add(key)
        db_session.flush()
        return key

    return _make
