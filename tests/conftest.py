"""Test fixtures for the affiliate ledger."""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("INTERNAL_EVENT_TOKEN", "test-internal-token")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import affiliate_models  # noqa: F401
from database.models import Base, User, UserRole
from services.affiliate_account import get_or_create_affiliate
from tests.factories import NOW


@pytest.fixture
def engine():
    """In-memory SQLite with real transactions so savepoints behave like PostgreSQL."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role=UserRole.USER, email=None, name=None):
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.com",
            name=name or f"User {counter['n']}",
            role=role,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(role=UserRole.ADMIN, email="admin@example.com", name="Admin")


@pytest.fixture
def affiliate(db, user):
    affiliate = get_or_create_affiliate(db, user, NOW)
    db.commit()
    db.refresh(affiliate)
    return affiliate

