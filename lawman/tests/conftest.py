"""
Shared fixtures: a fresh SQLite database per test, selected through
DATABASE_URL + reset_engine() the same way the service reads it.
"""

import os
from datetime import datetime

import pytest


@pytest.fixture
def sqlalchemy_db(tmp_path):
    """Configure a fresh SQLAlchemy SQLite DB for tests."""
    from lawman.db.session import reset_engine, init_db

    old_db_url = os.environ.get("DATABASE_URL")
    db_path = tmp_path / "lawman_test.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    reset_engine()
    init_db()

    yield

    if old_db_url is not None:
        os.environ["DATABASE_URL"] = old_db_url
    else:
        os.environ.pop("DATABASE_URL", None)
    reset_engine()


@pytest.fixture
def db(sqlalchemy_db):
    from lawman.db.session import new_session

    session = new_session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def now():
    return datetime(2026, 3, 2, 9, 0, 0)


@pytest.fixture
def customer(db):
    from lawman.cases import CaseService

    return CaseService(db).create_customer("Arta Hoxha", email="arta@example.com")


@pytest.fixture
def intake_case(db, customer):
    from lawman.cases import CaseService

    return CaseService(db).create_case(customer.customer_id, category="immigration", title="Residence permit")
