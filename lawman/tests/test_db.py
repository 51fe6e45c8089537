"""
Tests for database sessions: engine selection and the script transaction scope.
"""

import pytest
from sqlalchemy import text

from lawman.db.models import Customer
from lawman.db.session import get_engine, init_db, new_session, session_scope


def _customer_count():
    session = new_session()
    try:
        return session.query(Customer).count()
    finally:
        session.close()


class TestSessionScope:

    def test_commits_on_success(self, sqlalchemy_db):
        with session_scope() as db:
            db.add(Customer(name="Arta Hoxha"))

        assert _customer_count() == 1

    def test_rolls_back_on_error(self, sqlalchemy_db):
        with pytest.raises(RuntimeError):
            with session_scope() as db:
                db.add(Customer(name="Arta Hoxha"))
                db.flush()
                raise RuntimeError("script failed")

        assert _customer_count() == 0


class TestEngine:

    def test_follows_database_url(self, sqlalchemy_db, tmp_path, monkeypatch):
        first = get_engine()
        assert get_engine() is first

        monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'other.db'}")
        init_db()

        assert get_engine() is not first
        assert _customer_count() == 0

    def test_sqlite_enforces_foreign_keys(self, sqlalchemy_db):
        with get_engine().connect() as conn:
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
