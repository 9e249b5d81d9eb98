import os
import sqlite3
import tempfile

import pytest
from sqlalchemy import create_engine

from migration.add_user_unique_indexes import migrate, rollback, user_indexes
from storefront.db import Base
from storefront import models  # noqa: F401  registers the tables on Base


def create_legacy_db(path: str, users):
    conn = sqlite3.connect(path)
    try:
        conn.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, username TEXT NOT NULL, email TEXT NOT NULL)")
        # old non-unique indexes left behind by earlier schema versions
        conn.execute("CREATE INDEX ix_users_username ON users (username)")
        conn.execute("CREATE INDEX ix_users_email ON users (email)")
        conn.executemany("INSERT INTO users (username, email) VALUES (?, ?)", users)
        conn.commit()
    finally:
        conn.close()


def test_migration_replaces_indexes_with_unique_ones():
    with tempfile.TemporaryDirectory() as tmp:
        db_path = os.path.join(tmp, "test.db")
        create_legacy_db(db_path, [("alice", "alice@example.com"), ("bob", "bob@example.com")])

        migrate(db_path)

        conn = sqlite3.connect(db_path)
        try:
            assert set(user_indexes(conn)) == {"users_username_unique", "users_email_unique"}
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute("INSERT INTO users (username, email) VALUES ('alice', 'other@example.com')")
        finally:
            conn.close()

        rollback(db_path)
        conn = sqlite3.connect(db_path)
        try:
            assert user_indexes(conn) == []
        finally:
            conn.close()


def test_migration_refuses_duplicates():
    with tempfile.TemporaryDirectory() as tmp:
        db_path = os.path.join(tmp, "test.db")
        create_legacy_db(db_path, [("alice", "a@example.com"), ("alice", "b@example.com")])

        with pytest.raises(RuntimeError, match="duplicate username"):
            migrate(db_path)

        conn = sqlite3.connect(db_path)
        try:
            # nothing was dropped
            assert set(user_indexes(conn)) == {"ix_users_username", "ix_users_email"}
        finally:
            conn.close()


def test_migration_requires_file_db():
    with pytest.raises(ValueError):
        migrate(":memory:")
    with pytest.raises(FileNotFoundError):
        migrate("/nonexistent/storefront.db")


def test_migration_keeps_model_indexes():
    with tempfile.TemporaryDirectory() as tmp:
        db_path = os.path.join(tmp, "app.db")
        engine = create_engine(f"sqlite:///{db_path}")
        Base.metadata.create_all(bind=engine)
        engine.dispose()
        conn = sqlite3.connect(db_path)
        try:
            before = set(user_indexes(conn))
        finally:
            conn.close()

        migrate(db_path)

        conn = sqlite3.connect(db_path)
        try:
            assert set(user_indexes(conn)) == before
            assert {"ix_users_role", "ix_users_id"} <= before
            conn.execute("INSERT INTO users (username, email, password_hash, role) VALUES ('alice', 'a@example.com', 'x', 'user')")
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute("INSERT INTO users (username, email, password_hash, role) VALUES ('bob', 'a@example.com', 'x', 'user')")
        finally:
            conn.close()
