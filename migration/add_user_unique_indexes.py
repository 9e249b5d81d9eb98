"""
Migration: unique username/email indexes on users
- Drops leftover non-unique indexes on users.username and users.email;
  other indexes on users are left alone
- Creates users_username_unique and users_email_unique where no unique
  index covers the column yet
- Refuses to run while duplicate usernames or emails exist
- --down removes the two unique indexes again

Usage:
  python -m migration.add_user_unique_indexes --db path/to/storefront.db [--down]
"""
import argparse
import os
import sqlite3
from contextlib import closing

UNIQUE_INDEXES = {
    "users_username_unique": "username",
    "users_email_unique": "email",
}


def user_indexes(conn: sqlite3.Connection) -> list[str]:
    return [row[1] for row in conn.execute("PRAGMA index_list(users)").fetchall()]


def index_columns(conn: sqlite3.Connection, name: str) -> list[str]:
    return [row[2] for row in conn.execute(f'PRAGMA index_info("{name}")').fetchall()]


def covering_indexes(conn: sqlite3.Connection, column: str, unique: bool) -> list[str]:
    """Indexes on users whose only column is ``column`` and whose uniqueness matches."""
    return [
        row[1]
        for row in conn.execute("PRAGMA index_list(users)").fetchall()
        if bool(row[2]) == unique and index_columns(conn, row[1]) == [column]
    ]


def duplicates(conn: sqlite3.Connection, column: str) -> list[str]:
    rows = conn.execute(
        f"SELECT {column} FROM users WHERE {column} IS NOT NULL GROUP BY {column} HAVING COUNT(*) > 1"
    )
    return [r[0] for r in rows.fetchall()]


def _open(db_path: str) -> sqlite3.Connection:
    if db_path == ":memory:":
        raise ValueError("Use a file-backed DB for migration script")
    if not os.path.exists(db_path):
        raise FileNotFoundError(db_path)
    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA foreign_keys=ON")
    tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    if "users" not in tables:
        conn.close()
        raise RuntimeError("users table missing; cannot migrate")
    return conn


def migrate(db_path: str):
    with closing(_open(db_path)) as conn:
        for column in UNIQUE_INDEXES.values():
            dupes = duplicates(conn, column)
            if dupes:
                raise RuntimeError(f"duplicate {column} values block the migration: {', '.join(map(str, dupes))}")

        for name, column in UNIQUE_INDEXES.items():
            for stale in covering_indexes(conn, column, unique=False):
                conn.execute(f'DROP INDEX "{stale}"')
            # a schema built from the models already has a unique index here
            if not covering_indexes(conn, column, unique=True):
                conn.execute(f'CREATE UNIQUE INDEX "{name}" ON users ({column})')
        conn.commit()


def rollback(db_path: str):
    with closing(_open(db_path)) as conn:
        for name in UNIQUE_INDEXES:
            conn.execute(f'DROP INDEX IF EXISTS "{name}"')
        conn.commit()


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", required=True, help="Path to SQLite database file")
    parser.add_argument("--down", action="store_true", help="Remove the unique indexes instead")
    args = parser.parse_args()
    if args.down:
        rollback(args.db)
    else:
        migrate(args.db)

if __name__ == "__main__":
    main()
