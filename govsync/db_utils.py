"""
Shared database utilities for govsync.

Provides get_db_connection() for PostgreSQL (psycopg 3) and a thin Database
wrapper used by every store in the package (graph store, run ledger, delivery
ledger, aggregate cache).

SQL in this package is written once, with psycopg-style ``%s`` placeholders
and portable statements (``ON CONFLICT ... DO UPDATE/NOTHING``, CHECK
constraints, TEXT timestamps). When the wrapper sits on a sqlite3 connection
the placeholders are rewritten to ``?``; nothing else differs.

Connection resolution order:
  1. GOVSYNC_SQLITE_PATH set   -> sqlite3 (":memory:" for tests)
  2. GOVSYNC_DB_* env vars     -> PostgreSQL
  3. Defaults                  -> localhost:5434/postgres
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from importlib import resources
from pathlib import Path
from typing import Any, Iterator, Sequence

import psycopg

from .settings import Settings, get_settings

POSTGRES = "postgres"
SQLITE = "sqlite"

SCHEMA_FILE = "governance_schema.sql"


def get_db_connection(
    settings: Settings | None = None,
    *,
    autocommit: bool = True,
    schema: str | None = None,
) -> psycopg.Connection:
    """
    Get a psycopg3 connection to the govsync PostgreSQL database.

    Args:
        settings: Settings to read GOVSYNC_DB_* from (defaults to env).
        autocommit: Autocommit mode. Database.transaction() issues explicit
                    BEGIN/COMMIT so stores expect autocommit connections.
        schema: If provided, SET search_path on the connection.
                Defaults to GOVSYNC_DB_SCHEMA if set and not 'public'.
    """
    settings = settings or get_settings()

    host = settings.govsync_db_host
    # Docker-internal hostname won't resolve from host machine.
    if host == "db":
        host = "localhost"

    conn = psycopg.connect(
        host=host,
        port=settings.govsync_db_port,
        dbname=settings.govsync_db_name,
        user=settings.govsync_db_user,
        password=settings.govsync_db_password,
        autocommit=autocommit,
    )

    target_schema = schema or settings.govsync_db_schema
    if target_schema and target_schema != "public":
        conn.execute(f"SET search_path TO {target_schema}, public")

    return conn


def get_sqlite_connection(path: str) -> sqlite3.Connection:
    """Open a sqlite3 connection in autocommit mode, usable from any thread."""
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def load_schema_sql() -> str:
    """Return the packaged DDL for all govsync tables."""
    return resources.files("govsync").joinpath("schemas", SCHEMA_FILE).read_text(encoding="utf-8")


class Database:
    """
    A single connection shared by the stores of one process.

    Access is serialized with a re-entrant lock; callers never await while
    holding a transaction, so asyncio tasks sharing the connection cannot
    interleave statements inside one.
    """

    def __init__(self, conn: Any, dialect: str):
        if dialect not in (POSTGRES, SQLITE):
            raise ValueError(f"Unknown dialect: {dialect}")
        self.conn = conn
        self.dialect = dialect
        self._lock = threading.RLock()
        self._depth = 0

    @classmethod
    def connect(cls, settings: Settings | None = None) -> Database:
        """Connect using settings (sqlite when GOVSYNC_SQLITE_PATH is set)."""
        settings = settings or get_settings()
        if settings.govsync_sqlite_path:
            return cls(get_sqlite_connection(settings.govsync_sqlite_path), SQLITE)
        return cls(get_db_connection(settings), POSTGRES)

    @classmethod
    def sqlite(cls, path: str = ":memory:") -> Database:
        return cls(get_sqlite_connection(path), SQLITE)

    def _adapt(self, sql: str) -> str:
        if self.dialect == SQLITE:
            return sql.replace("%s", "?")
        return sql

    def execute(self, sql: str, params: Sequence[Any] = ()) -> Any:
        """Execute one statement and return the driver cursor."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(self._adapt(sql), tuple(params))
            return cursor

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        with self._lock:
            cursor = self.execute(sql, params)
            row = cursor.fetchone()
            if row is None:
                return None
            columns = [col[0] for col in cursor.description]
            return dict(zip(columns, row))

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        with self._lock:
            cursor = self.execute(sql, params)
            rows = cursor.fetchall()
            if not rows:
                return []
            columns = [col[0] for col in cursor.description]
            return [dict(zip(columns, row)) for row in rows]

    @contextmanager
    def transaction(self) -> Iterator[Database]:
        """
        Run the enclosed statements atomically.

        Nested calls join the outermost transaction.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            self.conn.execute("BEGIN")
            self._depth = 1
            try:
                yield self
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")
            finally:
                self._depth = 0

    def run_script(self, sql: str) -> None:
        """Execute a multi-statement DDL script."""
        with self._lock:
            if self.dialect == SQLITE:
                self.conn.executescript(sql)
            else:
                self.conn.execute(sql)

    def init_schema(self) -> None:
        """Create all tables and indexes (idempotent)."""
        self.run_script(load_schema_sql())

    def close(self) -> None:
        with self._lock:
            self.conn.close()
