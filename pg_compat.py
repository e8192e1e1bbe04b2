"""PostgreSQL compatibility layer: wraps psycopg2 to match the sqlite3 API.

When REMOTE_DATABASE_URL starts with postgresql://, the remote store talks to
Postgres through this module, which translates:
  - ? placeholders → %s
  - executescript() → split and execute, skipping objects that already exist
  - Row factory → dict-like Row objects

Connections come from a ThreadedConnectionPool with a connect timeout and a
per-statement timeout, so a hung network never blocks a caller forever.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import psycopg2
import psycopg2.pool

logger = logging.getLogger(__name__)


class PgRow:
    """Dict-like row that mimics sqlite3.Row."""

    def __init__(self, columns: list[str], values: tuple):
        self._data = dict(zip(columns, values))

    def __getitem__(self, key: str | int) -> Any:
        if isinstance(key, int):
            return list(self._data.values())[key]
        return self._data[key]

    def keys(self) -> list[str]:
        return list(self._data.keys())

    def __repr__(self) -> str:
        return f"PgRow({self._data})"


def _translate_sql(sql: str) -> str:
    """Translate SQLite SQL to PostgreSQL SQL.

    Upserts already use ``ON CONFLICT ... DO UPDATE``, which both dialects
    accept, so only the placeholders differ.
    """
    return sql.replace("?", "%s")


class PgCursorWrapper:
    """Wraps a psycopg2 cursor to match sqlite3.Cursor interface."""

    def __init__(self, cursor):
        self._cursor = cursor

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount

    def execute(self, sql: str, params: tuple = ()) -> "PgCursorWrapper":
        self._cursor.execute(_translate_sql(sql), tuple(params))
        return self

    def _columns(self) -> list[str]:
        return [desc[0] for desc in self._cursor.description]

    def fetchone(self) -> PgRow | None:
        row = self._cursor.fetchone()
        if row is None:
            return None
        return PgRow(self._columns(), row)

    def fetchall(self) -> list[PgRow]:
        if not self._cursor.description:
            return []
        rows = self._cursor.fetchall()
        columns = self._columns()
        return [PgRow(columns, row) for row in rows]


class PgConnectionWrapper:
    """Wraps a psycopg2 connection to match sqlite3.Connection interface."""

    def __init__(self, conn):
        self._conn = conn
        self._conn.autocommit = False

    def execute(self, sql: str, params: tuple = ()) -> PgCursorWrapper:
        cursor = PgCursorWrapper(self._conn.cursor())
        cursor.execute(sql, params)
        return cursor

    def executescript(self, sql: str) -> None:
        """Execute multiple SQL statements (PostgreSQL equivalent)."""
        statements = [s.strip() for s in sql.split(";") if s.strip()]
        cursor = self._conn.cursor()
        for stmt in statements:
            try:
                cursor.execute(stmt)
                self._conn.commit()
            except psycopg2.Error as e:
                # Handle "already exists" and "duplicate column" gracefully
                err_msg = str(e).lower()
                if any(phrase in err_msg for phrase in [
                    "already exists", "duplicate column",
                ]):
                    self._conn.rollback()
                    logger.debug("Skipping schema statement: %s", e)
                else:
                    raise
        cursor.close()


class PgPool:
    """Thread-safe pool of wrapped connections.

    ``connection()`` commits on success, rolls back on error, and discards
    connections the server has closed.
    """

    def __init__(self, database_url: str, size: int = 10, connect_timeout: int = 10,
                 statement_timeout: int = 10):
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            1,
            max(1, size),
            database_url,
            connect_timeout=connect_timeout,
            options=f"-c statement_timeout={int(statement_timeout * 1000)}",
        )

    @contextmanager
    def connection(self) -> Iterator[PgConnectionWrapper]:
        raw = self._pool.getconn()
        wrapped = PgConnectionWrapper(raw)
        try:
            yield wrapped
            raw.commit()
        except BaseException:
            if not raw.closed:
                raw.rollback()
            raise
        finally:
            self._pool.putconn(raw, close=bool(raw.closed))

    def close(self) -> None:
        self._pool.closeall()


def table_columns_sql() -> str:
    return (
        "SELECT column_name FROM information_schema.columns "
        "WHERE table_schema = current_schema() AND table_name = ?"
    )


def is_postgres_url(url: str) -> bool:
    """Check if a database URL is a PostgreSQL URL."""
    return url.startswith("postgresql://") or url.startswith("postgres://")
