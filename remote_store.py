"""Remote (authoritative) store.

Talks to a Postgres database (Supabase in production) through the pg_compat
pool. A plain file path is accepted too and opens a SQLite mirror, which is
what desktop builds, development and the test suite use.

All driver errors leave this module translated: a transient failure becomes
RemoteUnavailableError, anything else RemoteStoreError. Idempotent calls are
retried; ``increment`` never is.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, TypeVar

from clock import isoformat
from database import upsert_sql
from errors import AmbiguousWriteError, RemoteStoreError, RemoteUnavailableError
from pg_compat import PgPool, is_postgres_url, table_columns_sql
from resilience import TransientRemoteError, is_transient, remote_retrying

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Remote-side schema. Notes and questions carry the owner column directly.
REMOTE_SCHEMA = """
CREATE TABLE IF NOT EXISTS user_profiles (
    id TEXT PRIMARY KEY,
    email TEXT,
    full_name TEXT,
    subscription_tier TEXT NOT NULL DEFAULT 'free',
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS topics (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    subject_id TEXT,
    name TEXT NOT NULL,
    description TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    topic_id TEXT NOT NULL,
    user_id TEXT,
    content TEXT,
    original_filename TEXT,
    file_url TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS questions (
    id TEXT PRIMARY KEY,
    topic_id TEXT NOT NULL,
    user_id TEXT,
    question TEXT NOT NULL,
    answer TEXT,
    type TEXT NOT NULL DEFAULT 'multiple_choice',
    options TEXT,
    correct_index INTEGER,
    explanation TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS practice_sessions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    topic_id TEXT,
    total_questions INTEGER NOT NULL DEFAULT 0,
    correct_answers INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS user_answers (
    id TEXT PRIMARY KEY,
    practice_session_id TEXT NOT NULL,
    question_id TEXT,
    user_answer TEXT,
    is_correct BOOLEAN,
    time_taken INTEGER,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS user_usage (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    month_year TEXT NOT NULL,
    questions_used INTEGER NOT NULL DEFAULT 0,
    storage_used INTEGER NOT NULL DEFAULT 0,
    topics_created INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    updated_at TEXT,
    UNIQUE(user_id, month_year)
)
"""


def _normalise(value: Any) -> Any:
    if isinstance(value, datetime):
        return isoformat(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


class _SqlitePool:
    """Single lock-guarded connection standing in for a pool."""

    def __init__(self, path: str, timeout: float):
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False, timeout=timeout)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._lock = threading.RLock()

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except BaseException:
                self._conn.rollback()
                raise

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class RemoteStore:
    """Query surface over the remote database, safe to share across threads."""

    def __init__(self, url: str, pool_size: int = 10, statement_timeout: float = 10,
                 retry_attempts: int = 3):
        self.url = url
        self.dialect = "postgres" if is_postgres_url(url) else "sqlite"
        self.pool_size = pool_size
        self.statement_timeout = statement_timeout
        self.retry_attempts = retry_attempts
        self._pool: PgPool | _SqlitePool | None = None
        self._pool_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _get_pool(self) -> PgPool | _SqlitePool:
        with self._pool_lock:
            if self._pool is None:
                if self.dialect == "postgres":
                    self._pool = PgPool(
                        self.url,
                        size=self.pool_size,
                        connect_timeout=max(1, int(self.statement_timeout)),
                        statement_timeout=self.statement_timeout,
                    )
                else:
                    path = self.url[len("sqlite:///"):] if self.url.startswith("sqlite:///") else self.url
                    self._pool = _SqlitePool(path, timeout=self.statement_timeout)
            return self._pool

    def _connection(self):
        return self._get_pool().connection()

    def _run(self, fn: Callable[[Any], T], idempotent: bool = True) -> T:
        def attempt() -> T:
            try:
                with self._connection() as conn:
                    return fn(conn)
            except RemoteStoreError:
                raise
            except Exception as exc:
                if is_transient(exc):
                    raise TransientRemoteError(str(exc)) from exc
                raise RemoteStoreError(str(exc)) from exc

        try:
            if idempotent and self.retry_attempts > 1:
                return remote_retrying(self.retry_attempts)(attempt)
            return attempt()
        except TransientRemoteError as exc:
            raise RemoteUnavailableError(str(exc)) from exc.__cause__

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        def run(conn):
            rows = conn.execute(sql, tuple(params)).fetchall()
            return [{k: _normalise(r[k]) for k in r.keys()} for r in rows]
        return self._run(run)

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        def run(conn):
            row = conn.execute(sql, tuple(params)).fetchone()
            return _normalise(row[0]) if row is not None else None
        return self._run(run)

    def execute(self, sql: str, params: Sequence[Any] = (), idempotent: bool = True) -> int:
        return self._run(lambda conn: conn.execute(sql, tuple(params)).rowcount, idempotent)

    def upsert(self, table: str, row: Mapping[str, Any], conflict: Sequence[str] = ("id",),
               update: bool = True) -> int:
        """Insert or update by key. Safe to repeat."""
        columns = list(row.keys())
        return self.execute(upsert_sql(table, columns, conflict, update), [row[c] for c in columns])

    def delete(self, table: str, record_id: str) -> int:
        """Delete by id. Deleting a missing row is not an error."""
        return self.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))

    def increment(self, table: str, key: Mapping[str, Any], deltas: Mapping[str, int],
                  updated_at: str | None = None) -> int:
        """Atomically add ``deltas`` to counter columns of the row matching ``key``.

        Not retried: a retry after an ambiguous failure could apply the
        increment twice. A connection lost once the statement was sent raises
        AmbiguousWriteError.
        """
        sets = [f"{col} = {col} + ?" for col in deltas]
        params: list[Any] = list(deltas.values())
        if updated_at is not None:
            sets.append("updated_at = ?")
            params.append(updated_at)
        where = " AND ".join(f"{col} = ?" for col in key)
        params.extend(key.values())
        sql = f"UPDATE {table} SET {', '.join(sets)} WHERE {where}"
        sent = False

        def run(conn):
            nonlocal sent
            sent = True
            return conn.execute(sql, tuple(params)).rowcount

        try:
            return self._run(run, idempotent=False)
        except RemoteUnavailableError as exc:
            if sent:
                raise AmbiguousWriteError(str(exc)) from exc
            raise

    def columns(self, table: str) -> set[str]:
        if self.dialect == "postgres":
            return {r["column_name"] for r in self.query(table_columns_sql(), (table,))}
        return {r["name"] for r in self.query(f"PRAGMA table_info({table})")}

    def ping(self) -> None:
        """Cheap read used by the connectivity probe. Raises on failure."""
        self._run(lambda conn: conn.execute("SELECT id FROM user_profiles LIMIT 1").fetchall(),
                  idempotent=False)

    def init_schema(self) -> None:
        """Create the remote tables (mirrors and tests only)."""
        self._run(lambda conn: conn.executescript(REMOTE_SCHEMA))
        logger.info("Remote schema ready (%s)", self.dialect)

    def close(self) -> None:
        with self._pool_lock:
            if self._pool is not None:
                self._pool.close()
                self._pool = None
