"""
SQLite local store for Study Sync.

One long-lived sqlite3 connection per process in WAL mode with foreign keys
on, shared by request threads and scheduler jobs behind a re-entrant lock.
A schema_version table handles migrations.

Every cached row carries ``synced_at`` (last successful push/pull) and
``is_dirty`` (changed locally, not yet confirmed remotely).
"""

from __future__ import annotations

import fcntl
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from flask import current_app

logger = logging.getLogger(__name__)


SCHEMA = """
-- Migration tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_profiles (
    id TEXT PRIMARY KEY,
    email TEXT,
    full_name TEXT,
    subscription_tier TEXT NOT NULL DEFAULT 'free',
    created_at TEXT,
    updated_at TEXT,
    synced_at TEXT,
    is_dirty INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS topics (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    subject_id TEXT,
    name TEXT NOT NULL,
    description TEXT,
    created_at TEXT,
    updated_at TEXT,
    synced_at TEXT,
    is_dirty INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_topics_user ON topics(user_id, subject_id);

CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    topic_id TEXT NOT NULL REFERENCES topics(id) ON DELETE CASCADE,
    content TEXT,
    original_filename TEXT,
    file_url TEXT,
    created_at TEXT,
    updated_at TEXT,
    synced_at TEXT,
    is_dirty INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_notes_topic ON notes(topic_id);

CREATE TABLE IF NOT EXISTS questions (
    id TEXT PRIMARY KEY,
    topic_id TEXT NOT NULL REFERENCES topics(id) ON DELETE CASCADE,
    question TEXT NOT NULL,
    answer TEXT,
    type TEXT NOT NULL DEFAULT 'multiple_choice',
    options TEXT,
    correct_index INTEGER,
    explanation TEXT,
    created_at TEXT,
    updated_at TEXT,
    synced_at TEXT,
    is_dirty INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_questions_topic ON questions(topic_id);

CREATE TABLE IF NOT EXISTS practice_sessions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    topic_id TEXT REFERENCES topics(id) ON DELETE SET NULL,
    total_questions INTEGER NOT NULL DEFAULT 0,
    correct_answers INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    updated_at TEXT,
    synced_at TEXT,
    is_dirty INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_sessions_user ON practice_sessions(user_id);

CREATE TABLE IF NOT EXISTS user_answers (
    id TEXT PRIMARY KEY,
    practice_session_id TEXT NOT NULL REFERENCES practice_sessions(id) ON DELETE CASCADE,
    question_id TEXT,
    user_answer TEXT,
    is_correct INTEGER,
    time_taken INTEGER,
    created_at TEXT,
    updated_at TEXT,
    synced_at TEXT,
    is_dirty INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_answers_session ON user_answers(practice_session_id);

CREATE TABLE IF NOT EXISTS user_usage (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    month_year TEXT NOT NULL,
    questions_used INTEGER NOT NULL DEFAULT 0,
    storage_used INTEGER NOT NULL DEFAULT 0,
    topics_created INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    updated_at TEXT,
    synced_at TEXT,
    is_dirty INTEGER NOT NULL DEFAULT 0,
    UNIQUE(user_id, month_year)
);

CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    data TEXT,
    created_at TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT
);
"""


MIGRATIONS: list[tuple[int, str]] = [
    # Migration 1: pending usage deltas recorded while the remote is unreachable
    (1, """
        ALTER TABLE user_usage ADD COLUMN pending_questions INTEGER NOT NULL DEFAULT 0;
        ALTER TABLE user_usage ADD COLUMN pending_storage INTEGER NOT NULL DEFAULT 0;
        ALTER TABLE user_usage ADD COLUMN pending_topics INTEGER NOT NULL DEFAULT 0;
    """),
    # Migration 2: local accounts linked to cloud identities
    (2, """
        CREATE TABLE IF NOT EXISTS local_accounts (
            id TEXT PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            display_name TEXT,
            cloud_user_id TEXT,
            sync_mode TEXT NOT NULL DEFAULT 'bidirectional',
            last_sync TEXT,
            created_at TEXT NOT NULL
        );
    """),
    # Migration 3: per-record queue lookups
    (3, """
        CREATE INDEX IF NOT EXISTS idx_sync_queue_record ON sync_queue(table_name, record_id);
    """),
]


def upsert_sql(table: str, columns: Sequence[str], conflict: Sequence[str] = ("id",),
               update: bool = True) -> str:
    """INSERT ... ON CONFLICT DO UPDATE, valid for both SQLite and PostgreSQL.

    Never INSERT OR REPLACE: that deletes the old row first and cascades to
    its children.
    """
    placeholders = ", ".join("?" for _ in columns)
    sql = (
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
        f"ON CONFLICT({', '.join(conflict)}) DO "
    )
    updates = [c for c in columns if c not in conflict]
    if not update or not updates:
        return sql + "NOTHING"
    return sql + "UPDATE SET " + ", ".join(f"{c} = excluded.{c}" for c in updates)


def _statements(script: str) -> list[str]:
    return [s.strip() for s in script.split(";") if s.strip()]


class LocalStore:
    """Thread-safe wrapper around the local SQLite database."""

    def __init__(self, path: str | Path):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False, timeout=30)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._lock = threading.RLock()
        self._depth = 0

    # ------------------------------------------------------------------
    # Transactions and queries
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[LocalStore]:
        """Hold the store lock and commit (or roll back) on exit.

        Nested transactions join the outermost one.
        """
        with self._lock:
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self._conn.rollback()
                raise
            self._depth -= 1
            if self._depth == 0:
                self._conn.commit()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a write statement and return the affected row count."""
        with self.transaction():
            return self._conn.execute(sql, tuple(params)).rowcount

    def insert(self, sql: str, params: Sequence[Any] = ()) -> int | None:
        with self.transaction():
            return self._conn.execute(sql, tuple(params)).lastrowid

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._conn.execute(sql, tuple(params)).fetchall()]

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(sql, tuple(params)).fetchone()
        return dict(row) if row is not None else None

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        with self._lock:
            row = self._conn.execute(sql, tuple(params)).fetchone()
        return row[0] if row is not None else None

    def upsert(self, table: str, row: Mapping[str, Any], conflict: Sequence[str] = ("id",),
               update: bool = True) -> int:
        columns = list(row.keys())
        sql = upsert_sql(table, columns, conflict, update)
        return self.execute(sql, [row[c] for c in columns])

    def columns(self, table: str) -> set[str]:
        with self._lock:
            return {r["name"] for r in self._conn.execute(f"PRAGMA table_info({table})").fetchall()}

    def ids(self, table: str, ids: Iterable[str]) -> set[str]:
        """Subset of ``ids`` present in ``table``."""
        wanted = list(ids)
        found: set[str] = set()
        for i in range(0, len(wanted), 500):
            chunk = wanted[i:i + 500]
            marks = ", ".join("?" for _ in chunk)
            found.update(
                r["id"] for r in self.query(f"SELECT id FROM {table} WHERE id IN ({marks})", chunk)
            )
        return found

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def init_schema(self) -> None:
        """Create tables and apply unapplied migrations.

        Uses file-based locking so that several workers starting at once do
        not race on the same database file.
        """
        lock_file = None
        if self.path != ":memory:":
            lock_path = Path(self.path).with_suffix(".migration.lock")
            try:
                lock_file = open(lock_path, "w")
                fcntl.flock(lock_file, fcntl.LOCK_EX)
            except OSError:
                lock_file = None

        try:
            with self.transaction():
                self._conn.executescript(SCHEMA)
            self._run_migrations()
        finally:
            if lock_file:
                fcntl.flock(lock_file, fcntl.LOCK_UN)
                lock_file.close()

    def _run_migrations(self) -> None:
        applied = {r["version"] for r in self.query("SELECT version FROM schema_version")}
        for version, script in MIGRATIONS:
            if version in applied:
                continue
            with self.transaction():
                for stmt in _statements(script):
                    try:
                        self._conn.execute(stmt)
                    except sqlite3.OperationalError as e:
                        err_msg = str(e).lower()
                        if "duplicate column" not in err_msg and "already exists" not in err_msg:
                            raise
                self._conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (version, datetime.now(timezone.utc).isoformat()),
                )
            logger.info("Applied local migration %d", version)

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def get_local_store() -> LocalStore:
    """Return the application's LocalStore."""
    return current_app.extensions["local_store"]


def init_app(app) -> LocalStore:
    """Open the local store, create its schema and register it on the app."""
    store = LocalStore(app.config["LOCAL_DATABASE"])
    store.init_schema()
    app.extensions["local_store"] = store
    return store
