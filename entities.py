"""Declared mapping of every synchronised entity between the two stores.

Each entity lists its fields and where they live (local cache, remote store or
both), plus how ownership is resolved: a direct owner column, or a join
through a parent entity that has one. Notes and questions carry no owner
column in the local cache, so "the user's notes" always means notes whose
topic belongs to the user.

The declaration is checked against both schemas at startup so that column
drift fails loudly instead of being discovered row by row during a sync.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from errors import SchemaDriftError, UnknownTableError

logger = logging.getLogger(__name__)

SYNC_META_COLUMNS = ("synced_at", "is_dirty")


@dataclass(frozen=True)
class Field:
    name: str
    local: bool = True
    remote: bool = True
    json: bool = False
    boolean: bool = False


@dataclass(frozen=True)
class Entity:
    table: str
    fields: tuple[Field, ...]
    owner_column: str | None = None
    parent: str | None = None
    parent_key: str | None = None

    @property
    def local_columns(self) -> list[str]:
        return [f.name for f in self.fields if f.local]

    @property
    def remote_columns(self) -> list[str]:
        return [f.name for f in self.fields if f.remote]

    @property
    def remote_owner_column(self) -> str | None:
        """Owner column that only exists remotely (children of topics)."""
        for f in self.fields:
            if f.name == "user_id" and f.remote and not f.local:
                return f.name
        return None

    def to_local(self, remote_row: Mapping[str, Any]) -> tuple[dict[str, Any], list[str]]:
        """Project a remote row onto the local columns.

        Returns the projected row and the names of remote columns that are not
        declared at all (dropped, caller warns).
        """
        declared = {f.name: f for f in self.fields}
        row: dict[str, Any] = {}
        unknown: list[str] = []
        for key in remote_row.keys():
            f = declared.get(key)
            if f is None:
                unknown.append(key)
                continue
            if not f.local:
                continue
            row[key] = _to_sqlite_value(remote_row[key], f.json)
        return row, unknown

    def to_remote(self, local_row: Mapping[str, Any], owner_id: str | None = None) -> dict[str, Any]:
        """Project a local row onto the remote columns, stripping sync metadata."""
        keys = set(local_row.keys())
        row = {c: local_row[c] for c in self.remote_columns if c in keys}
        for f in self.fields:
            if f.boolean and row.get(f.name) is not None:
                row[f.name] = bool(row[f.name])
        owner_col = self.remote_owner_column
        if owner_col and owner_id is not None:
            row[owner_col] = owner_id
        return row


class _ColumnSource(Protocol):
    def columns(self, table: str) -> set[str]: ...


def _to_sqlite_value(value: Any, is_json: bool) -> Any:
    if is_json and not isinstance(value, (str, type(None))):
        return json.dumps(value)
    if isinstance(value, bool):
        return int(value)
    return value


def _fields(*names: str, remote_only: Iterable[str] = (), json_fields: Iterable[str] = (),
            bool_fields: Iterable[str] = ()) -> tuple[Field, ...]:
    remote_only = set(remote_only)
    json_fields = set(json_fields)
    bool_fields = set(bool_fields)
    out = [Field(n, json=n in json_fields, boolean=n in bool_fields) for n in names]
    out.extend(Field(n, local=False) for n in remote_only)
    return tuple(out)


TOPICS = Entity(
    "topics",
    _fields("id", "user_id", "subject_id", "name", "description", "created_at", "updated_at"),
    owner_column="user_id",
)

NOTES = Entity(
    "notes",
    _fields("id", "topic_id", "content", "original_filename", "file_url",
            "created_at", "updated_at", remote_only=("user_id",)),
    parent="topics",
    parent_key="topic_id",
)

QUESTIONS = Entity(
    "questions",
    _fields("id", "topic_id", "question", "answer", "type", "options", "correct_index",
            "explanation", "created_at", "updated_at",
            remote_only=("user_id",), json_fields=("options",)),
    parent="topics",
    parent_key="topic_id",
)

PRACTICE_SESSIONS = Entity(
    "practice_sessions",
    _fields("id", "user_id", "topic_id", "total_questions", "correct_answers",
            "created_at", "updated_at"),
    owner_column="user_id",
)

USER_ANSWERS = Entity(
    "user_answers",
    _fields("id", "practice_session_id", "question_id", "user_answer", "is_correct",
            "time_taken", "created_at", "updated_at", bool_fields=("is_correct",)),
    parent="practice_sessions",
    parent_key="practice_session_id",
)

# Parents before children: pushes and pulls run in this order.
SYNC_TABLES: tuple[str, ...] = ("topics", "notes", "questions", "practice_sessions", "user_answers")

ENTITIES: dict[str, Entity] = {
    e.table: e for e in (TOPICS, NOTES, QUESTIONS, PRACTICE_SESSIONS, USER_ANSWERS)
}


def get_entity(table: str) -> Entity:
    try:
        return ENTITIES[table]
    except KeyError:
        raise UnknownTableError(table) from None


def owned_sql(entity: Entity, select: str, where: str = "", order: str = "") -> str:
    """SELECT restricted to one owner; the owner id is the first parameter.

    The entity is aliased ``t``; child entities join their parent as ``p``.
    """
    if entity.owner_column:
        sql = f"SELECT {select} FROM {entity.table} t WHERE t.{entity.owner_column} = ?"
    else:
        parent = get_entity(entity.parent)
        sql = (
            f"SELECT {select} FROM {entity.table} t "
            f"JOIN {parent.table} p ON t.{entity.parent_key} = p.id "
            f"WHERE p.{parent.owner_column} = ?"
        )
    if where:
        sql += f" AND {where}"
    if order:
        sql += f" ORDER BY {order}"
    return sql


def select_list(columns: Iterable[str]) -> str:
    return ", ".join(f"t.{c}" for c in columns)


def validate_local(store: _ColumnSource) -> None:
    """Raise SchemaDriftError if a declared local column is missing."""
    problems = []
    for entity in ENTITIES.values():
        actual = store.columns(entity.table)
        expected = set(entity.local_columns) | set(SYNC_META_COLUMNS)
        missing = sorted(expected - actual)
        if missing:
            problems.append(f"local {entity.table}: missing {', '.join(missing)}")
    if problems:
        raise SchemaDriftError("; ".join(problems))


def validate_remote(store: _ColumnSource) -> None:
    """Raise SchemaDriftError if a declared remote column is missing.

    Extra remote columns are allowed; they are dropped on pull.
    """
    problems = []
    for entity in ENTITIES.values():
        actual = store.columns(entity.table)
        missing = sorted(set(entity.remote_columns) - actual)
        if missing:
            problems.append(f"remote {entity.table}: missing {', '.join(missing)}")
        extra = sorted(actual - set(entity.remote_columns))
        if extra:
            logger.info("Remote %s has undeclared columns (ignored): %s", entity.table, ", ".join(extra))
    if problems:
        raise SchemaDriftError("; ".join(problems))
