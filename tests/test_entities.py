"""Tests for the declared entity mapping and owner-scoped SQL."""

from __future__ import annotations

import pytest

from entities import (
    ENTITIES,
    NOTES,
    SYNC_TABLES,
    TOPICS,
    USER_ANSWERS,
    get_entity,
    owned_sql,
    select_list,
    validate_local,
    validate_remote,
)
from errors import SchemaDriftError, UnknownTableError


class _Columns:
    def __init__(self, tables):
        self.tables = tables

    def columns(self, table):
        return set(self.tables.get(table, ()))


class TestOwnedSql:

    def test_direct_owner(self):
        sql = owned_sql(TOPICS, "COUNT(*)")
        assert sql == "SELECT COUNT(*) FROM topics t WHERE t.user_id = ?"

    def test_child_joins_parent(self):
        sql = owned_sql(NOTES, "t.id", "t.is_dirty = 1", order="t.created_at")
        assert "JOIN topics p ON t.topic_id = p.id" in sql
        assert "WHERE p.user_id = ?" in sql
        assert sql.endswith("AND t.is_dirty = 1 ORDER BY t.created_at")

    def test_answers_join_sessions(self):
        sql = owned_sql(USER_ANSWERS, "t.*")
        assert "JOIN practice_sessions p ON t.practice_session_id = p.id" in sql

    def test_select_list(self):
        assert select_list(["id", "name"]) == "t.id, t.name"


class TestEntityMapping:

    def test_sync_order_parents_first(self):
        assert SYNC_TABLES.index("topics") < SYNC_TABLES.index("notes")
        assert SYNC_TABLES.index("practice_sessions") < SYNC_TABLES.index("user_answers")
        assert set(SYNC_TABLES) == set(ENTITIES)

    def test_unknown_table(self):
        with pytest.raises(UnknownTableError, match="Unknown sync table: users"):
            get_entity("users")

    def test_notes_owner_is_remote_only(self):
        assert "user_id" not in NOTES.local_columns
        assert "user_id" in NOTES.remote_columns
        assert NOTES.remote_owner_column == "user_id"
        assert TOPICS.remote_owner_column is None

    def test_to_local_drops_remote_only_and_unknown(self):
        row, unknown = NOTES.to_local({
            "id": "n1", "topic_id": "t1", "user_id": "u1", "content": "x",
            "created_at": None, "updated_at": None, "colour": "red",
        })
        assert "user_id" not in row
        assert "colour" not in row
        assert unknown == ["colour"]

    def test_to_local_serialises_json_and_bool(self):
        q, _ = get_entity("questions").to_local({"id": "q1", "options": ["a", "b"]})
        assert q["options"] == '["a", "b"]'
        a, _ = USER_ANSWERS.to_local({"id": "a1", "is_correct": True})
        assert a["is_correct"] == 1

    def test_to_remote_sets_owner_and_strips_metadata(self):
        payload = NOTES.to_remote(
            {"id": "n1", "topic_id": "t1", "content": "x", "synced_at": "s", "is_dirty": 1},
            "u1",
        )
        assert payload == {"id": "n1", "topic_id": "t1", "content": "x", "user_id": "u1"}

    def test_to_remote_booleans(self):
        payload = USER_ANSWERS.to_remote({"id": "a1", "is_correct": 0}, "u1")
        assert payload["is_correct"] is False
        assert "user_id" not in payload


class TestValidation:

    def test_fresh_local_schema_matches(self, local):
        validate_local(local)

    def test_fresh_remote_schema_matches(self, remote):
        validate_remote(remote)

    def test_missing_local_column(self):
        tables = {e.table: set(e.local_columns) | {"synced_at", "is_dirty"} for e in ENTITIES.values()}
        tables["topics"].discard("subject_id")
        with pytest.raises(SchemaDriftError, match="local topics: missing subject_id"):
            validate_local(_Columns(tables))

    def test_missing_remote_column(self):
        tables = {e.table: set(e.remote_columns) for e in ENTITIES.values()}
        tables["notes"].discard("user_id")
        with pytest.raises(SchemaDriftError, match="remote notes: missing user_id"):
            validate_remote(_Columns(tables))

    def test_extra_remote_columns_allowed(self):
        tables = {e.table: set(e.remote_columns) | {"embedding"} for e in ENTITIES.values()}
        validate_remote(_Columns(tables))
