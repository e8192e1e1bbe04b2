"""Tests for per-table pull/push/merge between the two stores."""

from __future__ import annotations

import pytest

from conftest import OTHER_OWNER, OWNER, make_topic
from errors import RemoteUnavailableError, UnknownTableError


def _note(store, note_id, topic_id, owner=OWNER, remote=True, ts="2026-03-01T00:00:00.000000+00:00"):
    row = {"id": note_id, "topic_id": topic_id, "content": f"note {note_id}",
           "created_at": ts, "updated_at": ts}
    if remote:
        row["user_id"] = owner
    store.upsert("notes", row)


class TestOwnership:

    def test_pull_only_copies_owned_rows(self, services):
        s = services.syncer
        make_topic(services.remote, OWNER, "Algebra", topic_id="ta")
        make_topic(services.remote, OWNER, "Calculus", topic_id="tc")
        make_topic(services.remote, OTHER_OWNER, "Poetry", topic_id="tp")
        _note(services.remote, "n1", "ta")
        _note(services.remote, "n2", "tc")
        _note(services.remote, "n3", "tp", owner=OTHER_OWNER)

        assert s.pull_from_remote("topics", OWNER) == 2
        assert s.pull_from_remote("notes", OWNER) == 2

        assert s.local_ids("topics", OWNER) == {"ta", "tc"}
        assert s.local_ids("notes", OWNER) == {"n1", "n2"}
        assert s.local_count("topics", OTHER_OWNER) == 0
        assert s.local_count("notes", OTHER_OWNER) == 0

    def test_child_counts_follow_parent_owner(self, services):
        make_topic(services.local, OWNER, "Algebra", topic_id="ta")
        make_topic(services.local, OTHER_OWNER, "Poetry", topic_id="tp")
        _note(services.local, "n1", "ta", remote=False)
        _note(services.local, "n2", "tp", remote=False)
        assert services.syncer.local_count("notes", OWNER) == 1
        assert services.syncer.local_count("notes", OTHER_OWNER) == 1

    def test_unknown_table(self, services):
        with pytest.raises(UnknownTableError):
            services.syncer.pull_from_remote("users", OWNER)


class TestPull:

    def test_merge_from_remote_copies_only_missing(self, services):
        make_topic(services.remote, topic_id="t1", name="One")
        make_topic(services.remote, topic_id="t2", name="Two")
        make_topic(services.local, topic_id="t1", name="One (local)", dirty=True)

        assert services.syncer.merge_from_remote("topics", OWNER) == 1
        assert services.local.scalar("SELECT name FROM topics WHERE id = 't1'") == "One (local)"
        assert services.local.scalar("SELECT is_dirty FROM topics WHERE id = 't2'") == 0

    def test_pull_keeps_newer_dirty_local_row(self, services, clock):
        make_topic(services.remote, topic_id="t1", name="Remote", clock=clock)
        clock.advance(minutes=5)
        make_topic(services.local, topic_id="t1", name="Local edit", clock=clock, dirty=True)

        assert services.syncer.pull_from_remote("topics", OWNER) == 0
        assert services.local.scalar("SELECT name FROM topics WHERE id = 't1'") == "Local edit"

    def test_pull_overwrites_older_dirty_local_row(self, services, clock):
        make_topic(services.local, topic_id="t1", name="Local edit", clock=clock, dirty=True)
        clock.advance(minutes=5)
        make_topic(services.remote, topic_id="t1", name="Remote", clock=clock)

        assert services.syncer.pull_from_remote("topics", OWNER) == 1
        assert services.local.scalar("SELECT name FROM topics WHERE id = 't1'") == "Remote"

    def test_undeclared_remote_column_is_dropped(self, services):
        services.remote.execute("ALTER TABLE topics ADD COLUMN colour TEXT")
        make_topic(services.remote, topic_id="t1", colour="teal")

        assert services.syncer.pull_from_remote("topics", OWNER) == 1
        assert "colour" not in services.local.columns("topics")

    def test_json_options_round_trip(self, services):
        make_topic(services.remote, topic_id="t1")
        services.remote.upsert("questions", {
            "id": "q1", "topic_id": "t1", "user_id": OWNER, "question": "2+2?",
            "type": "multiple_choice", "options": '["3", "4"]', "correct_index": 1,
        })
        services.syncer.pull_from_remote("topics", OWNER)
        services.syncer.pull_from_remote("questions", OWNER)
        assert services.local.scalar("SELECT options FROM questions WHERE id = 'q1'") == '["3", "4"]'


class TestPush:

    def test_push_never_synced_rows_once(self, services, clock):
        make_topic(services.local, topic_id="t1", clock=clock)
        make_topic(services.local, topic_id="t2", name="Two", clock=clock)

        assert services.syncer.push_to_remote("topics", OWNER) == 2
        assert services.syncer.push_to_remote("topics", OWNER) == 0
        assert services.syncer.dirty_count("topics", OWNER) == 0
        assert services.remote.scalar("SELECT COUNT(*) FROM topics") == 2

    def test_stale_rows_are_pushed_again(self, services, clock):
        make_topic(services.local, topic_id="t1", clock=clock)
        services.syncer.push_to_remote("topics", OWNER)

        clock.advance(hours=2)
        assert services.syncer.push_to_remote("topics", OWNER) == 1

    def test_force_pushes_everything(self, services, clock):
        make_topic(services.local, topic_id="t1", clock=clock)
        services.syncer.push_to_remote("topics", OWNER)
        assert services.syncer.push_to_remote("topics", OWNER, force=True) == 1

    def test_child_push_sets_remote_owner(self, services, clock):
        make_topic(services.local, topic_id="t1", clock=clock)
        _note(services.local, "n1", "t1", remote=False)

        services.syncer.push_to_remote("topics", OWNER)
        assert services.syncer.push_to_remote("notes", OWNER) == 1
        assert services.remote.scalar("SELECT user_id FROM notes WHERE id = 'n1'") == OWNER

    def test_merge_to_remote_pushes_missing_only(self, services, clock):
        make_topic(services.remote, topic_id="t1", clock=clock)
        make_topic(services.local, topic_id="t1", clock=clock)
        make_topic(services.local, topic_id="t2", name="Two", clock=clock)

        assert services.syncer.merge_to_remote("topics", OWNER) == 1
        assert services.syncer.remote_ids("topics", OWNER) == {"t1", "t2"}

    def test_rejected_row_is_skipped(self, services, clock):
        services.remote.execute("CREATE UNIQUE INDEX uq_topic_name ON topics(user_id, name)")
        make_topic(services.remote, topic_id="existing", name="Dup", clock=clock)
        make_topic(services.local, topic_id="t1", name="Dup", clock=clock)
        make_topic(services.local, topic_id="t2", name="Fine", clock=clock)

        assert services.syncer.push_to_remote("topics", OWNER) == 1
        assert services.syncer.dirty_count("topics", OWNER) == 0
        assert services.local.scalar("SELECT synced_at FROM topics WHERE id = 't1'") is None

    def test_unreachable_remote_aborts_pass(self, services, clock, remote_switch):
        for i in range(4):
            make_topic(services.local, topic_id=f"t{i}", name=f"Topic {i}", clock=clock)
        remote_switch.down = True

        with pytest.raises(RemoteUnavailableError):
            services.syncer.push_to_remote("topics", OWNER)
        assert services.state.is_online is False
