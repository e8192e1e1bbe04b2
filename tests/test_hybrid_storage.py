"""Tests for write-through storage with local fallback."""

from __future__ import annotations

import json

import pytest

from conftest import OWNER, make_topic
from connectivity import UNKNOWN
from errors import RemoteStoreError
from extensions import build_services
from file_storage import DirectoryFileStorage


class TestOnlineWrites:

    def test_save_writes_remote_then_cache(self, services):
        topic = services.storage.create_topic(OWNER, "bio", "Genetics", "DNA and inheritance")

        remote = services.remote.query_one("SELECT * FROM topics WHERE id = ?", (topic["id"],))
        assert remote["name"] == "Genetics"
        local = services.local.query_one("SELECT * FROM topics WHERE id = ?", (topic["id"],))
        assert local["is_dirty"] == 0
        assert local["synced_at"] == topic["synced_at"]
        assert services.queue.pending_count() == 0

    def test_question_options_are_json(self, services):
        topic = services.storage.create_topic(OWNER, "maths", "Algebra")
        q = services.storage.create_question(OWNER, topic["id"], "2+2?", options=["3", "4"],
                                             correct_index=1)
        remote = services.remote.query_one("SELECT * FROM questions WHERE id = ?", (q["id"],))
        assert json.loads(remote["options"]) == ["3", "4"]
        assert remote["user_id"] == OWNER

    def test_remote_rejection_propagates(self, services):
        with pytest.raises(RemoteStoreError):
            services.storage.save("topics", {"user_id": OWNER, "name": None}, OWNER)
        assert services.queue.pending_count() == 0
        assert services.state.is_online is True

    def test_update_missing_row(self, services):
        with pytest.raises(LookupError):
            services.storage.update("topics", "nope", {"name": "x"}, OWNER)

    def test_update_bumps_updated_at(self, services, clock):
        topic = services.storage.create_topic(OWNER, "bio", "Genetics")
        clock.advance(minutes=1)
        updated = services.storage.update("topics", topic["id"], {"name": "Genomics"}, OWNER)
        assert updated["updated_at"] > topic["updated_at"]
        assert services.remote.scalar("SELECT name FROM topics WHERE id = ?", (topic["id"],)) == "Genomics"

    def test_practice_session_with_answers(self, services):
        topic = services.storage.create_topic(OWNER, "bio", "Genetics")
        session = services.storage.record_practice_session(OWNER, topic["id"], [
            {"question_id": "q1", "user_answer": "A", "is_correct": True, "time_taken": 12},
            {"question_id": "q2", "user_answer": "C", "is_correct": False, "time_taken": 30},
        ])
        assert session["total_questions"] == 2
        assert session["correct_answers"] == 1
        assert len(session["answers"]) == 2
        assert services.syncer.remote_count("user_answers", OWNER) == 2

    def test_get_topics_refreshes_cache(self, services):
        make_topic(services.remote, name="Remote only", subject_id="maths")
        topics = services.storage.get_topics(OWNER, "maths")
        assert [t["name"] for t in topics] == ["Remote only"]
        assert services.local.scalar("SELECT COUNT(*) FROM topics") == 1


class TestFallback:

    def test_offline_write_is_durable(self, services, remote_outage):
        topic = services.storage.create_topic(OWNER, "bio", "Genetics")

        assert topic["is_dirty"] == 1
        assert services.state.is_online is False
        entries = services.queue.entries()
        assert len(entries) == 1
        assert entries[0]["operation"] == "insert"
        assert entries[0]["data"]["name"] == "Genetics"
        assert "is_dirty" not in entries[0]["data"]

    def test_offline_reads_come_from_cache(self, services, remote_outage):
        services.storage.create_topic(OWNER, "bio", "Genetics")
        topics = services.storage.get_topics(OWNER)
        assert [t["name"] for t in topics] == ["Genetics"]

    def test_dirty_rows_survive_cache_refresh(self, services, clock):
        make_topic(services.remote, topic_id="t1", name="Remote", clock=clock)
        make_topic(services.local, topic_id="t1", name="Offline edit", clock=clock, dirty=True)

        topics = services.storage.get_topics(OWNER)
        assert topics[0]["name"] == "Offline edit"

    def test_delete_offline_queues_children_first(self, services, remote_switch):
        topic = services.storage.create_topic(OWNER, "bio", "Genetics")
        q = services.storage.create_question(OWNER, topic["id"], "What is DNA?")
        remote_switch.down = True

        services.storage.delete("topics", topic["id"], OWNER)

        ops = [(e["table_name"], e["operation"]) for e in services.queue.entries()]
        assert ops == [("questions", "delete"), ("topics", "delete")]
        assert services.local.scalar("SELECT COUNT(*) FROM questions") == 0

        remote_switch.down = False
        services.queue.drain()
        assert services.remote.scalar("SELECT COUNT(*) FROM questions WHERE id = ?", (q["id"],)) == 0
        assert services.remote.scalar("SELECT COUNT(*) FROM topics") == 0

    def test_online_delete_removes_remote_children(self, services):
        topic = services.storage.create_topic(OWNER, "bio", "Genetics")
        services.storage.create_note(OWNER, topic["id"], content="Notes")
        services.storage.delete("topics", topic["id"], OWNER)
        assert services.remote.scalar("SELECT COUNT(*) FROM notes") == 0
        assert services.local.scalar("SELECT COUNT(*) FROM notes") == 0

    def test_connection_status(self, services, remote_outage):
        services.storage.create_topic(OWNER, "bio", "Genetics")
        status = services.storage.connection_status()
        assert status["isOnline"] is False
        assert status["pendingChanges"] == 1


class TestFiles:

    def test_online_upload_updates_note(self, services, clock):
        topic = services.storage.create_topic(OWNER, "bio", "Genetics")
        note = services.storage.create_note(OWNER, topic["id"], original_filename="cells.pdf")
        stored = services.storage.upload_file(OWNER, topic["id"], b"%PDF-1.4", "cells.pdf",
                                              content_type="application/pdf", note_id=note["id"])

        assert stored["is_local"] is False
        assert stored["size"] == 8
        assert stored["file_url"].endswith(".pdf")
        assert services.remote.scalar(
            "SELECT file_url FROM notes WHERE id = ?", (note["id"],)
        ) == stored["file_url"]

    def test_offline_upload_kept_locally(self, services):
        services.state.mark_offline("probe failed")
        make_topic(services.local, topic_id="t1")
        stored = services.storage.upload_file(OWNER, "t1", b"hello", "hello.txt")
        assert stored["is_local"] is True
        assert open(stored["file_url"], "rb").read() == b"hello"


class TestQueuedRecords:

    def _restart(self, services, sync_config, clock, tmp_path):
        return build_services(sync_config, services.local, clock=clock,
                              file_storage=DirectoryFileStorage(tmp_path / "files"))

    def test_update_after_restart_queues_behind_pending_insert(self, services, remote_switch,
                                                               sync_config, clock, tmp_path):
        remote_switch.down = True
        topic = services.storage.create_topic(OWNER, "bio", "Old name")
        remote_switch.down = False

        restarted = self._restart(services, sync_config, clock, tmp_path)
        try:
            assert restarted.state.state == UNKNOWN
            clock.advance(minutes=5)
            restarted.storage.update("topics", topic["id"], {"name": "New name"}, OWNER)
            assert restarted.queue.pending_count() == 2
            assert restarted.remote.scalar("SELECT COUNT(*) FROM topics") == 0

            assert restarted.monitor.check_now() is True

            assert restarted.queue.pending_count() == 0
            assert restarted.remote.scalar(
                "SELECT name FROM topics WHERE id = ?", (topic["id"],)
            ) == "New name"
            local = restarted.local.query_one("SELECT * FROM topics WHERE id = ?", (topic["id"],))
            assert local["name"] == "New name"
            assert local["is_dirty"] == 0
        finally:
            restarted.remote.close()

    def test_delete_of_queued_record_is_queued(self, services, remote_switch):
        topic = services.storage.create_topic(OWNER, "bio", "Genetics")
        remote_switch.down = True
        services.storage.update("topics", topic["id"], {"name": "Renamed"}, OWNER)
        remote_switch.down = False
        # Back online without the reconnect drain
        services.state._listeners.clear()
        services.state.mark_online()

        services.storage.delete("topics", topic["id"], OWNER)
        ops = [e["operation"] for e in services.queue.entries()]
        assert ops == ["update", "delete"]

        services.queue.drain()
        assert services.queue.entries() == []
        assert services.remote.scalar(
            "SELECT COUNT(*) FROM topics WHERE id = ?", (topic["id"],)
        ) == 0

    def test_write_without_queued_entries_goes_direct(self, services):
        topic = services.storage.create_topic(OWNER, "bio", "Genetics")
        services.storage.update("topics", topic["id"], {"name": "Genomics"}, OWNER)
        assert services.queue.entries() == []
        assert services.queue.has_pending("topics", topic["id"]) is False
