"""Tests for the auto-sync orchestrator: planning, convergence and guards."""

from __future__ import annotations

import pytest

from auto_sync import (
    CHECK_TIMESTAMPS,
    MERGE_PULL,
    MERGE_PUSH,
    NO_ACTION,
    PULL,
    PUSH,
    classify,
)
from clock import isoformat
from conftest import EMAIL, OTHER_OWNER, OWNER, make_topic
from errors import UnknownTableError


def _question(store, question_id, text, created_at, updated_at=None, remote=False, dirty=None):
    row = {
        "id": question_id, "topic_id": "t1", "question": text,
        "created_at": created_at, "updated_at": updated_at or created_at,
    }
    if remote:
        row["user_id"] = OWNER
    if dirty is not None:
        row["is_dirty"] = 1 if dirty else 0
    store.upsert("questions", row)


@pytest.mark.parametrize("local_n, remote_n, action", [
    (0, 0, NO_ACTION),
    (0, 3, PULL),
    (3, 0, PUSH),
    (4, 2, MERGE_PUSH),
    (2, 4, MERGE_PULL),
    (3, 3, CHECK_TIMESTAMPS),
])
def test_classify(local_n, remote_n, action):
    assert classify(local_n, remote_n) == action


class TestPerformAutoSync:

    def test_empty_local_pulls_everything(self, services):
        for name in ("Algebra", "Geometry", "Statistics"):
            make_topic(services.remote, name=name, subject_id="maths")
        make_topic(services.remote, OTHER_OWNER, name="Poetry")

        result = services.orchestrator.perform_auto_sync(OWNER, email=EMAIL)

        assert result.success is True
        assert result.plan["topics"] == PULL
        assert result.plan["notes"] == NO_ACTION
        assert result.pulled == 3
        assert result.total_synced == 3
        assert services.syncer.local_count("topics", OWNER) == 3
        assert services.syncer.local_count("topics", OTHER_OWNER) == 0

    def test_divergent_stores_converge(self, services, clock):
        for i in range(4):
            make_topic(services.local, name=f"Local {i}", clock=clock, dirty=True)
        for i in range(2):
            make_topic(services.remote, name=f"Remote {i}", clock=clock)

        result = services.orchestrator.perform_auto_sync(OWNER)

        assert result.plan["topics"] == MERGE_PUSH
        assert result.pushed == 4
        assert result.pulled == 2
        assert services.syncer.local_count("topics", OWNER) == 6
        assert services.syncer.remote_count("topics", OWNER) == 6
        assert services.syncer.dirty_count("topics", OWNER) == 0

    def test_equal_counts_with_drift_merge_both_ways(self, services, clock):
        for i in range(3):
            make_topic(services.local, name=f"Local {i}", clock=clock, dirty=True)
        clock.advance(hours=3)
        for i in range(3):
            make_topic(services.remote, name=f"Remote {i}", clock=clock)

        result = services.orchestrator.perform_auto_sync(OWNER)

        assert result.plan["topics"] == CHECK_TIMESTAMPS
        assert services.syncer.local_count("topics", OWNER) == 6
        assert services.syncer.remote_count("topics", OWNER) == 6

    def test_divergent_questions_merge_both_ways(self, services, clock):
        created = isoformat(clock())
        make_topic(services.local, topic_id="t1", clock=clock)
        make_topic(services.remote, topic_id="t1", clock=clock)
        for qid in ("s1", "s2", "s3"):
            _question(services.local, qid, "What is DNA?", created, dirty=False)
            _question(services.remote, qid, "What is DNA?", created, remote=True)
        clock.advance(minutes=10)
        edited = isoformat(clock())
        _question(services.local, "s3", "What is RNA?", created, updated_at=edited, dirty=True)
        _question(services.local, "a", "What is a gene?", edited, dirty=True)
        _question(services.local, "b", "What is a codon?", edited, dirty=True)
        _question(services.remote, "c", "What is a ribosome?", created, remote=True)

        result = services.orchestrator.perform_auto_sync(OWNER)

        assert result.errors == []
        assert result.plan["questions"] == MERGE_PUSH
        assert result.results["questions"]["pulled"] == 1
        assert result.results["questions"]["pushed"] == 3
        assert services.syncer.local_count("questions", OWNER) == 6
        assert services.syncer.remote_count("questions", OWNER) == 6
        assert services.syncer.dirty_count("questions", OWNER) == 0
        assert services.remote.scalar("SELECT question FROM questions WHERE id = 's3'") == "What is RNA?"
        assert services.remote.scalar("SELECT user_id FROM questions WHERE id = 'a'") == OWNER

    def test_equal_counts_without_drift_converge(self, services, clock):
        make_topic(services.local, topic_id="shared", name="Shared", clock=clock)
        make_topic(services.remote, topic_id="shared", name="Shared", clock=clock)
        make_topic(services.local, topic_id="a", name="Local only", clock=clock, dirty=True)
        make_topic(services.remote, topic_id="c", name="Remote only", clock=clock)

        result = services.orchestrator.perform_auto_sync(OWNER)

        assert result.plan["topics"] == CHECK_TIMESTAMPS
        assert result.errors == []
        assert services.syncer.local_count("topics", OWNER) == 3
        assert services.syncer.remote_count("topics", OWNER) == 3
        assert services.syncer.dirty_count("topics", OWNER) == 0

    def test_push_restores_clean_rows_to_empty_remote(self, services, clock):
        make_topic(services.local, topic_id="t1", clock=clock, dirty=False,
                   synced_at=isoformat(clock()))

        result = services.orchestrator.perform_auto_sync(OWNER)

        assert result.plan["topics"] == PUSH
        assert result.pushed == 1
        assert services.syncer.remote_count("topics", OWNER) == 1

    def test_second_run_is_a_no_op(self, services, clock):
        make_topic(services.local, name="Local", clock=clock, dirty=True)
        services.orchestrator.perform_auto_sync(OWNER)

        again = services.orchestrator.perform_auto_sync(OWNER)
        assert again.plan["topics"] == CHECK_TIMESTAMPS
        assert again.total_synced == 0

    def test_creates_remote_profile(self, services):
        services.orchestrator.perform_auto_sync(OWNER, email=EMAIL, full_name="Sam")
        profile = services.remote.query_one("SELECT * FROM user_profiles WHERE id = ?", (OWNER,))
        assert profile["email"] == EMAIL
        assert profile["subscription_tier"] == "free"
        assert services.local.scalar("SELECT email FROM user_profiles WHERE id = ?", (OWNER,)) == EMAIL

    def test_offline_aborts_without_partial_work(self, services, clock, remote_outage):
        make_topic(services.local, name="Local", clock=clock, dirty=True)

        result = services.orchestrator.perform_auto_sync(OWNER)

        assert result.success is False
        assert result.errors[0]["table"] == "*"
        assert result.plan == {}
        assert services.state.is_online is False

    def test_concurrent_run_for_same_owner_is_skipped(self, services):
        lock = services.orchestrator._owner_lock(OWNER)
        lock.acquire()
        try:
            result = services.orchestrator.perform_auto_sync(OWNER)
            other = services.orchestrator.perform_auto_sync(OTHER_OWNER)
        finally:
            lock.release()
        assert result.skipped is True
        assert other.skipped is False

    def test_result_dict_shape(self, services):
        data = services.orchestrator.perform_auto_sync(OWNER).to_dict()
        assert set(data) >= {"success", "total_synced", "results", "sync_actions"}


class TestStatusAndPasses:

    def test_check_sync_status(self, services, clock):
        make_topic(services.local, name="Local", clock=clock, dirty=True)
        status = services.orchestrator.check_sync_status(OWNER)
        assert status["online"] is True
        assert status["needs_sync"] is True
        assert status["tables"]["topics"] == {"local": 1, "remote": 0, "dirty": 1, "in_sync": False}
        assert status["tables"]["notes"]["in_sync"] is True

    def test_check_sync_status_offline(self, services, remote_outage):
        status = services.orchestrator.check_sync_status(OWNER)
        assert status["online"] is False
        assert status["tables"]["topics"]["remote"] is None

    def test_push_all_and_pull_all(self, services, clock):
        make_topic(services.local, name="Local", clock=clock)
        pushed = services.orchestrator.push_all(OWNER)
        assert pushed["success"] is True
        assert pushed["results"]["topics"] == 1

        make_topic(services.remote, name="Remote", clock=clock)
        pulled = services.orchestrator.pull_all(OWNER)
        assert pulled["results"]["topics"] == 2

    def test_background_sync_drains_then_pushes(self, services, clock, remote_outage):
        services.storage.create_topic(OWNER, "bio", "Genetics")
        services.usage.increment_question_usage(OWNER, 2)
        remote_outage.down = False

        out = services.orchestrator.background_sync(OWNER)

        assert out["success"] is True
        assert out["queue"]["applied"] == 1
        assert out["usage_flushed"] == 1
        assert services.remote.scalar(
            "SELECT questions_used FROM user_usage WHERE user_id = ?", (OWNER,)
        ) == 2

    def test_emergency_sync_single_table(self, services, clock):
        make_topic(services.local, name="Local", clock=clock)
        services.syncer.push_to_remote("topics", OWNER)

        out = services.orchestrator.emergency_sync(OWNER, "topics")
        assert out["results"] == {"topics": 1}

    def test_emergency_sync_rejects_unknown_table(self, services):
        with pytest.raises(UnknownTableError):
            services.orchestrator.emergency_sync(OWNER, "users")
