"""Auto-sync orchestration: decide per table what reconciliation to run.

Runs on login, on reconnect and from periodic/focus triggers. Every run
recomputes row counts from scratch; nothing is persisted between runs.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from clock import Clock, isoformat, parse_timestamp, system_clock
from entities import SYNC_TABLES, get_entity
from errors import RemoteUnavailableError, SyncError

logger = logging.getLogger(__name__)

PULL = "pull"
PUSH = "push"
MERGE_PUSH = "merge_push"
MERGE_PULL = "merge_pull"
CHECK_TIMESTAMPS = "check_timestamps"
NO_ACTION = "none"

PROFILE_COLUMNS = ("id", "email", "full_name", "subscription_tier", "created_at", "updated_at")
DEFAULT_TIER = "free"


def classify(local_count: int, remote_count: int) -> str:
    """Pick the reconciliation action for one table from its two row counts."""
    if local_count == 0 and remote_count > 0:
        return PULL
    if remote_count == 0 and local_count > 0:
        return PUSH
    if local_count > remote_count:
        return MERGE_PUSH
    if remote_count > local_count:
        return MERGE_PULL
    if local_count > 0:
        return CHECK_TIMESTAMPS
    return NO_ACTION


@dataclass
class AutoSyncResult:
    success: bool = True
    total_synced: int = 0
    pulled: int = 0
    pushed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    plan: dict[str, str] = field(default_factory=dict)
    results: dict[str, dict[str, Any]] = field(default_factory=dict)
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "skipped": self.skipped,
            "total_synced": self.total_synced,
            "pulled": self.pulled,
            "pushed": self.pushed,
            "errors": self.errors,
            "sync_actions": self.plan,
            "results": self.results,
        }


class AutoSyncOrchestrator:
    """Counts, classifies and reconciles every synced table for one owner."""

    def __init__(self, local, remote, state, syncer, queue=None, usage=None,
                 clock: Clock = system_clock, drift_seconds: int = 60):
        self.local = local
        self.remote = remote
        self.state = state
        self.syncer = syncer
        self.queue = queue
        self.usage = usage
        self.clock = clock
        self.drift_seconds = drift_seconds
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _owner_lock(self, owner_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(owner_id, threading.Lock())

    # ------------------------------------------------------------------
    # Auto sync
    # ------------------------------------------------------------------

    def perform_auto_sync(self, owner_id: str, email: str | None = None,
                          full_name: str | None = None) -> AutoSyncResult:
        """Reconcile every table for ``owner_id``.

        A second call for the same owner while one is running returns at once
        with ``skipped=True``.
        """
        lock = self._owner_lock(owner_id)
        if not lock.acquire(blocking=False):
            logger.info("Auto-sync already running for %s", owner_id)
            return AutoSyncResult(skipped=True)
        try:
            return self._auto_sync(owner_id, email, full_name)
        finally:
            lock.release()

    def _auto_sync(self, owner_id: str, email: str | None, full_name: str | None) -> AutoSyncResult:
        result = AutoSyncResult()

        counts: dict[str, tuple[int, int]] = {}
        try:
            for table in SYNC_TABLES:
                counts[table] = (
                    self.syncer.local_count(table, owner_id),
                    self.syncer.remote_count(table, owner_id),
                )
        except SyncError as exc:
            if isinstance(exc, RemoteUnavailableError):
                self.state.mark_offline(str(exc))
            logger.warning("Auto-sync for %s aborted while counting: %s", owner_id, exc)
            result.success = False
            result.errors.append({"table": "*", "error": str(exc)})
            return result
        self.state.mark_online()

        for table, (local_n, remote_n) in counts.items():
            result.plan[table] = classify(local_n, remote_n)

        for table in SYNC_TABLES:
            action = result.plan[table]
            local_n, remote_n = counts[table]
            try:
                pulled, pushed = self._execute(action, table, owner_id)
            except SyncError as exc:
                if isinstance(exc, RemoteUnavailableError):
                    self.state.mark_offline(str(exc))
                logger.warning("Auto-sync %s of %s failed: %s", action, table, exc)
                result.errors.append({"table": table, "error": str(exc)})
                result.results[table] = {"action": action, "local": local_n, "remote": remote_n,
                                         "error": str(exc)}
                continue
            result.pulled += pulled
            result.pushed += pushed
            result.results[table] = {"action": action, "local": local_n, "remote": remote_n,
                                     "pulled": pulled, "pushed": pushed}

        result.success = not result.errors
        result.total_synced = result.pulled + result.pushed

        try:
            self.ensure_profile(owner_id, email, full_name)
        except SyncError as exc:
            logger.warning("Could not ensure profile for %s: %s", owner_id, exc)
            result.errors.append({"table": "user_profiles", "error": str(exc)})

        logger.info(
            "Auto-sync for %s: %d pulled, %d pushed, plan=%s",
            owner_id, result.pulled, result.pushed, result.plan,
        )
        return result

    def _execute(self, action: str, table: str, owner_id: str) -> tuple[int, int]:
        s = self.syncer
        if action == PULL:
            return s.pull_from_remote(table, owner_id), 0
        if action == PUSH:
            return 0, s.push_to_remote(table, owner_id) + s.merge_to_remote(table, owner_id)
        if action == MERGE_PUSH:
            pushed = s.merge_to_remote(table, owner_id) + s.push_dirty(table, owner_id)
            return s.merge_from_remote(table, owner_id), pushed
        if action == MERGE_PULL:
            pulled = s.merge_from_remote(table, owner_id)
            return pulled, s.merge_to_remote(table, owner_id) + s.push_dirty(table, owner_id)
        if action == CHECK_TIMESTAMPS:
            pulled = pushed = 0
            if self._timestamps_drifted(table, owner_id):
                pulled = s.merge_from_remote(table, owner_id)
                pushed = s.merge_to_remote(table, owner_id)
            dirty = s.push_dirty(table, owner_id)
            if dirty:
                # Dirty rows may be new to the remote; take its extras so counts match.
                pulled += s.merge_from_remote(table, owner_id)
            return pulled, pushed + dirty
        return 0, 0

    def _timestamps_drifted(self, table: str, owner_id: str) -> bool:
        local_ts = parse_timestamp(self.syncer.local_latest_created(table, owner_id))
        remote_ts = parse_timestamp(self.syncer.remote_latest_created(table, owner_id))
        if local_ts is None or remote_ts is None:
            return local_ts != remote_ts
        drift = abs((local_ts - remote_ts).total_seconds())
        if drift > self.drift_seconds:
            logger.info("%s latest created_at differs by %.0fs; merging", table, drift)
            return True
        return False

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def ensure_profile(self, owner_id: str, email: str | None = None,
                       full_name: str | None = None) -> dict[str, Any]:
        """Make sure the remote profile row exists and cache it locally."""
        profile = self.remote.query_one("SELECT * FROM user_profiles WHERE id = ?", (owner_id,))
        if profile is None:
            now = isoformat(self.clock())
            self.remote.upsert("user_profiles", {
                "id": owner_id,
                "email": email,
                "full_name": full_name,
                "subscription_tier": DEFAULT_TIER,
                "created_at": now,
                "updated_at": now,
            }, update=False)
            logger.info("Created remote profile for %s", owner_id)
            profile = self.remote.query_one("SELECT * FROM user_profiles WHERE id = ?", (owner_id,))
        row = {c: profile.get(c) for c in PROFILE_COLUMNS}
        row["synced_at"] = isoformat(self.clock())
        row["is_dirty"] = 0
        self.local.upsert("user_profiles", row)
        return row

    # ------------------------------------------------------------------
    # Status and one-directional passes
    # ------------------------------------------------------------------

    def check_sync_status(self, owner_id: str) -> dict[str, Any]:
        """Per-table local/remote counts and whether the two sides agree."""
        tables: dict[str, dict[str, Any]] = {}
        online = True
        for table in SYNC_TABLES:
            local_n = self.syncer.local_count(table, owner_id)
            dirty = self.syncer.dirty_count(table, owner_id)
            remote_n = None
            if online:
                try:
                    remote_n = self.syncer.remote_count(table, owner_id)
                except RemoteUnavailableError as exc:
                    self.state.mark_offline(str(exc))
                    online = False
            tables[table] = {
                "local": local_n,
                "remote": remote_n,
                "dirty": dirty,
                "in_sync": remote_n is not None and remote_n == local_n and dirty == 0,
            }
        return {
            "online": online and self.state.is_online,
            "needs_sync": any(not t["in_sync"] for t in tables.values()),
            "tables": tables,
        }

    def _each_table(self, owner_id: str, op: Callable[[str, str], int],
                    tables: tuple[str, ...] = SYNC_TABLES) -> dict[str, Any]:
        counts: dict[str, int] = {}
        errors: list[dict[str, str]] = []
        for table in tables:
            try:
                counts[table] = op(table, owner_id)
            except SyncError as exc:
                if isinstance(exc, RemoteUnavailableError):
                    self.state.mark_offline(str(exc))
                logger.warning("Sync of %s for %s failed: %s", table, owner_id, exc)
                errors.append({"table": table, "error": str(exc)})
        return {
            "success": not errors,
            "total_synced": sum(counts.values()),
            "results": counts,
            "errors": errors,
        }

    def pull_all(self, owner_id: str) -> dict[str, Any]:
        return self._each_table(owner_id, self.syncer.pull_from_remote)

    def push_all(self, owner_id: str) -> dict[str, Any]:
        return self._each_table(owner_id, self.syncer.push_to_remote)

    def background_sync(self, owner_id: str) -> dict[str, Any]:
        """Quiet periodic pass: drain the queue, push changes, flush usage."""
        out: dict[str, Any] = {"success": True}
        if self.queue is not None:
            drained = self.queue.drain()
            out["queue"] = drained.to_dict()
            if drained.stopped_offline:
                out["success"] = False
                return out
        pushed = self.push_all(owner_id)
        out["push"] = pushed
        out["success"] = pushed["success"]
        if self.usage is not None:
            out["usage_flushed"] = self.usage.flush_pending(owner_id)
        return out

    def emergency_sync(self, owner_id: str, table: str | None = None) -> dict[str, Any]:
        """Force-push every row of one table (or all tables)."""
        tables = (get_entity(table).table,) if table else SYNC_TABLES
        logger.warning("Emergency sync for %s: %s", owner_id, ", ".join(tables))
        return self._each_table(
            owner_id, lambda t, o: self.syncer.push_to_remote(t, o, force=True), tables
        )
