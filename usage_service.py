"""Per-owner, per-month usage counters and plan quota checks.

Counters only ever grow. Online increments use the remote store's atomic
``col = col + n`` so concurrent requests never lose an update, and mirror the
delta into the local cache. Offline increments land in the local row and in
its ``pending_*`` columns; ``flush_pending`` later replays those deltas with
the same atomic increment and subtracts what it sent. Absolute counter
values are never pushed, so a fallback can not double count.

Local counters always equal the last known remote value plus pending deltas,
which is what ``get_current_usage`` reports.
"""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Any

from clock import Clock, isoformat, month_key, system_clock
from errors import (
    AmbiguousWriteError, QuotaExceededError, RemoteStoreError, RemoteUnavailableError,
)

logger = logging.getLogger(__name__)

COUNTERS = ("questions_used", "storage_used", "topics_created")

PENDING = {
    "questions_used": "pending_questions",
    "storage_used": "pending_storage",
    "topics_created": "pending_topics",
}

MB = 1024 * 1024

DEFAULT_STATS = {
    "questions": {"used": 0, "limit": 100, "percentage": 0},
    "storage": {"used": 0, "limit": 100 * MB, "percentage": 0, "usedMB": 0, "limitMB": 100},
    "topics": {"used": 0, "limit": 5},
    "tier": "free",
}


def _percentage(used: int, limit: int) -> int:
    if limit <= 0:
        return 0
    return round(used / limit * 100)


class UsageService:
    """Usage accounting with remote write-through and local fallback."""

    def __init__(self, local, remote, state, subscriptions, clock: Clock = system_clock):
        self.local = local
        self.remote = remote
        self.state = state
        self.subscriptions = subscriptions
        self.clock = clock
        self._flush_lock = threading.Lock()

    def month_key(self) -> str:
        return month_key(self.clock())

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def _ensure_local_row(self, owner_id: str, month: str) -> None:
        now = isoformat(self.clock())
        self.local.upsert("user_usage", {
            "id": str(uuid.uuid4()),
            "user_id": owner_id,
            "month_year": month,
            "questions_used": 0,
            "storage_used": 0,
            "topics_created": 0,
            "created_at": now,
            "updated_at": now,
            "is_dirty": 1,
        }, conflict=("user_id", "month_year"), update=False)

    def _ensure_remote_row(self, owner_id: str, month: str) -> None:
        now = isoformat(self.clock())
        self.remote.upsert("user_usage", {
            "id": str(uuid.uuid4()),
            "user_id": owner_id,
            "month_year": month,
            "questions_used": 0,
            "storage_used": 0,
            "topics_created": 0,
            "created_at": now,
            "updated_at": now,
        }, conflict=("user_id", "month_year"), update=False)

    def _local_row(self, owner_id: str, month: str) -> dict[str, Any]:
        self._ensure_local_row(owner_id, month)
        return self.local.query_one(
            "SELECT * FROM user_usage WHERE user_id = ? AND month_year = ?", (owner_id, month)
        )

    def _refresh_from_remote(self, owner_id: str, month: str) -> None:
        self._ensure_remote_row(owner_id, month)
        remote = self.remote.query_one(
            "SELECT * FROM user_usage WHERE user_id = ? AND month_year = ?", (owner_id, month)
        )
        self._ensure_local_row(owner_id, month)
        now = isoformat(self.clock())
        # Keep pending deltas on top of the authoritative counters.
        self.local.execute(
            "UPDATE user_usage SET id = ?, "
            "questions_used = ? + pending_questions, "
            "storage_used = ? + pending_storage, "
            "topics_created = ? + pending_topics, "
            "synced_at = ?, "
            "is_dirty = CASE WHEN pending_questions + pending_storage + pending_topics = 0 "
            "THEN 0 ELSE 1 END "
            "WHERE user_id = ? AND month_year = ?",
            (remote["id"], remote["questions_used"] or 0, remote["storage_used"] or 0,
             remote["topics_created"] or 0, now, owner_id, month),
        )

    def get_current_usage(self, owner_id: str) -> dict[str, Any]:
        """This month's usage record, creating a zeroed one if needed."""
        month = self.month_key()
        if self.state.is_online:
            try:
                self._refresh_from_remote(owner_id, month)
            except RemoteUnavailableError as exc:
                self.state.mark_offline(str(exc))
            except RemoteStoreError as exc:
                logger.warning("Remote usage read for %s failed: %s", owner_id, exc)
        return self._local_row(owner_id, month)

    # ------------------------------------------------------------------
    # Increments
    # ------------------------------------------------------------------

    def _increment(self, owner_id: str, column: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("Usage counters can only grow")
        if amount == 0:
            return
        month = self.month_key()
        now = isoformat(self.clock())
        self._ensure_local_row(owner_id, month)

        if self.state.is_online:
            try:
                self._ensure_remote_row(owner_id, month)
                self.remote.increment(
                    "user_usage", {"user_id": owner_id, "month_year": month},
                    {column: amount}, updated_at=now,
                )
            except AmbiguousWriteError as exc:
                # Possibly applied remotely; a pending delta could count it twice.
                self.state.mark_offline(str(exc))
                logger.warning("Remote %s increment for %s may not have applied; not resending: %s",
                               column, owner_id, exc)
                self._mirror_increment(owner_id, month, column, amount, now, synced_at=None)
                return
            except RemoteUnavailableError as exc:
                self.state.mark_offline(str(exc))
            except RemoteStoreError as exc:
                logger.warning("Remote %s increment for %s failed: %s", column, owner_id, exc)
            else:
                self._mirror_increment(owner_id, month, column, amount, now, synced_at=now)
                return

        pending = PENDING[column]
        self.local.execute(
            f"UPDATE user_usage SET {column} = {column} + ?, {pending} = {pending} + ?, "
            "updated_at = ?, is_dirty = 1 WHERE user_id = ? AND month_year = ?",
            (amount, amount, now, owner_id, month),
        )
        logger.info("Recorded %s +%d for %s locally; pending sync", column, amount, owner_id)

    def _mirror_increment(self, owner_id: str, month: str, column: str, amount: int, now: str,
                          synced_at: str | None) -> None:
        self.local.execute(
            f"UPDATE user_usage SET {column} = {column} + ?, updated_at = ?, "
            "synced_at = COALESCE(?, synced_at), "
            "is_dirty = CASE WHEN pending_questions + pending_storage + pending_topics = 0 "
            "THEN 0 ELSE 1 END "
            "WHERE user_id = ? AND month_year = ?",
            (amount, now, synced_at, owner_id, month),
        )

    def increment_question_usage(self, owner_id: str, count: int = 1) -> None:
        self._increment(owner_id, "questions_used", count)

    def increment_storage_usage(self, owner_id: str, size_bytes: int) -> None:
        self._increment(owner_id, "storage_used", size_bytes)

    def increment_topic_usage(self, owner_id: str, count: int = 1) -> None:
        self._increment(owner_id, "topics_created", count)

    def flush_pending(self, owner_id: str | None = None) -> int:
        """Send pending offline deltas to the remote store.

        Returns the number of usage records flushed. Stops at the first
        connectivity failure.
        """
        with self._flush_lock:
            where = "(pending_questions > 0 OR pending_storage > 0 OR pending_topics > 0)"
            params: tuple = ()
            if owner_id is not None:
                where += " AND user_id = ?"
                params = (owner_id,)
            rows = self.local.query(f"SELECT * FROM user_usage WHERE {where}", params)

            flushed = 0
            for row in rows:
                deltas = {col: row[PENDING[col]] for col in COUNTERS if row[PENDING[col]] > 0}
                now = isoformat(self.clock())
                ambiguous = None
                try:
                    self._ensure_remote_row(row["user_id"], row["month_year"])
                    self.remote.increment(
                        "user_usage", {"user_id": row["user_id"], "month_year": row["month_year"]},
                        deltas, updated_at=now,
                    )
                except AmbiguousWriteError as exc:
                    ambiguous = exc
                except RemoteUnavailableError as exc:
                    self.state.mark_offline(str(exc))
                    break
                except RemoteStoreError as exc:
                    logger.warning("Usage flush for %s/%s failed: %s",
                                   row["user_id"], row["month_year"], exc)
                    continue

                sets = ", ".join(f"{PENDING[col]} = {PENDING[col]} - ?" for col in deltas)
                self.local.execute(
                    f"UPDATE user_usage SET {sets}, synced_at = ? WHERE id = ?",
                    (*deltas.values(), now, row["id"]),
                )
                self.local.execute(
                    "UPDATE user_usage SET is_dirty = 0 WHERE id = ? AND "
                    "pending_questions = 0 AND pending_storage = 0 AND pending_topics = 0",
                    (row["id"],),
                )
                flushed += 1
                if ambiguous is not None:
                    # Treated as applied; resending could count the deltas twice.
                    self.state.mark_offline(str(ambiguous))
                    logger.warning("Usage flush for %s/%s may not have applied; not resending: %s",
                                   row["user_id"], row["month_year"], ambiguous)
                    break
            if flushed:
                logger.info("Flushed pending usage for %d record(s)", flushed)
            return flushed

    # ------------------------------------------------------------------
    # Quotas
    # ------------------------------------------------------------------

    def _limits(self, owner_id: str, tier: str | None) -> tuple[str, dict]:
        tier = tier or self.subscriptions.current_tier(owner_id)
        return tier, self.subscriptions.plan_limits(tier)

    def check_question_limit(self, owner_id: str, tier: str | None = None, count: int = 1) -> bool:
        _, limits = self._limits(owner_id, tier)
        limit = limits["questions_per_month"]
        if limit == -1:
            return True
        used = self.get_current_usage(owner_id)["questions_used"]
        if used + count > limit:
            raise QuotaExceededError(
                "questions", used, limit,
                f"Question limit reached ({used}/{limit}). Upgrade to Pro for more questions.",
            )
        return True

    def check_storage_limit(self, owner_id: str, tier: str | None = None, file_size: int = 0) -> bool:
        _, limits = self._limits(owner_id, tier)
        limit = limits["storage_bytes"]
        if limit == -1:
            return True
        used = self.get_current_usage(owner_id)["storage_used"]
        if used + file_size > limit:
            raise QuotaExceededError(
                "storage", used, limit,
                f"Storage limit would be exceeded. Current: {round(used / MB)}MB, "
                f"Limit: {round(limit / MB)}MB, File: {round(file_size / MB)}MB. "
                "Upgrade to Pro for more storage.",
            )
        return True

    def check_topic_limit(self, owner_id: str, subject_id: str | None, tier: str | None = None) -> bool:
        """Count the owner's actual topics in ``subject_id`` against the plan."""
        _, limits = self._limits(owner_id, tier)
        limit = limits["topics_per_subject"]
        if limit == -1:
            return True
        if subject_id is None:
            sql = "SELECT COUNT(*) FROM topics WHERE user_id = ? AND subject_id IS NULL"
            params: tuple = (owner_id,)
        else:
            sql = "SELECT COUNT(*) FROM topics WHERE user_id = ? AND subject_id = ?"
            params = (owner_id, subject_id)
        count = None
        if self.state.is_online:
            try:
                count = self.remote.scalar(sql, params)
            except RemoteUnavailableError as exc:
                self.state.mark_offline(str(exc))
        if count is None:
            count = self.local.scalar(sql, params) or 0
        if count + 1 > limit:
            raise QuotaExceededError(
                "topics", count, limit,
                f"Topic limit reached ({count}/{limit}). Upgrade to Pro for unlimited topics.",
            )
        return True

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_usage_stats(self, owner_id: str) -> dict[str, Any]:
        """Usage snapshot for dashboards. Never raises."""
        try:
            usage = self.get_current_usage(owner_id)
            tier, limits = self._limits(owner_id, None)
            q_limit = limits["questions_per_month"]
            s_limit = limits["storage_bytes"]
            return {
                "questions": {
                    "used": usage["questions_used"],
                    "limit": q_limit,
                    "percentage": _percentage(usage["questions_used"], q_limit),
                },
                "storage": {
                    "used": usage["storage_used"],
                    "limit": s_limit,
                    "percentage": _percentage(usage["storage_used"], s_limit),
                    "usedMB": round(usage["storage_used"] / MB),
                    "limitMB": round(s_limit / MB) if s_limit > 0 else s_limit,
                },
                "topics": {
                    "used": usage["topics_created"],
                    "limit": limits["topics_per_subject"],
                },
                "tier": tier,
                "month": usage["month_year"],
                "isOnline": self.state.is_online,
                "lastSync": usage.get("synced_at"),
            }
        except Exception as exc:
            logger.exception("Failed to compute usage stats for %s", owner_id)
            stats = {k: dict(v) if isinstance(v, dict) else v for k, v in DEFAULT_STATS.items()}
            stats["isOnline"] = self.state.is_online
            stats["error"] = str(exc)
            return stats
