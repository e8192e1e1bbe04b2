"""Per-table reconciliation between the local cache and the remote store.

All selections are scoped to one owner through the entity's ownership path,
so a child row is "the user's" only when its parent is. Each row is copied
independently: a failing row is logged and skipped, and the return value of
every pass is the number of rows actually copied. Failures to fetch the
source set propagate to the caller.

Conflicts are last-writer-wins on ``updated_at``: a pull never overwrites a
dirty local row that is newer than the incoming remote copy.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from datetime import timedelta
from typing import Any

from clock import Clock, isoformat, parse_timestamp, system_clock
from entities import Entity, get_entity, owned_sql, select_list
from errors import RemoteUnavailableError, SyncError

logger = logging.getLogger(__name__)

# Above this many ids the exclusion set is applied in Python instead of SQL,
# keeping statements under SQLite's bound-parameter limit.
MAX_SQL_EXCLUSIONS = 900

# Consecutive unreachable-remote row failures before a pass gives up.
MAX_CONSECUTIVE_UNAVAILABLE = 3


class TableSyncer:
    """Pull, push and merge one table for one owner."""

    def __init__(self, local, remote, state=None, clock: Clock = system_clock,
                 staleness_seconds: int = 3600):
        self.local = local
        self.remote = remote
        self.state = state
        self.clock = clock
        self.staleness_seconds = staleness_seconds

    # ------------------------------------------------------------------
    # Owner-scoped helpers
    # ------------------------------------------------------------------

    def local_count(self, table: str, owner_id: str) -> int:
        return self.local.scalar(owned_sql(get_entity(table), "COUNT(*)"), (owner_id,)) or 0

    def remote_count(self, table: str, owner_id: str) -> int:
        return self.remote.scalar(owned_sql(get_entity(table), "COUNT(*)"), (owner_id,)) or 0

    def local_latest_created(self, table: str, owner_id: str) -> str | None:
        return self.local.scalar(owned_sql(get_entity(table), "MAX(t.created_at)"), (owner_id,))

    def remote_latest_created(self, table: str, owner_id: str) -> str | None:
        return self.remote.scalar(owned_sql(get_entity(table), "MAX(t.created_at)"), (owner_id,))

    def local_ids(self, table: str, owner_id: str) -> set[str]:
        rows = self.local.query(owned_sql(get_entity(table), "t.id"), (owner_id,))
        return {r["id"] for r in rows}

    def remote_ids(self, table: str, owner_id: str) -> set[str]:
        rows = self.remote.query(owned_sql(get_entity(table), "t.id"), (owner_id,))
        return {r["id"] for r in rows}

    def dirty_count(self, table: str, owner_id: str) -> int:
        sql = owned_sql(get_entity(table), "COUNT(*)", "t.is_dirty = 1")
        return self.local.scalar(sql, (owner_id,)) or 0

    # ------------------------------------------------------------------
    # Remote → local
    # ------------------------------------------------------------------

    def pull_from_remote(self, table: str, owner_id: str) -> int:
        """Copy every remote row the owner has into the local cache."""
        entity = get_entity(table)
        rows = self.remote.query(owned_sql(entity, "t.*"), (owner_id,))
        return self._copy_to_local(entity, rows)

    def merge_from_remote(self, table: str, owner_id: str) -> int:
        """Copy only the remote rows the local cache does not have yet."""
        entity = get_entity(table)
        existing = self.local_ids(table, owner_id)
        rows = self._fetch_excluding(self.remote, entity, "t.*", owner_id, existing)
        return self._copy_to_local(entity, rows)

    def _copy_to_local(self, entity: Entity, rows: Iterable[dict[str, Any]]) -> int:
        now = isoformat(self.clock())
        copied = 0
        warned: set[str] = set()
        for remote_row in rows:
            row, unknown = entity.to_local(remote_row)
            fresh = set(unknown) - warned
            if fresh:
                logger.warning("Dropping undeclared remote columns on %s: %s",
                               entity.table, ", ".join(sorted(fresh)))
                warned |= fresh
            try:
                if self._local_is_newer(entity, row):
                    logger.info("Kept newer local %s/%s over remote copy", entity.table, row["id"])
                    continue
                row["synced_at"] = now
                row["is_dirty"] = 0
                self.local.upsert(entity.table, row)
            except (sqlite3.Error, SyncError, ValueError) as exc:
                logger.warning("Pull of %s/%s failed: %s", entity.table, row.get("id"), exc)
                continue
            copied += 1
        return copied

    def _local_is_newer(self, entity: Entity, remote_row: dict[str, Any]) -> bool:
        current = self.local.query_one(
            f"SELECT is_dirty, updated_at FROM {entity.table} WHERE id = ?", (remote_row["id"],)
        )
        if not current or not current["is_dirty"]:
            return False
        local_ts = parse_timestamp(current["updated_at"])
        remote_ts = parse_timestamp(remote_row.get("updated_at"))
        if local_ts is None or remote_ts is None:
            return local_ts is not None
        return local_ts > remote_ts

    # ------------------------------------------------------------------
    # Local → remote
    # ------------------------------------------------------------------

    def push_to_remote(self, table: str, owner_id: str, force: bool = False) -> int:
        """Push dirty, never-synced, modified-since-sync or stale rows.

        With ``force`` every owned row is pushed.
        """
        entity = get_entity(table)
        columns = select_list(entity.local_columns)
        if force:
            rows = self.local.query(owned_sql(entity, columns, order="t.created_at"), (owner_id,))
            return self._copy_to_remote(entity, rows, owner_id)
        threshold = isoformat(self.clock() - timedelta(seconds=self.staleness_seconds))
        where = (
            "(t.is_dirty = 1 OR t.synced_at IS NULL OR t.synced_at < t.updated_at "
            "OR t.synced_at < ?)"
        )
        sql = owned_sql(entity, columns, where, order="t.created_at")
        rows = self.local.query(sql, (owner_id, threshold))
        return self._copy_to_remote(entity, rows, owner_id)

    def push_dirty(self, table: str, owner_id: str) -> int:
        """Push only rows flagged dirty."""
        entity = get_entity(table)
        sql = owned_sql(entity, select_list(entity.local_columns), "t.is_dirty = 1",
                        order="t.created_at")
        return self._copy_to_remote(entity, self.local.query(sql, (owner_id,)), owner_id)

    def merge_to_remote(self, table: str, owner_id: str) -> int:
        """Push only the local rows the remote store does not have yet."""
        entity = get_entity(table)
        existing = self.remote_ids(table, owner_id)
        rows = self._fetch_excluding(
            self.local, entity, select_list(entity.local_columns), owner_id, existing
        )
        return self._copy_to_remote(entity, rows, owner_id)

    def _copy_to_remote(self, entity: Entity, rows: Iterable[dict[str, Any]], owner_id: str) -> int:
        copied = 0
        unavailable = 0
        for row in rows:
            payload = entity.to_remote(row, owner_id)
            try:
                self.remote.upsert(entity.table, payload)
            except RemoteUnavailableError as exc:
                unavailable += 1
                logger.warning("Push of %s/%s timed out or lost connection: %s",
                               entity.table, row["id"], exc)
                if unavailable >= MAX_CONSECUTIVE_UNAVAILABLE:
                    if self.state is not None:
                        self.state.mark_offline(str(exc))
                    raise
                continue
            except SyncError as exc:
                unavailable = 0
                logger.warning("Push of %s/%s rejected: %s", entity.table, row["id"], exc)
                continue
            unavailable = 0
            self._mark_synced(entity, row)
            copied += 1
        return copied

    def _mark_synced(self, entity: Entity, row: dict[str, Any]) -> None:
        # A row edited since it was read stays dirty.
        self.local.execute(
            f"UPDATE {entity.table} SET synced_at = ?, is_dirty = 0 "
            f"WHERE id = ? AND COALESCE(updated_at, '') = COALESCE(?, '')",
            (isoformat(self.clock()), row["id"], row.get("updated_at")),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _fetch_excluding(store, entity: Entity, select: str, owner_id: str,
                         exclude: set[str]) -> list[dict[str, Any]]:
        if not exclude:
            return store.query(owned_sql(entity, select, order="t.created_at"), (owner_id,))
        if len(exclude) <= MAX_SQL_EXCLUSIONS:
            ids = sorted(exclude)
            marks = ", ".join("?" for _ in ids)
            sql = owned_sql(entity, select, f"t.id NOT IN ({marks})", order="t.created_at")
            return store.query(sql, (owner_id, *ids))
        rows = store.query(owned_sql(entity, select, order="t.created_at"), (owner_id,))
        return [r for r in rows if r["id"] not in exclude]
