"""Durable queue of local mutations waiting to reach the remote store.

Entries are appended when a write falls back to the local store and are
replayed in creation order by ``drain``. Replays are idempotent (upsert or
delete by id), so an entry applied twice after an ambiguous failure is
harmless.

Entries the remote keeps rejecting are parked once they reach
``max_attempts``: drains skip them and ``/sync/status`` reports them until
someone retries or discards them. ``max_attempts=0`` retries forever.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from clock import Clock, isoformat, system_clock
from errors import RemoteStoreError, RemoteUnavailableError, SyncError

logger = logging.getLogger(__name__)

OPERATIONS = ("insert", "update", "delete", "upload")
ROW_WRITES = ("insert", "update", "delete")
ROW_WRITES_SQL = ", ".join(f"'{op}'" for op in ROW_WRITES)

# Tables whose entries may be replayed; all of them carry sync metadata locally.
QUEUE_TABLES = ("user_profiles", "topics", "notes", "questions", "practice_sessions", "user_answers")


@dataclass
class DrainResult:
    applied: int = 0
    failed: int = 0
    parked: int = 0
    remaining: int = 0
    stopped_offline: bool = False
    skipped: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class SyncQueue:
    """FIFO replay log stored in the local ``sync_queue`` table."""

    def __init__(self, local, remote, state, file_storage=None, clock: Clock = system_clock,
                 max_attempts: int = 10):
        self.local = local
        self.remote = remote
        self.state = state
        self.file_storage = file_storage
        self.clock = clock
        self.max_attempts = max_attempts
        self._drain_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def enqueue(self, table: str, record_id: str, operation: str,
                payload: dict[str, Any] | None = None) -> int:
        """Append an entry. Local store failures propagate."""
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown queue operation: {operation}")
        if table not in QUEUE_TABLES:
            raise ValueError(f"Table {table} is not replayable")
        data = json.dumps(payload, default=str) if payload is not None else None
        entry_id = self.local.insert(
            "INSERT INTO sync_queue (table_name, record_id, operation, data, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (table, record_id, operation, data, isoformat(self.clock())),
        )
        logger.debug("Queued %s %s/%s as entry %s", operation, table, record_id, entry_id)
        return entry_id

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _parked_clause(self, parked: bool) -> tuple[str, tuple]:
        if self.max_attempts <= 0:
            return ("0 = 1", ()) if parked else ("1 = 1", ())
        op = ">=" if parked else "<"
        return f"attempts {op} ?", (self.max_attempts,)

    def pending_count(self) -> int:
        clause, params = self._parked_clause(parked=False)
        return self.local.scalar(f"SELECT COUNT(*) FROM sync_queue WHERE {clause}", params) or 0

    def has_pending(self, table: str, record_id: str) -> bool:
        """True while any entry for the record is queued, parked ones included."""
        return self.local.scalar(
            "SELECT COUNT(*) FROM sync_queue WHERE table_name = ? AND record_id = ?",
            (table, record_id),
        ) > 0

    def entries(self, limit: int = 100) -> list[dict[str, Any]]:
        rows = self.local.query("SELECT * FROM sync_queue ORDER BY id LIMIT ?", (limit,))
        return [self._decode(r) for r in rows]

    def parked_entries(self) -> list[dict[str, Any]]:
        """Entries that need manual resolution."""
        clause, params = self._parked_clause(parked=True)
        rows = self.local.query(f"SELECT * FROM sync_queue WHERE {clause} ORDER BY id", params)
        return [self._decode(r) for r in rows]

    @staticmethod
    def _decode(row: dict[str, Any]) -> dict[str, Any]:
        out = dict(row)
        out["data"] = json.loads(row["data"]) if row.get("data") else None
        return out

    # ------------------------------------------------------------------
    # Manual resolution
    # ------------------------------------------------------------------

    def retry(self, entry_id: int) -> bool:
        """Re-arm a parked entry so the next drain replays it."""
        return self.local.execute(
            "UPDATE sync_queue SET attempts = 0 WHERE id = ?", (entry_id,)
        ) > 0

    def discard(self, entry_id: int) -> bool:
        return self.local.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,)) > 0

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    def drain(self) -> DrainResult:
        """Replay a snapshot of eligible entries in FIFO order.

        A concurrent call returns immediately with ``skipped=True``. Entries
        appended while a drain runs are left for the next one.
        """
        if not self._drain_lock.acquire(blocking=False):
            return DrainResult(skipped=True, remaining=self.pending_count())
        try:
            return self._drain()
        finally:
            self._drain_lock.release()

    def _drain(self) -> DrainResult:
        result = DrainResult()
        clause, params = self._parked_clause(parked=False)
        snapshot = self.local.query(f"SELECT * FROM sync_queue WHERE {clause} ORDER BY id", params)
        if snapshot:
            logger.info("Draining %d queued mutations", len(snapshot))

        for entry in snapshot:
            try:
                self._replay(entry)
            except RemoteUnavailableError as exc:
                # Outages do not count against the entry.
                self.local.execute(
                    "UPDATE sync_queue SET last_error = ? WHERE id = ?", (str(exc), entry["id"])
                )
                self.state.mark_offline(str(exc))
                result.stopped_offline = True
                break
            except (SyncError, ValueError, OSError) as exc:
                result.failed += 1
                if self._record_failure(entry, exc):
                    result.parked += 1
                continue
            self._complete(entry)
            result.applied += 1

        result.remaining = self.pending_count()
        if result.applied or result.failed:
            logger.info(
                "Drain finished: %d applied, %d failed, %d parked, %d remaining",
                result.applied, result.failed, result.parked, result.remaining,
            )
        return result

    def _replay(self, entry: dict[str, Any]) -> None:
        table = entry["table_name"]
        op = entry["operation"]
        payload = json.loads(entry["data"]) if entry["data"] else {}

        if op in ("insert", "update"):
            if not payload:
                raise SyncError(f"Queue entry {entry['id']} has no payload")
            self.remote.upsert(table, payload)
        elif op == "delete":
            self.remote.delete(table, entry["record_id"])
        elif op == "upload":
            self._replay_upload(entry, payload)
        else:
            raise SyncError(f"Unknown queue operation: {op}")

    def _replay_upload(self, entry: dict[str, Any], payload: dict[str, Any]) -> None:
        if self.file_storage is None:
            raise SyncError("No file storage configured")
        path = Path(payload["local_path"])
        data = path.read_bytes()
        try:
            url = self.file_storage.upload(
                payload["owner_id"], payload["topic_id"], payload["filename"], data,
                payload.get("content_type"),
            )
        except (ConnectionError, TimeoutError) as exc:
            raise RemoteUnavailableError(str(exc)) from exc
        now = isoformat(self.clock())
        self.remote.execute(
            "UPDATE notes SET file_url = ?, updated_at = ? WHERE id = ?",
            (url, now, entry["record_id"]),
        )
        self.local.execute(
            "UPDATE notes SET file_url = ?, updated_at = ? WHERE id = ?",
            (url, now, entry["record_id"]),
        )

    def _complete(self, entry: dict[str, Any]) -> None:
        table = entry["table_name"]
        record_id = entry["record_id"]
        with self.local.transaction():
            self.local.execute("DELETE FROM sync_queue WHERE id = ?", (entry["id"],))
            if entry["operation"] in ROW_WRITES:
                # Older row writes for the record, parked ones included, are now stale.
                self.local.execute(
                    "DELETE FROM sync_queue WHERE table_name = ? AND record_id = ? AND id < ? "
                    f"AND operation IN ({ROW_WRITES_SQL})",
                    (table, record_id, entry["id"]),
                )
            others = self.local.scalar(
                "SELECT COUNT(*) FROM sync_queue WHERE table_name = ? AND record_id = ?",
                (table, record_id),
            )
            if not others:
                self.local.execute(
                    f"UPDATE {table} SET synced_at = ?, is_dirty = 0 WHERE id = ?",
                    (isoformat(self.clock()), record_id),
                )

    def _record_failure(self, entry: dict[str, Any], exc: Exception) -> bool:
        """Count a rejected replay. Returns True if the entry is now parked."""
        attempts = entry["attempts"] + 1
        self.local.execute(
            "UPDATE sync_queue SET attempts = ?, last_error = ? WHERE id = ?",
            (attempts, str(exc), entry["id"]),
        )
        parked = 0 < self.max_attempts <= attempts
        if parked:
            logger.error(
                "Parked queue entry %s (%s %s/%s) after %d attempts: %s",
                entry["id"], entry["operation"], entry["table_name"], entry["record_id"],
                attempts, exc,
            )
        else:
            logger.warning(
                "Replay of %s %s/%s failed (attempt %d): %s",
                entry["operation"], entry["table_name"], entry["record_id"], attempts, exc,
            )
        return parked
