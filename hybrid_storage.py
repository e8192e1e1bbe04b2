"""Write-through storage with local fallback.

Online writes go to the remote store first and are then cached locally with
``synced_at`` stamped. When the remote is unreachable the write lands in the
local store marked dirty, together with a sync-queue entry carrying the
remote-shaped payload, and the call still succeeds. A record that still has
queued entries takes the same path, so the queue keeps its order. Remote
rejections (constraint violations and the like) propagate.
"""

from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import Any

from clock import Clock, isoformat, system_clock
from entities import ENTITIES, get_entity
from errors import RemoteUnavailableError

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


class HybridStorage:
    """Domain writes and reads routed through the remote store when possible."""

    def __init__(self, local, remote, state, queue, file_storage=None,
                 clock: Clock = system_clock, upload_dir: str | Path = "uploads"):
        self.local = local
        self.remote = remote
        self.state = state
        self.queue = queue
        self.file_storage = file_storage
        self.clock = clock
        self.upload_dir = Path(upload_dir)

    # ------------------------------------------------------------------
    # Generic write path
    # ------------------------------------------------------------------

    def save(self, table: str, row: dict[str, Any], owner_id: str,
             operation: str = "insert") -> dict[str, Any]:
        """Write ``row`` remotely, falling back to local + queue when offline."""
        entity = get_entity(table)
        now = isoformat(self.clock())
        row = dict(row)
        row.setdefault("id", new_id())
        row.setdefault("created_at", now)
        row["updated_at"] = now

        payload = entity.to_remote(row, owner_id)
        local_row = {c: row[c] for c in entity.local_columns if c in row}

        # Writes for a record with queued entries go behind them.
        if self.state.is_online and not self.queue.has_pending(table, row["id"]):
            try:
                self.remote.upsert(table, payload)
            except RemoteUnavailableError as exc:
                self.state.mark_offline(str(exc))
                logger.warning("Remote write of %s/%s failed, storing locally: %s",
                               table, row["id"], exc)
            else:
                local_row["synced_at"] = now
                local_row["is_dirty"] = 0
                self.local.upsert(table, local_row)
                return local_row

        local_row["is_dirty"] = 1
        with self.local.transaction():
            self.local.upsert(table, local_row)
            self.queue.enqueue(table, row["id"], operation, payload)
        return local_row

    def update(self, table: str, record_id: str, changes: dict[str, Any],
               owner_id: str) -> dict[str, Any]:
        """Apply ``changes`` on top of the cached row and save it."""
        entity = get_entity(table)
        current = self.local.query_one(
            f"SELECT {', '.join(entity.local_columns)} FROM {table} WHERE id = ?", (record_id,)
        )
        if current is None:
            raise LookupError(f"{table}/{record_id} not found")
        current.update(changes)
        return self.save(table, current, owner_id, operation="update")

    def delete(self, table: str, record_id: str, owner_id: str) -> None:
        """Delete a row and its owned children in both stores."""
        get_entity(table)
        targets = self._children(table, record_id) + [(table, record_id)]
        queued = any(self.queue.has_pending(t, rid) for t, rid in targets)

        if self.state.is_online and not queued:
            try:
                for t, rid in targets:
                    self.remote.delete(t, rid)
            except RemoteUnavailableError as exc:
                self.state.mark_offline(str(exc))
            else:
                self.local.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
                return

        with self.local.transaction():
            for t, rid in targets:
                self.queue.enqueue(t, rid, "delete")
            self.local.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
        logger.info("Deleted %s/%s locally; queued for sync", table, record_id)

    def _children(self, table: str, record_id: str) -> list[tuple[str, str]]:
        """Owned descendants, deepest first."""
        out: list[tuple[str, str]] = []
        for child in ENTITIES.values():
            if child.parent != table:
                continue
            rows = self.local.query(
                f"SELECT id FROM {child.table} WHERE {child.parent_key} = ?", (record_id,)
            )
            for r in rows:
                out.extend(self._children(child.table, r["id"]))
                out.append((child.table, r["id"]))
        return out

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    def create_topic(self, owner_id: str, subject_id: str | None, name: str,
                     description: str | None = None) -> dict[str, Any]:
        return self.save("topics", {
            "user_id": owner_id,
            "subject_id": subject_id,
            "name": name,
            "description": description,
        }, owner_id)

    def get_topic(self, owner_id: str, topic_id: str) -> dict[str, Any] | None:
        return self.local.query_one(
            "SELECT * FROM topics WHERE id = ? AND user_id = ?", (topic_id, owner_id)
        )

    def get_topics(self, owner_id: str, subject_id: str | None = None) -> list[dict[str, Any]]:
        """Topics newest first; a remote read refreshes the local cache."""
        where = "user_id = ?"
        params: tuple = (owner_id,)
        if subject_id is not None:
            where += " AND subject_id = ?"
            params = (owner_id, subject_id)
        sql = f"SELECT * FROM topics WHERE {where} ORDER BY created_at DESC"

        if self.state.is_online:
            try:
                rows = self.remote.query(sql, params)
            except RemoteUnavailableError as exc:
                self.state.mark_offline(str(exc))
            else:
                self._cache_clean(get_entity("topics"), rows)
        return self.local.query(sql, params)

    def _cache_clean(self, entity, rows: list[dict[str, Any]]) -> None:
        now = isoformat(self.clock())
        with self.local.transaction():
            for remote_row in rows:
                row, _ = entity.to_local(remote_row)
                dirty = self.local.scalar(
                    f"SELECT is_dirty FROM {entity.table} WHERE id = ?", (row["id"],)
                )
                if dirty:
                    continue
                row["synced_at"] = now
                row["is_dirty"] = 0
                self.local.upsert(entity.table, row)

    # ------------------------------------------------------------------
    # Notes, questions, practice
    # ------------------------------------------------------------------

    def create_note(self, owner_id: str, topic_id: str, content: str | None = None,
                    original_filename: str | None = None, file_url: str | None = None,
                    note_id: str | None = None) -> dict[str, Any]:
        return self.save("notes", {
            "id": note_id or new_id(),
            "topic_id": topic_id,
            "content": content,
            "original_filename": original_filename,
            "file_url": file_url,
        }, owner_id)

    def create_question(self, owner_id: str, topic_id: str, question: str,
                        answer: str | None = None, options: list[str] | None = None,
                        correct_index: int | None = None, explanation: str | None = None,
                        type: str = "multiple_choice") -> dict[str, Any]:
        return self.save("questions", {
            "topic_id": topic_id,
            "question": question,
            "answer": answer,
            "type": type,
            "options": json.dumps(options) if options is not None else None,
            "correct_index": correct_index,
            "explanation": explanation,
        }, owner_id)

    def record_practice_session(self, owner_id: str, topic_id: str | None,
                                answers: list[dict[str, Any]]) -> dict[str, Any]:
        """Store a finished session and its answers (session first)."""
        correct = sum(1 for a in answers if a.get("is_correct"))
        session = self.save("practice_sessions", {
            "user_id": owner_id,
            "topic_id": topic_id,
            "total_questions": len(answers),
            "correct_answers": correct,
        }, owner_id)
        saved = [
            self.save("user_answers", {
                "practice_session_id": session["id"],
                "question_id": a.get("question_id"),
                "user_answer": a.get("user_answer"),
                "is_correct": 1 if a.get("is_correct") else 0,
                "time_taken": a.get("time_taken"),
            }, owner_id)
            for a in answers
        ]
        return {**session, "answers": saved}

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def upload_file(self, owner_id: str, topic_id: str, data: bytes, original_filename: str,
                    content_type: str | None = None, note_id: str | None = None) -> dict[str, Any]:
        """Store a file remotely, or locally with a queued upload when offline.

        When ``note_id`` is given the note's ``file_url`` is updated; create
        the note first so a queued upload replays after the note insert.
        """
        file_id = new_id()
        ext = Path(original_filename).suffix.lower()
        storage_filename = f"{owner_id}/{topic_id}/{file_id}{ext}"
        result = {
            "file_id": file_id,
            "storage_filename": storage_filename,
            "size": len(data),
            "is_local": False,
        }

        if self.state.is_online and self.file_storage is not None:
            try:
                url = self.file_storage.upload(owner_id, topic_id, f"{file_id}{ext}", data,
                                               content_type)
            except (ConnectionError, TimeoutError) as exc:
                self.state.mark_offline(str(exc))
                logger.warning("File upload failed, storing locally: %s", exc)
            else:
                result["file_url"] = url
                if note_id:
                    self.update("notes", note_id, {"file_url": url}, owner_id)
                return result

        local_path = self.upload_dir / owner_id / topic_id / f"{file_id}{ext}"
        local_path.parent.mkdir(parents=True, exist_ok=True)
        local_path.write_bytes(data)
        result["file_url"] = str(local_path)
        result["is_local"] = True

        if note_id:
            with self.local.transaction():
                self.local.execute(
                    "UPDATE notes SET file_url = ? WHERE id = ?", (str(local_path), note_id)
                )
                self.queue.enqueue("notes", note_id, "upload", {
                    "owner_id": owner_id,
                    "topic_id": topic_id,
                    "local_path": str(local_path),
                    "filename": f"{file_id}{ext}",
                    "original_filename": original_filename,
                    "content_type": content_type,
                })
        return result

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def connection_status(self) -> dict[str, Any]:
        return {
            **self.state.to_dict(),
            "pendingChanges": self.queue.pending_count(),
        }
