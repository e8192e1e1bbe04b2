"""Linking local (desktop) accounts with cloud identities.

A local account owns rows in the local cache under its own id; the linked
cloud identity owns the same rows remotely under the cloud id. Copying in
either direction rewrites the direct owner column; child rows keep their ids
and follow their parents.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from collections import deque
from typing import Any

from clock import Clock, isoformat, system_clock
from entities import SYNC_TABLES, get_entity, owned_sql, select_list
from errors import RemoteUnavailableError, SyncError

logger = logging.getLogger(__name__)

SYNC_MODES = ("bidirectional", "cloud_to_local", "local_to_cloud")
LOG_SIZE = 100


class AccountSyncService:
    def __init__(self, local, remote, state, clock: Clock = system_clock):
        self.local = local
        self.remote = remote
        self.state = state
        self.clock = clock
        self._log: deque[dict[str, str]] = deque(maxlen=LOG_SIZE)
        self._running = threading.Lock()

    @property
    def in_progress(self) -> bool:
        return self._running.locked()

    def sync_log(self) -> list[dict[str, str]]:
        return list(self._log)

    def _add_log(self, kind: str, message: str) -> None:
        self._log.append({"timestamp": isoformat(self.clock()), "type": kind, "message": message})

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def local_account(self, *, account_id: str | None = None, email: str | None = None,
                      cloud_user_id: str | None = None) -> dict[str, Any] | None:
        if account_id:
            return self.local.query_one("SELECT * FROM local_accounts WHERE id = ?", (account_id,))
        if cloud_user_id:
            found = self.local.query_one(
                "SELECT * FROM local_accounts WHERE cloud_user_id = ?", (cloud_user_id,)
            )
            if found or not email:
                return found
        if email:
            return self.local.query_one(
                "SELECT * FROM local_accounts WHERE lower(email) = lower(?)", (email,)
            )
        return None

    def find_account_links(self, email: str) -> dict[str, Any]:
        out: dict[str, Any] = {"has_cloud_account": False, "has_local_account": False,
                               "cloud_user_id": None, "local_user_id": None}
        try:
            profile = self.remote.query_one(
                "SELECT id FROM user_profiles WHERE lower(email) = lower(?)", (email,)
            )
        except RemoteUnavailableError as exc:
            self.state.mark_offline(str(exc))
            out["error"] = str(exc)
        else:
            if profile:
                out["has_cloud_account"] = True
                out["cloud_user_id"] = profile["id"]
        account = self.local_account(email=email)
        if account:
            out["has_local_account"] = True
            out["local_user_id"] = account["id"]
        out["can_sync"] = out["has_cloud_account"] or out["has_local_account"]
        return out

    # ------------------------------------------------------------------
    # Copying
    # ------------------------------------------------------------------

    def _copy_cloud_to_local(self, cloud_user_id: str, local_user_id: str) -> dict[str, int]:
        now = isoformat(self.clock())
        copied: dict[str, int] = {}
        for table in SYNC_TABLES:
            entity = get_entity(table)
            rows = self.remote.query(owned_sql(entity, "t.*"), (cloud_user_id,))
            n = 0
            for remote_row in rows:
                row, _ = entity.to_local(remote_row)
                if entity.owner_column:
                    row[entity.owner_column] = local_user_id
                if self.local.scalar(f"SELECT is_dirty FROM {table} WHERE id = ?", (row["id"],)):
                    continue
                row["synced_at"] = now
                row["is_dirty"] = 0
                try:
                    self.local.upsert(table, row)
                except sqlite3.Error as exc:
                    logger.warning("Copy of %s/%s to local account failed: %s", table, row["id"], exc)
                    continue
                n += 1
            copied[table] = n
        return copied

    def _copy_local_to_cloud(self, local_user_id: str, cloud_user_id: str) -> dict[str, int]:
        now = isoformat(self.clock())
        copied: dict[str, int] = {}
        for table in SYNC_TABLES:
            entity = get_entity(table)
            rows = self.local.query(
                owned_sql(entity, select_list(entity.local_columns)), (local_user_id,)
            )
            n = 0
            for row in rows:
                payload = entity.to_remote(row, cloud_user_id)
                if entity.owner_column:
                    payload[entity.owner_column] = cloud_user_id
                try:
                    self.remote.upsert(table, payload)
                except RemoteUnavailableError:
                    raise
                except SyncError as exc:
                    logger.warning("Copy of %s/%s to cloud failed: %s", table, row["id"], exc)
                    continue
                self.local.execute(
                    f"UPDATE {table} SET synced_at = ?, is_dirty = 0 WHERE id = ?", (now, row["id"])
                )
                n += 1
            copied[table] = n
        return copied

    # ------------------------------------------------------------------
    # Account sync
    # ------------------------------------------------------------------

    def _locked(self, fn, *args) -> dict[str, Any]:
        if not self._running.acquire(blocking=False):
            return {"success": False, "error": "Account sync already in progress"}
        try:
            return fn(*args)
        finally:
            self._running.release()

    def sync_cloud_user_to_local(self, cloud_user_id: str, email: str,
                                 display_name: str | None = None) -> dict[str, Any]:
        """Create or link a local account for a cloud user and copy its data down."""
        return self._locked(self._cloud_to_local, cloud_user_id, email, display_name)

    def _cloud_to_local(self, cloud_user_id: str, email: str,
                        display_name: str | None) -> dict[str, Any]:
        now = isoformat(self.clock())
        try:
            account = self.local_account(cloud_user_id=cloud_user_id, email=email)
            if account is None:
                account = {
                    "id": str(uuid.uuid4()),
                    "email": email,
                    "display_name": display_name or "User",
                    "cloud_user_id": cloud_user_id,
                    "sync_mode": "bidirectional",
                    "last_sync": now,
                    "created_at": now,
                }
                self.local.upsert("local_accounts", account)
                logger.info("Created local account %s for %s", account["id"], email)
            elif account["cloud_user_id"] != cloud_user_id:
                self.local.execute(
                    "UPDATE local_accounts SET cloud_user_id = ? WHERE id = ?",
                    (cloud_user_id, account["id"]),
                )
            copied = self._copy_cloud_to_local(cloud_user_id, account["id"])
            self.local.execute(
                "UPDATE local_accounts SET last_sync = ? WHERE id = ?", (now, account["id"])
            )
        except SyncError as exc:
            if isinstance(exc, RemoteUnavailableError):
                self.state.mark_offline(str(exc))
            self._add_log("error", f"Failed to sync cloud user: {exc}")
            logger.warning("Cloud-to-local sync for %s failed: %s", email, exc)
            return {"success": False, "error": str(exc)}
        self._add_log("success", f"Cloud user {email} synced to local")
        return {"success": True, "local_user_id": account["id"], "copied": copied}

    def sync_local_user_to_cloud(self, local_user_id: str) -> dict[str, Any]:
        """Copy a local account's data up, creating its cloud profile if unlinked."""
        return self._locked(self._local_to_cloud, local_user_id)

    def _local_to_cloud(self, local_user_id: str) -> dict[str, Any]:
        now = isoformat(self.clock())
        account = self.local_account(account_id=local_user_id)
        if account is None:
            self._add_log("error", f"Local user {local_user_id} not found")
            return {"success": False, "error": "Local user not found"}
        try:
            cloud_user_id = account["cloud_user_id"]
            if not cloud_user_id:
                cloud_user_id = str(uuid.uuid4())
                self.remote.upsert("user_profiles", {
                    "id": cloud_user_id,
                    "email": account["email"],
                    "full_name": account["display_name"],
                    "subscription_tier": "free",
                    "created_at": now,
                    "updated_at": now,
                }, update=False)
                self.local.execute(
                    "UPDATE local_accounts SET cloud_user_id = ? WHERE id = ?",
                    (cloud_user_id, local_user_id),
                )
                logger.info("Created cloud profile %s for %s", cloud_user_id, account["email"])
            copied = self._copy_local_to_cloud(local_user_id, cloud_user_id)
            self.local.execute(
                "UPDATE local_accounts SET last_sync = ? WHERE id = ?", (now, local_user_id)
            )
        except SyncError as exc:
            if isinstance(exc, RemoteUnavailableError):
                self.state.mark_offline(str(exc))
            self._add_log("error", f"Failed to sync local user: {exc}")
            logger.warning("Local-to-cloud sync for %s failed: %s", local_user_id, exc)
            return {"success": False, "error": str(exc)}
        self._add_log("success", f"Local user {account['email']} synced to cloud")
        return {"success": True, "cloud_user_id": cloud_user_id, "copied": copied}

    def auto_link(self, email: str, mode: str = "bidirectional",
                  display_name: str | None = None) -> dict[str, Any]:
        """Pick the sync direction(s) for ``email`` from which accounts exist."""
        if mode not in SYNC_MODES:
            raise ValueError(f"Unknown sync mode: {mode}")
        links = self.find_account_links(email)
        if not links["can_sync"]:
            return {"success": False, "message": "No accounts found to sync"}

        actions: list[str] = []
        ok = True
        has_cloud, has_local = links["has_cloud_account"], links["has_local_account"]

        if has_cloud and (not has_local or mode in ("cloud_to_local", "bidirectional")):
            result = self.sync_cloud_user_to_local(links["cloud_user_id"], email, display_name)
            ok = ok and result["success"]
            actions.append(f"Cloud → Local: {'Success' if result['success'] else 'Failed'}")
            links["local_user_id"] = result.get("local_user_id", links["local_user_id"])
            has_local = has_local or result["success"]

        if has_local and (not has_cloud or mode in ("local_to_cloud", "bidirectional")):
            result = self.sync_local_user_to_cloud(links["local_user_id"])
            ok = ok and result["success"]
            actions.append(f"Local → Cloud: {'Success' if result['success'] else 'Failed'}")

        return {"success": ok, "message": "Auto-sync completed", "actions": actions}
