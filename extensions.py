"""
Shared extension objects and the sync service graph.

``build_services`` wires the stores and services once per app; blueprints
reach them through ``get_services()``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import current_app
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from account_sync import AccountSyncService
from auto_sync import AutoSyncOrchestrator
from clock import Clock, system_clock
from connectivity import ConnectivityMonitor, ConnectivityState
from database import LocalStore
from file_storage import DirectoryFileStorage
from hybrid_storage import HybridStorage
from remote_store import RemoteStore
from subscription_store import SubscriptionStore
from sync_queue import SyncQueue
from table_syncer import TableSyncer
from usage_service import UsageService

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, default_limits=["200 per hour"])


@dataclass
class SyncServices:
    local: LocalStore
    remote: RemoteStore
    state: ConnectivityState
    monitor: ConnectivityMonitor
    queue: SyncQueue
    syncer: TableSyncer
    subscriptions: SubscriptionStore
    usage: UsageService
    orchestrator: AutoSyncOrchestrator
    storage: HybridStorage
    accounts: AccountSyncService

    def on_reconnect(self) -> None:
        """Replay what accumulated while the remote was unreachable."""
        result = self.queue.drain()
        if not result.stopped_offline:
            self.usage.flush_pending()


def build_services(config, local: LocalStore, clock: Clock = system_clock,
                   file_storage=None) -> SyncServices:
    remote = RemoteStore(
        config["REMOTE_DATABASE_URL"],
        pool_size=config.get("REMOTE_POOL_SIZE", 10),
        statement_timeout=config.get("REMOTE_STATEMENT_TIMEOUT", 10),
        retry_attempts=config.get("REMOTE_RETRY_ATTEMPTS", 3),
    )
    if file_storage is None and config.get("FILE_STORAGE_DIR"):
        file_storage = DirectoryFileStorage(config["FILE_STORAGE_DIR"])

    state = ConnectivityState(clock)
    monitor = ConnectivityMonitor(state, remote, timeout=config.get("CONNECTIVITY_PROBE_TIMEOUT", 5))
    queue = SyncQueue(local, remote, state, file_storage=file_storage, clock=clock,
                      max_attempts=config.get("SYNC_MAX_ATTEMPTS", 10))
    syncer = TableSyncer(local, remote, state, clock=clock,
                         staleness_seconds=config.get("SYNC_STALENESS_SECONDS", 3600))
    subscriptions = SubscriptionStore(local, remote, state, queue=queue, clock=clock,
                                      limits=config.get("PLAN_LIMITS"))
    usage = UsageService(local, remote, state, subscriptions, clock=clock)
    orchestrator = AutoSyncOrchestrator(
        local, remote, state, syncer, queue=queue, usage=usage, clock=clock,
        drift_seconds=config.get("SYNC_TIMESTAMP_DRIFT_SECONDS", 60),
    )
    storage = HybridStorage(local, remote, state, queue, file_storage=file_storage, clock=clock,
                            upload_dir=config.get("UPLOAD_DIR", "uploads"))
    accounts = AccountSyncService(local, remote, state, clock=clock)

    services = SyncServices(
        local=local, remote=remote, state=state, monitor=monitor, queue=queue, syncer=syncer,
        subscriptions=subscriptions, usage=usage, orchestrator=orchestrator, storage=storage,
        accounts=accounts,
    )
    state.subscribe(services.on_reconnect)
    return services


def get_services() -> SyncServices:
    return current_app.extensions["sync"]
