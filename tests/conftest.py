"""
Test fixtures for Study Sync.

Provides direct service fixtures on two file-based SQLite databases (local
cache + remote mirror) with a controllable clock, a switch that makes the
remote store unreachable, and a Flask app/client with identity headers.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from clock import isoformat  # noqa: E402
from database import LocalStore  # noqa: E402
from extensions import build_services  # noqa: E402
from file_storage import DirectoryFileStorage  # noqa: E402
from remote_store import RemoteStore  # noqa: E402

OWNER = "user-1"
OTHER_OWNER = "user-2"
EMAIL = "student@example.com"


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RemoteSwitch:
    """Controls whether the remote store accepts connections."""

    def __init__(self):
        self.down = False


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote_switch(monkeypatch):
    switch = RemoteSwitch()
    original = RemoteStore._connection

    def _connection(self):
        if switch.down:
            raise ConnectionError("remote unreachable (test)")
        return original(self)

    monkeypatch.setattr(RemoteStore, "_connection", _connection)
    return switch


@pytest.fixture
def remote_outage(remote_switch):
    """The remote store is down until the test sets ``remote_outage.down = False``."""
    remote_switch.down = True
    return remote_switch


@pytest.fixture
def sync_config(tmp_path):
    return {
        "REMOTE_DATABASE_URL": str(tmp_path / "remote.db"),
        "REMOTE_RETRY_ATTEMPTS": 1,
        "REMOTE_STATEMENT_TIMEOUT": 5,
        "CONNECTIVITY_PROBE_TIMEOUT": 2,
        "SYNC_MAX_ATTEMPTS": 3,
        "UPLOAD_DIR": str(tmp_path / "uploads"),
    }


@pytest.fixture
def services(tmp_path, sync_config, clock, remote_switch):
    """Fully wired service graph, not attached to any Flask app."""
    local = LocalStore(tmp_path / "local.db")
    local.init_schema()
    svc = build_services(
        sync_config, local, clock=clock,
        file_storage=DirectoryFileStorage(tmp_path / "files"),
    )
    svc.remote.init_schema()
    yield svc
    svc.remote.close()
    local.close()


@pytest.fixture
def local(services):
    return services.local


@pytest.fixture
def remote(services):
    return services.remote


def make_topic(store, owner=OWNER, name="Cell biology", subject_id="bio", clock=None,
               topic_id=None, dirty=None, **extra):
    """Insert a topic row directly into ``store`` (local or remote)."""
    ts = isoformat(clock() if clock else datetime(2026, 3, 1, tzinfo=timezone.utc))
    row = {
        "id": topic_id or f"topic-{name.lower().replace(' ', '-')}-{owner}",
        "user_id": owner,
        "subject_id": subject_id,
        "name": name,
        "description": None,
        "created_at": ts,
        "updated_at": ts,
        **extra,
    }
    if dirty is not None:
        row["is_dirty"] = 1 if dirty else 0
    store.upsert("topics", row)
    return row


@pytest.fixture
def app(tmp_path, remote_switch):
    """Create app with file-based SQLite stores for testing."""
    from app import create_app

    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test-secret-key",
        "LOCAL_DATABASE": str(tmp_path / "app-local.db"),
        "REMOTE_DATABASE_URL": str(tmp_path / "app-remote.db"),
        "UPLOAD_DIR": str(tmp_path / "app-uploads"),
        "FILE_STORAGE_DIR": str(tmp_path / "app-files"),
        "REMOTE_RETRY_ATTEMPTS": 1,
    })
    yield app
    app.extensions["sync"].remote.close()
    app.extensions["local_store"].close()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers():
    return {"X-User-Id": OWNER, "X-User-Email": EMAIL}
