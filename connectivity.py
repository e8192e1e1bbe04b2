"""Connectivity belief: is the remote store reachable right now?

The state is advisory and last-writer-wins: the periodic probe and any
service that sees a remote failure may update it. Listeners subscribed with
``subscribe`` run once per transition to online, which is what triggers the
queue drain and the pending-usage flush after an outage.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from clock import Clock, isoformat, system_clock
from resilience import call_with_timeout

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"
ONLINE = "online"
OFFLINE = "offline"


class ConnectivityState:
    """Current belief about remote reachability, shared by all services."""

    def __init__(self, clock: Clock = system_clock):
        self._state = UNKNOWN
        self._lock = threading.Lock()
        self._listeners: list[Callable[[], None]] = []
        self._clock = clock
        self.last_change: str | None = None
        self.last_checked: str | None = None

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_online(self) -> bool:
        """True unless the remote is known to be down.

        An unknown state counts as online so the first call after start-up
        tries the remote instead of going straight to the fallback.
        """
        return self._state != OFFLINE

    def subscribe(self, listener: Callable[[], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def mark_online(self) -> bool:
        """Record a successful remote contact. Returns True if this flipped the state."""
        with self._lock:
            self.last_checked = isoformat(self._clock())
            if self._state == ONLINE:
                return False
            previous = self._state
            self._state = ONLINE
            self.last_change = self.last_checked
            listeners = list(self._listeners)
        logger.info("Remote store reachable (was %s)", previous)
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Reconnect listener %r failed", listener)
        return True

    def mark_offline(self, reason: str = "") -> bool:
        """Record a failed remote contact. Returns True if this flipped the state."""
        with self._lock:
            self.last_checked = isoformat(self._clock())
            if self._state == OFFLINE:
                return False
            self._state = OFFLINE
            self.last_change = self.last_checked
        logger.warning("Remote store unreachable: %s", reason or "probe failed")
        return True

    def to_dict(self) -> dict:
        return {
            "state": self._state,
            "isOnline": self.is_online,
            "lastChange": self.last_change,
            "lastChecked": self.last_checked,
        }


class ConnectivityMonitor:
    """Probes the remote store and updates the shared state."""

    def __init__(self, state: ConnectivityState, remote, timeout: float = 5):
        self.state = state
        self.remote = remote
        self.timeout = timeout

    def check_now(self) -> bool:
        """Probe once. Never raises; returns the resulting belief."""
        try:
            call_with_timeout(self.remote.ping, self.timeout)
        except Exception as exc:
            self.state.mark_offline(str(exc))
            return False
        self.state.mark_online()
        return True
