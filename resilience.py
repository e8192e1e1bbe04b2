"""Remote-call resilience: transient error detection, retry, timeouts.

Every call to the remote store goes through here. Idempotent calls are
retried with exponential backoff on transient failures; non-idempotent ones
(counter increments) are attempted exactly once.
"""

from __future__ import annotations

import atexit
import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import TypeVar

import psycopg2
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ── Transient error detection ───────────────────────────────

_TRANSIENT_ERRORS = (
    ConnectionError,
    TimeoutError,
    psycopg2.OperationalError,
    psycopg2.InterfaceError,
)

_TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "connection",
    "could not connect",
    "server closed",
    "database is locked",
    "unable to open database",
    "temporarily unavailable",
)


def is_transient(exc: BaseException) -> bool:
    """Check if an exception means "the remote is unreachable" rather than "rejected"."""
    if isinstance(exc, _TRANSIENT_ERRORS):
        return True
    msg = str(exc).lower()
    return any(p in msg for p in _TRANSIENT_PATTERNS)


class TransientRemoteError(Exception):
    """Wrapper for transient remote failures that may be retried."""


# ── Retry ───────────────────────────────────────────────────

def remote_retrying(attempts: int) -> Retrying:
    """Retrier for idempotent remote calls."""
    return Retrying(
        retry=retry_if_exception_type(TransientRemoteError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        stop=stop_after_attempt(max(1, attempts)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


# ── Timeouts ────────────────────────────────────────────────

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="bounded-call")
atexit.register(_executor.shutdown, wait=False)


def call_with_timeout(fn: Callable[[], T], timeout: float) -> T:
    """Run ``fn`` in a worker thread and give up after ``timeout`` seconds.

    The worker is not interrupted; a hung call keeps its thread until the
    driver gives up, but the caller is released on time.
    """
    future = _executor.submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        raise TimeoutError(f"call exceeded {timeout}s") from None
