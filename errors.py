"""Exception types shared by the sync and usage services."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for synchronisation failures."""


class RemoteStoreError(SyncError):
    """The remote store rejected an operation (constraint, bad column, ...)."""


class RemoteUnavailableError(RemoteStoreError):
    """The remote store could not be reached or timed out."""


class AmbiguousWriteError(RemoteUnavailableError):
    """The connection failed after a non-idempotent write was sent.

    The server may or may not have applied it.
    """


class SchemaDriftError(SyncError):
    """A declared entity mapping disagrees with a store's actual columns."""


class UnknownTableError(SyncError):
    """A table name is not one of the synchronised entities."""

    def __init__(self, table: str):
        super().__init__(f"Unknown sync table: {table}")
        self.table = table


class QuotaExceededError(Exception):
    """A plan limit would be exceeded by the requested action.

    Carries the current usage and the limit so handlers can build an
    actionable message.
    """

    def __init__(self, kind: str, current: int, limit: int, message: str):
        super().__init__(message)
        self.kind = kind
        self.current = current
        self.limit = limit

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "quota": self.kind,
            "current": self.current,
            "limit": self.limit,
        }
