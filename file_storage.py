"""File storage collaborator.

Production deployments plug in a bucket client exposing ``upload``; the
directory-backed store below serves development, desktop mirrors and tests.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class FileStorage(Protocol):
    def upload(self, owner_id: str, topic_id: str, filename: str, data: bytes,
               content_type: str | None = None) -> str:
        """Store ``data`` and return its content URL."""
        ...


class DirectoryFileStorage:
    """Stores files under ``root/<owner>/<topic>/<filename>``."""

    def __init__(self, root: str | Path, base_url: str = "/files"):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def upload(self, owner_id: str, topic_id: str, filename: str, data: bytes,
               content_type: str | None = None) -> str:
        target = self.root / owner_id / topic_id / Path(filename).name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.info("Stored %d bytes at %s", len(data), target)
        return f"{self.base_url}/{owner_id}/{topic_id}/{target.name}"
