"""
Shared helpers used across blueprints.
"""

from __future__ import annotations

from typing import Any

from flask import request
from flask_login import current_user


def current_owner() -> str:
    """Id of the authenticated user; every synced row is scoped to it."""
    return current_user.id


def current_email() -> str | None:
    return getattr(current_user, "email", None)


def json_body() -> dict[str, Any]:
    """Request JSON object, or an empty dict for empty/non-JSON bodies."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}
