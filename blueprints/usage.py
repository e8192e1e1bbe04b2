"""Usage stats for the dashboard."""

from __future__ import annotations

from flask import Blueprint, jsonify
from flask_login import login_required

from extensions import get_services
from helpers import current_owner

bp = Blueprint("usage", __name__)


@bp.route("/api/usage")
@login_required
def usage_stats():
    return jsonify(get_services().usage.get_usage_stats(current_owner()))
