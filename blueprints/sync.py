"""Sync endpoints: status, reconciliation passes, queue management, account linking."""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from flask_login import login_required

from extensions import get_services, limiter
from helpers import current_email, current_owner, json_body

logger = logging.getLogger(__name__)

bp = Blueprint("sync", __name__, url_prefix="/sync")

SYNC_RATE = "30 per minute"


@bp.route("/status")
@login_required
def status():
    svc = get_services()
    out = svc.orchestrator.check_sync_status(current_owner())
    out["connection"] = svc.storage.connection_status()
    out["pending"] = svc.queue.pending_count()
    out["parked"] = len(svc.queue.parked_entries())
    return jsonify(out)


@bp.route("/auto", methods=["POST"])
@login_required
@limiter.limit(SYNC_RATE)
def auto():
    body = json_body()
    result = get_services().orchestrator.perform_auto_sync(
        current_owner(), email=current_email(), full_name=body.get("fullName"),
    )
    return jsonify(result.to_dict())


@bp.route("/pull", methods=["POST"])
@login_required
@limiter.limit(SYNC_RATE)
def pull():
    return jsonify(get_services().orchestrator.pull_all(current_owner()))


@bp.route("/push", methods=["POST"])
@login_required
@limiter.limit(SYNC_RATE)
def push():
    return jsonify(get_services().orchestrator.push_all(current_owner()))


@bp.route("/background", methods=["POST"])
@login_required
@limiter.limit(SYNC_RATE)
def background():
    return jsonify(get_services().orchestrator.background_sync(current_owner()))


@bp.route("/emergency", methods=["POST"])
@login_required
@limiter.limit("5 per minute")
def emergency():
    table = json_body().get("tableName")
    return jsonify(get_services().orchestrator.emergency_sync(current_owner(), table))


@bp.route("/usage", methods=["POST"])
@login_required
@limiter.limit(SYNC_RATE)
def usage():
    svc = get_services()
    flushed = svc.usage.flush_pending(current_owner())
    return jsonify({"success": True, "flushed": flushed, "isOnline": svc.state.is_online})


# -- Queue --------------------------------------------------------------------


@bp.route("/queue")
@login_required
def queue_entries():
    svc = get_services()
    limit = request.args.get("limit", 100, type=int)
    return jsonify({
        "pending": svc.queue.pending_count(),
        "entries": svc.queue.entries(limit=max(1, min(limit, 500))),
        "parked": svc.queue.parked_entries(),
    })


@bp.route("/queue/drain", methods=["POST"])
@login_required
@limiter.limit(SYNC_RATE)
def queue_drain():
    svc = get_services()
    result = svc.queue.drain()
    if not result.stopped_offline:
        svc.usage.flush_pending()
    return jsonify(result.to_dict())


@bp.route("/queue/<int:entry_id>/retry", methods=["POST"])
@login_required
def queue_retry(entry_id: int):
    if not get_services().queue.retry(entry_id):
        return jsonify({"error": "Queue entry not found"}), 404
    return jsonify({"success": True})


@bp.route("/queue/<int:entry_id>", methods=["DELETE"])
@login_required
def queue_discard(entry_id: int):
    if not get_services().queue.discard(entry_id):
        return jsonify({"error": "Queue entry not found"}), 404
    logger.warning("Queue entry %d discarded by %s", entry_id, current_owner())
    return jsonify({"success": True})


# -- Account linking ----------------------------------------------------------


@bp.route("/account", methods=["POST"])
@login_required
@limiter.limit("10 per minute")
def account():
    email = current_email()
    if not email:
        return jsonify({"error": "An email address is required to link accounts"}), 400
    body = json_body()
    mode = body.get("mode", "bidirectional")
    try:
        result = get_services().accounts.auto_link(
            email, mode=mode, display_name=body.get("displayName"),
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(result)


@bp.route("/account/log")
@login_required
def account_log():
    accounts = get_services().accounts
    return jsonify({"in_progress": accounts.in_progress, "log": accounts.sync_log()})
