"""
Study Sync: Flask application

Offline-first storage for the study assistant. Writes go to the remote
database when it is reachable and to the local SQLite cache plus the sync
queue when it is not; the sync endpoints reconcile the two.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from flask import Flask, Response, jsonify

import database
from auth import auth_bp, login_manager
from blueprints import register_blueprints
from clock import system_clock
from entities import validate_local, validate_remote
from errors import QuotaExceededError, RemoteStoreError, RemoteUnavailableError, UnknownTableError
from extensions import build_services, limiter

logger = logging.getLogger(__name__)


def create_app(test_config: dict[str, Any] | None = None) -> Flask:
    app = Flask(__name__)

    # Load config
    from config import config_by_name
    if test_config is not None:
        app.config.from_object(config_by_name["testing"])
        app.config.update(test_config)
    else:
        env = os.environ.get("FLASK_ENV", "development")
        cfg = config_by_name.get(env, config_by_name["development"])
        app.config.from_object(cfg)
        if hasattr(cfg, "validate"):
            cfg.validate()

    # Structured logging
    from logging_config import init_logging
    init_logging(app)

    # Local cache first; it must match the entity declarations
    local = database.init_app(app)
    validate_local(local)

    services = build_services(
        app.config, local,
        clock=app.config.get("SYNC_CLOCK") or system_clock,
        file_storage=app.config.get("FILE_STORAGE"),
    )
    app.extensions["sync"] = services

    # Remote schema is checked only when reachable; offline start-up is normal
    try:
        if app.config.get("REMOTE_INIT_SCHEMA"):
            services.remote.init_schema()
        validate_remote(services.remote)
    except RemoteUnavailableError as e:
        services.state.mark_offline(str(e))
        logger.warning("Remote store unreachable at start-up, starting offline: %s", e)

    # Rate limiter (disabled in testing)
    limiter.init_app(app)
    if app.config.get("TESTING"):
        limiter.enabled = False

    # Identity and blueprints
    app.register_blueprint(auth_bp)
    login_manager.init_app(app)
    register_blueprints(app)

    @app.errorhandler(QuotaExceededError)
    def quota_exceeded(e: QuotaExceededError):
        return jsonify(e.to_dict()), 402

    @app.errorhandler(UnknownTableError)
    def unknown_table(e: UnknownTableError):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(RemoteStoreError)
    def remote_rejected(e: RemoteStoreError):
        logger.warning("Remote store rejected request: %s", e)
        return jsonify({"error": str(e)}), 502

    # Security headers
    @app.after_request
    def set_security_headers(response: Response) -> Response:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        if not app.debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    # Connectivity probe and safety-net drain
    if not app.config.get("TESTING"):
        from scheduler import init_scheduler
        app.extensions["scheduler"] = init_scheduler(app, services)

    return app


if __name__ == "__main__":
    create_app().run(debug=True, port=5001)
