"""
Request identity via Flask-Login.

Credentials are issued elsewhere (Supabase auth behind the gateway); this
module only turns each request into a ``User``. By default the gateway's
``X-User-Id`` / ``X-User-Email`` headers are trusted; deployments can set
``IDENTITY_RESOLVER`` to a callable taking the request and returning
``(user_id, email)`` or ``None``.
"""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify
from flask_login import LoginManager, UserMixin, current_user, login_required

auth_bp = Blueprint("auth", __name__)
login_manager = LoginManager()


class User(UserMixin):
    """The authenticated owner of the synced data."""

    def __init__(self, id: str, email: str | None = None):
        self.id = id
        self.email = email


def _from_headers(request) -> tuple[str, str | None] | None:
    user_id = request.headers.get(current_app.config.get("IDENTITY_HEADER", "X-User-Id"), "").strip()
    if not user_id:
        return None
    email = request.headers.get(current_app.config.get("IDENTITY_EMAIL_HEADER", "X-User-Email"))
    return user_id, (email.strip() or None) if email else None


@login_manager.request_loader
def load_user_from_request(request):
    resolver = current_app.config.get("IDENTITY_RESOLVER") or _from_headers
    identity = resolver(request)
    if not identity:
        return None
    user_id, email = identity
    return User(user_id, email)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"error": "Authentication required"}), 401


@auth_bp.route("/auth/me")
@login_required
def me():
    return jsonify({"id": current_user.id, "email": current_user.email})
