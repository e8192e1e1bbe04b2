"""
Blueprint registration for Study Sync.
"""

from __future__ import annotations


def register_blueprints(app):
    from blueprints.sync import bp as sync_bp
    from blueprints.usage import bp as usage_bp
    from blueprints.library import bp as library_bp

    app.register_blueprint(sync_bp)
    app.register_blueprint(usage_bp)
    app.register_blueprint(library_bp)
