"""
Application configuration with environment-aware settings.

All environment variables are documented here. See .env.example for a template.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

from subscription_store import PLAN_LIMITS

BASE_DIR = Path(__file__).parent

load_dotenv()


def _int_env(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


class BaseConfig:
    # Core Flask
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-key-change-in-production")

    # Stores: local SQLite cache and the remote (authoritative) database.
    # REMOTE_DATABASE_URL is postgresql://... in production; a file path opens
    # a SQLite mirror for desktop builds and development.
    LOCAL_DATABASE = os.environ.get("LOCAL_DATABASE", str(BASE_DIR / "data" / "study_sync.db"))
    REMOTE_DATABASE_URL = os.environ.get(
        "REMOTE_DATABASE_URL", str(BASE_DIR / "data" / "remote_mirror.db")
    )
    UPLOAD_DIR = os.environ.get("UPLOAD_DIR", str(BASE_DIR / "uploads"))
    FILE_STORAGE_DIR = os.environ.get("FILE_STORAGE_DIR", str(BASE_DIR / "data" / "files"))

    # Upload limits
    MAX_CONTENT_LENGTH = 50 * 1024 * 1024  # 50 MB

    # Connectivity
    CONNECTIVITY_PROBE_INTERVAL = _int_env("CONNECTIVITY_PROBE_INTERVAL", 30)  # seconds
    CONNECTIVITY_PROBE_TIMEOUT = _int_env("CONNECTIVITY_PROBE_TIMEOUT", 5)  # seconds

    # Remote store
    REMOTE_STATEMENT_TIMEOUT = _int_env("REMOTE_STATEMENT_TIMEOUT", 10)  # seconds
    REMOTE_RETRY_ATTEMPTS = _int_env("REMOTE_RETRY_ATTEMPTS", 3)
    REMOTE_POOL_SIZE = _int_env("REMOTE_POOL_SIZE", 10)
    # Create the remote tables on start-up (mirrors only; Supabase manages its own schema)
    REMOTE_INIT_SCHEMA = os.environ.get("REMOTE_INIT_SCHEMA", "") == "1"

    # Reconciliation
    SYNC_STALENESS_SECONDS = _int_env("SYNC_STALENESS_SECONDS", 3600)
    SYNC_TIMESTAMP_DRIFT_SECONDS = _int_env("SYNC_TIMESTAMP_DRIFT_SECONDS", 60)
    SYNC_MAX_ATTEMPTS = _int_env("SYNC_MAX_ATTEMPTS", 10)  # 0 = retry forever
    QUEUE_DRAIN_INTERVAL_MINUTES = _int_env("QUEUE_DRAIN_INTERVAL_MINUTES", 5)

    # Plans
    PLAN_LIMITS = PLAN_LIMITS

    # Identity: upstream gateway headers carrying the authenticated user
    IDENTITY_HEADER = "X-User-Id"
    IDENTITY_EMAIL_HEADER = "X-User-Email"

    # Logging
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "json" or "text"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Rate limiting (defaults to in-memory)
    RATELIMIT_STORAGE_URI = os.environ.get("RATELIMIT_STORAGE_URI", "") or "memory://"


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")
    REMOTE_INIT_SCHEMA = os.environ.get("REMOTE_INIT_SCHEMA", "1") == "1"


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")

    @classmethod
    def validate(cls):
        """Fail fast on missing or insecure configuration in production."""
        errors: list[str] = []

        if cls.SECRET_KEY in ("dev-key-change-in-production", ""):
            errors.append("SECRET_KEY must be set to a secure value in production.")

        if not os.environ.get("REMOTE_DATABASE_URL"):
            errors.append("REMOTE_DATABASE_URL must point at the remote database.")

        if cls.CONNECTIVITY_PROBE_TIMEOUT >= cls.CONNECTIVITY_PROBE_INTERVAL:
            errors.append("CONNECTIVITY_PROBE_TIMEOUT must be shorter than the probe interval.")

        if errors:
            raise RuntimeError(
                "Production configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            )


class TestingConfig(BaseConfig):
    TESTING = True
    REMOTE_INIT_SCHEMA = True
    REMOTE_RETRY_ATTEMPTS = 1


config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}
