"""
PhD Progress Tracker
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

All reminder windows and thresholds are whole days and may be overridden
through environment variables of the same name.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'phdtrack_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _days(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = int(raw)
    if value < 0:
        raise RuntimeError(f"{name} must be a non-negative number of days")
    return value


def _database_url(fallback: str | None) -> str | None:
    # SQLAlchemy 2.0 rejects the legacy postgres:// scheme
    raw = os.getenv("DATABASE_URL", "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else fallback


_POOL = {
    "pool_pre_ping": True,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_recycle": 300,
}


class Config:
    """Shared settings."""

    SECRET_KEY = os.getenv("SECRET_KEY", secrets.token_hex(32))
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOL)

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # ── Workflow ─────────────────────────────────────────────────────────
    # Students idle in a stage longer than this appear in the attention list
    ATTENTION_THRESHOLD_DAYS = _days("ATTENTION_THRESHOLD_DAYS", 90)

    # ── Reminder sweeps ──────────────────────────────────────────────────
    PENDING_REMINDER_DAYS = _days("PENDING_REMINDER_DAYS", 7)
    STAGE_REMINDER_COOLDOWN_DAYS = _days("STAGE_REMINDER_COOLDOWN_DAYS", 30)
    DEADLINE_WINDOW_DAYS = _days("DEADLINE_WINDOW_DAYS", 7)
    DEADLINE_REMINDER_COOLDOWN_DAYS = _days("DEADLINE_REMINDER_COOLDOWN_DAYS", 3)
    NOTIFICATION_RETENTION_DAYS = _days("NOTIFICATION_RETENTION_DAYS", 30)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # In-memory SQLite runs on a single static connection
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False

    # Pinned so the suite ignores local overrides
    ATTENTION_THRESHOLD_DAYS = 90
    PENDING_REMINDER_DAYS = 7
    STAGE_REMINDER_COOLDOWN_DAYS = 30
    DEADLINE_WINDOW_DAYS = 7
    DEADLINE_REMINDER_COOLDOWN_DAYS = 3
    NOTIFICATION_RETENTION_DAYS = 30


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url(None)
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        **_POOL,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
