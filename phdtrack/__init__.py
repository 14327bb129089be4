"""
PhD Progress Tracker
Flask Application Factory.

Usage:
    from phdtrack import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from phdtrack.config import config
from phdtrack.models import db
from phdtrack.auth import init_auth
from phdtrack.middleware.logging_config import configure_logging
from phdtrack.middleware.timing import init_request_timing
from phdtrack.middleware.rate_limiter import init_rate_limits
from phdtrack.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.

    Raises:
        ConfigurationError: the stage catalog or form definitions are
            inconsistent; the app refuses to start.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Workflow configuration check (fail fast) ─────────────────────────
    from phdtrack.services.stage_catalog import validate_default_configuration
    validate_default_configuration()

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Identity (X-User-Id → g.actor) ───────────────────────────────────
    init_auth(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from phdtrack.models import auth as _auth_models                # noqa: F401
    from phdtrack.models import workflow as _workflow_models        # noqa: F401
    from phdtrack.models import assessment as _assessment_models    # noqa: F401
    from phdtrack.models import notification as _notification_models  # noqa: F401
    from phdtrack.models import audit as _audit_models              # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from phdtrack.blueprints.health_bp import health_bp
    from phdtrack.blueprints.workflow_bp import workflow_bp
    from phdtrack.blueprints.forms_bp import forms_bp
    from phdtrack.blueprints.assessment_bp import assessment_bp
    from phdtrack.blueprints.notification_bp import notification_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(workflow_bp)
    app.register_blueprint(forms_bp)
    app.register_blueprint(assessment_bp)
    app.register_blueprint(notification_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-form-types")
    def seed_form_types_cmd():
        """Create or refresh the form type rows from the built-in definitions."""
        from phdtrack.services.stage_catalog import seed_form_types
        count = seed_form_types()
        db.session.commit()
        logger.info("Seeded %s new form types.", count)

    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        """Run a registered scheduled job once."""
        from phdtrack.services.scheduler_service import SchedulerService
        result = SchedulerService.run_job(job_name)
        click.echo(result)
        if result["status"] != "success":
            raise SystemExit(1)

    # ── Health check (short form; details at /health/live) ─────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "PhD Progress Tracker"}

    # ── Error handlers ───────────────────────────────────────────────────
    register_error_handlers(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    import importlib
    importlib.import_module("phdtrack.services.scheduled_jobs")  # registers @register_job handlers
    from phdtrack.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)

    return app
