"""
BIRE Review Workflow
Flask Application Factory.

Usage:
    from bire import create_app
    app = create_app()           # defaults to APP_ENV or "development"
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
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from bire.config import config
from bire.middleware.jwt_auth import init_jwt_middleware
from bire.middleware.logging_config import configure_logging
from bire.middleware.rate_limiter import init_rate_limits
from bire.models import db

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
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
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to the APP_ENV env var, or "development".

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Identity ─────────────────────────────────────────────────────────
    init_jwt_middleware(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from bire.models import application as _application_models  # noqa: F401
    from bire.models import audit as _audit_models              # noqa: F401
    from bire.models import due_diligence as _dd_models         # noqa: F401
    from bire.models import review as _review_models            # noqa: F401
    from bire.models import scheduling as _scheduling_models    # noqa: F401
    from bire.models import user as _user_models                # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if config_name != "testing":
        db_uri = app.config["SQLALCHEMY_DATABASE_URI"]
        if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
            os.makedirs(os.path.dirname(db_uri[len("sqlite:///"):]), exist_ok=True)
        with app.app_context():
            try:
                db.create_all()
                app.logger.info("db.create_all() completed successfully")
            except Exception as e:
                app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from bire.blueprints import register_error_handlers
    from bire.blueprints.admin_bp import health_bp, jobs_bp
    from bire.blueprints.applications_bp import applications_bp
    from bire.blueprints.assignment_bp import assignment_bp
    from bire.blueprints.due_diligence_bp import due_diligence_bp
    from bire.blueprints.reporting_bp import diagnostics_bp, reporting_bp
    from bire.blueprints.review_bp import review_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(applications_bp)
    app.register_blueprint(assignment_bp)
    app.register_blueprint(review_bp)
    app.register_blueprint(due_diligence_bp)
    app.register_blueprint(reporting_bp)
    app.register_blueprint(diagnostics_bp)
    app.register_blueprint(jobs_bp)

    register_error_handlers(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler (importing the job module registers the jobs) ──────────
    from bire.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)
    if config_name != "testing":
        SchedulerService.ensure_jobs_registered()

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("run-job")
    @click.argument("name")
    def run_job_cmd(name):
        """Run a registered job once (for cron)."""
        result = SchedulerService.run_job(name)
        logger.info("Job %s: %s", name, result["status"])
        click.echo(f"{name}: {result['status']} {result.get('result') or result.get('error') or ''}")
        if result["status"] not in ("success", "skipped"):
            raise SystemExit(1)

    return app
