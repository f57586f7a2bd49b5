"""
Approval Routing Engine
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_migrate import Migrate

from app.config import config
from app.models import db
from app.middleware.logging_config import configure_logging
from app.middleware.timing import init_request_timing

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


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    config_obj = config[config_name]
    # ProductionConfig validates required env vars in __init__
    app.config.from_object(config_obj() if config_name == "production" else config_obj)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 1024 * 1024)  # 1 MB

    @app.before_request
    def _guard_request():
        from flask import request as _req, abort
        if _req.method in ("POST", "PUT", "PATCH", "DELETE") and _req.path.startswith("/api/"):
            ct = _req.content_type or ""
            if _req.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import auth as _auth_models                  # noqa: F401
    from app.models import organization as _organization_models  # noqa: F401
    from app.models import approval as _approval_models          # noqa: F401
    from app.models import notification as _notification_models  # noqa: F401
    from app.models import scheduling as _scheduling_models      # noqa: F401

    # Register the default event listeners and periodic jobs
    from app.services import approval_events as _approval_events  # noqa: F401
    from app.services import scheduled_jobs as _scheduled_jobs    # noqa: F401
    from app.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    # ── Auto-create tables (safe for production — CREATE IF NOT EXISTS) ──
    if not app.config.get("TESTING"):
        with app.app_context():
            try:
                db.create_all()
                app.logger.info("db.create_all() completed successfully")
            except Exception as e:
                app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.organization_bp import organization_bp
    from app.blueprints.role_bp import role_bp
    from app.blueprints.approval_bp import approval_bp

    app.register_blueprint(organization_bp)
    app.register_blueprint(role_bp)
    app.register_blueprint(approval_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    import click

    @app.cli.command("seed-default-matrices")
    @click.argument("tenant_id", type=int)
    def seed_default_matrices_cmd(tenant_id):
        """Seed the default approval matrix set for a tenant."""
        from app.services.matrix_service import seed_default_matrices
        count = seed_default_matrices(tenant_id)
        logger.info("Seeded %s new approval matrices for tenant %s.", count, tenant_id)

    @app.cli.command("sweep-approval-timeouts")
    def sweep_approval_timeouts_cmd():
        """Run the approval timeout sweep once (schedule via cron)."""
        from app.services.scheduler_service import SchedulerService
        result = SchedulerService.run_job("approval_timeout_sweep")
        logger.info("approval_timeout_sweep finished: %s", result)

    @app.cli.command("set-job-enabled")
    @click.argument("job_name")
    @click.option("--enable/--disable", default=True)
    def set_job_enabled_cmd(job_name, enable):
        """Pause or resume a registered periodic job."""
        from app.services.scheduler_service import SchedulerService
        record = SchedulerService.set_enabled(job_name, enable)
        if record is None:
            raise click.ClickException(f"Unknown job: {job_name}")
        logger.info("Job %s is now %s", job_name, record["status"])

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Approval Routing Engine"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": "Content-Type must be application/json"}, 415

    return app
