"""
NPT Approval Workflow Service
Flask Application Factory.

Usage:
    from app import create_app
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

from app.config import config
from app.models import db
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits
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
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit: apply per-blueprint
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
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

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

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Request guards (input length) ────────────────────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 1024 * 1024)  # 1 MB

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import npt as _npt_models             # noqa: F401
    from app.models import workflow as _workflow_models   # noqa: F401

    # ── Auto-create tables in dev/test (CREATE IF NOT EXISTS) ────────────
    if config_name != "production":
        with app.app_context():
            if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and \
                    ":memory:" not in app.config["SQLALCHEMY_DATABASE_URI"]:
                os.makedirs(app.instance_path, exist_ok=True)
            db.create_all()
            app.logger.debug("db.create_all() completed")

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.approval_bp import approval_bp
    from app.blueprints.workflow_admin_bp import workflow_admin_bp

    app.register_blueprint(approval_bp)
    app.register_blueprint(workflow_admin_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-workflow")
    @click.option("--rig-id", type=int, default=None, help="Rig to receive role assignments.")
    @click.option(
        "--assign", "assignments", multiple=True, metavar="ROLE=USER",
        help="Role holder for --rig-id, e.g. --assign toolpusher=john. Repeatable.",
    )
    def seed_workflow_cmd(rig_id, assignments):
        """Seed the global 4-step approval workflow (idempotent)."""
        from app.services.workflow_admin_service import seed_default_workflow

        holders = {}
        for item in assignments:
            role_key, sep, user_id = item.partition("=")
            if not sep or not role_key or not user_id:
                raise click.BadParameter(f"expected ROLE=USER, got {item!r}", param_hint="--assign")
            holders[role_key.strip()] = user_id.strip()

        summary = seed_default_workflow(rig_id=rig_id, role_holders=holders)
        click.echo(f"Seeded workflow data: {summary}")

    @app.cli.command("backfill-routing")
    @click.option("--apply", "apply_changes", is_flag=True, help="Write changes (default: dry-run).")
    def backfill_routing_cmd(apply_changes):
        """Re-route PENDING_REVIEW reports that have no resolvable approver."""
        from app.services.routing_engine import reroute_stalled_reports

        summary = reroute_stalled_reports(apply=apply_changes)
        click.echo(
            f"[{summary['mode']}] processed={summary['processed']} routed={summary['routed']} "
            f"still_stalled={summary['still_stalled']} finalized={summary['finalized']} "
            f"errors={summary['errors']}"
        )

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "NPT Approval Workflow"}

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

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
