"""
Approval Workflow Engine
Flask Application Factory.

Usage:
    from approval_engine import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config

Collaborators (role directory, notifier) default to the database-backed
directory and the logging notifier; pass replacements to ``create_app`` or
swap them later with ``approval_engine.integrations.set_*``.
"""

import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from approval_engine.config import config
from approval_engine.integrations import init_integrations
from approval_engine.middleware.diagnostics import run_startup_diagnostics
from approval_engine.middleware.logging_config import configure_logging
from approval_engine.middleware.rate_limiter import init_rate_limits
from approval_engine.middleware.timing import init_request_timing
from approval_engine.models import db

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
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None, *, role_directory=None, notifier=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        role_directory: RoleDirectory used to authorize decisions.
        notifier: Notifier that receives workflow transition events.

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

    # ── Role directory + notifier ────────────────────────────────────────
    init_integrations(app, role_directory=role_directory, notifier=notifier)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 1 * 1024 * 1024)  # 1 MB

    @app.before_request
    def _guard_request():
        from flask import abort, request as _req
        if _req.method == "POST" and _req.path.startswith("/api/"):
            ct = _req.content_type or ""
            if _req.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from approval_engine.models import audit as _audit_models          # noqa: F401
    from approval_engine.models import delegation as _delegation_models  # noqa: F401
    from approval_engine.models import directory as _directory_models    # noqa: F401
    from approval_engine.models import workflow as _workflow_models      # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

        if app.config.get("SEED_DEFAULT_WORKFLOWS"):
            from approval_engine.services.workflow_catalog import seed_default_templates
            try:
                seeded = seed_default_templates()
                if seeded:
                    app.logger.info("Seeded %s default workflow templates", seeded)
            except Exception as e:
                db.session.rollback()
                app.logger.warning("Default workflow seeding failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from approval_engine.blueprints.delegation_bp import delegation_bp
    from approval_engine.blueprints.health_bp import health_bp
    from approval_engine.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(workflow_bp)
    app.register_blueprint(delegation_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-workflows")
    def seed_workflows_cmd():
        """Seed the default INVOICE / PURCHASE_REQUEST / IT_REQUEST / PAYMENT_REQUEST workflows."""
        from approval_engine.services.workflow_catalog import seed_default_templates
        count = seed_default_templates()
        click.echo(f"Seeded {count} new workflow templates.")

    @app.cli.command("assign-role")
    @click.argument("user_id")
    @click.argument("roles", nargs=-1, required=True)
    def assign_role_cmd(user_id, roles):
        """Grant ROLES to USER_ID in the database role directory."""
        from approval_engine.integrations.role_directory import DatabaseRoleDirectory
        DatabaseRoleDirectory().assign(user_id, *roles)
        db.session.commit()
        click.echo(f"{user_id}: {', '.join(sorted(DatabaseRoleDirectory().roles_of(user_id)))}")

    # ── Health check (short form; detailed version at /health/live) ─────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Approval Workflow Engine"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def too_large(e):
        return {"error": "Request body too large"}, 413

    @app.errorhandler(415)
    def unsupported_media(e):
        return {"error": e.description}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    # ── Startup diagnostics ──────────────────────────────────────────────
    run_startup_diagnostics(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
