"""
Startup diagnostics — runs once when the Flask app starts.

Checks the database and the workflow catalog, then logs a summary banner.
"""

import logging
import sys

from flask import Flask
from sqlalchemy import func, inspect as sa_inspect, select

from approval_engine.models import db

logger = logging.getLogger(__name__)


def run_startup_diagnostics(app: Flask):
    """Run diagnostic checks during app startup (inside app context)."""
    if app.config.get("TESTING"):
        return  # skip during tests for speed

    from approval_engine.integrations import get_notifier, get_role_directory
    from approval_engine.models.workflow import WorkflowTemplate

    issues: list[str] = []

    with app.app_context():
        py = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"

        # ── Database connectivity ────────────────────────────────────
        db_status = "ok"
        db_uri = str(app.config.get("SQLALCHEMY_DATABASE_URI", ""))
        db_type = "PostgreSQL" if "postgresql" in db_uri else "SQLite" if "sqlite" in db_uri else "unknown"
        try:
            db.session.execute(db.text("SELECT 1"))
        except Exception as exc:
            db_status = f"FAILED ({exc})"
            issues.append(f"Database unreachable: {exc}")

        # ── Tables / active templates ────────────────────────────────
        try:
            table_count = len(sa_inspect(db.engine).get_table_names())
            if table_count == 0:
                issues.append("No tables found — run 'flask db upgrade'")
        except Exception:
            table_count = "?"

        try:
            active_templates = db.session.execute(
                select(func.count(WorkflowTemplate.id)).where(WorkflowTemplate.is_active.is_(True))
            ).scalar()
            if not active_templates:
                issues.append("No active workflow templates — run 'flask seed-workflows'")
        except Exception:
            active_templates = "?"
        finally:
            db.session.rollback()

        role_directory = type(get_role_directory(app)).__name__
        notifier = type(get_notifier(app)).__name__

        banner = f"""
╔══════════════════════════════════════════════════════════════╗
║  Approval Workflow Engine — Startup Diagnostics              ║
╠══════════════════════════════════════════════════════════════╣
║  Python      : {py:<46s}║
║  Debug       : {str(app.debug):<46s}║
║  Database    : {db_type + ' (' + db_status + ')':<46.46s}║
║  Tables      : {str(table_count):<46s}║
║  Templates   : {str(active_templates) + ' active':<46s}║
║  Roles from  : {role_directory:<46s}║
║  Notifier    : {notifier:<46s}║
╚══════════════════════════════════════════════════════════════╝"""
        logger.info(banner)

        if issues:
            logger.warning("Startup issues detected:")
            for issue in issues:
                logger.warning("  ⚠ %s", issue)
        else:
            logger.info("All startup checks passed")
