"""
Startup diagnostics — runs once when the Flask app starts.

Checks the database and logs a summary banner.
"""

import logging
import sys

from flask import Flask
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError

from qapflow.models import db

logger = logging.getLogger(__name__)


def run_startup_diagnostics(app: Flask):
    """Run diagnostic checks during app startup (inside app context)."""
    if app.config.get("TESTING"):
        return  # skip during tests for speed

    issues: list[str] = []

    with app.app_context():
        py = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"

        db_status = "ok"
        db_uri = str(app.config.get("SQLALCHEMY_DATABASE_URI", ""))
        db_type = db_uri.split(":", 1)[0] or "unknown"
        table_count = "?"
        try:
            db.session.execute(db.text("SELECT 1"))
            table_count = len(sa_inspect(db.engine).get_table_names())
            if table_count == 0:
                issues.append("No tables found; check SQLALCHEMY_DATABASE_URI")
        except SQLAlchemyError as exc:
            db.session.rollback()
            db_status = "FAILED"
            issues.append(f"Database unreachable: {exc}")

        auth_enabled = str(app.config.get("API_AUTH_ENABLED", "false")).lower() == "true"
        plants = sorted(p.value for p in app.config.get("FAST_TRACK_PLANTS", ()))
        fast_track = ",".join(plants) or "(none)"
        mail = app.config.get("MAIL_SERVER") or "log-only"

        banner = f"""
╔══════════════════════════════════════════════════════════════╗
║  QAP Workflow Service — Startup Diagnostics                  ║
╠══════════════════════════════════════════════════════════════╣
║  Python      : {py:<46s}║
║  Debug       : {str(app.debug):<46s}║
║  Database    : {f'{db_type} ({db_status})':<46s}║
║  Tables      : {str(table_count):<46s}║
║  Auth        : {'TOKEN REQUIRED' if auth_enabled else 'HEADERS ACCEPTED':<46s}║
║  Fast-track  : {fast_track:<46s}║
║  Mail        : {mail:<46s}║
╚══════════════════════════════════════════════════════════════╝"""
        logger.info(banner)

        if issues:
            logger.warning("Startup issues detected:")
            for issue in issues:
                logger.warning("  ⚠ %s", issue)
        else:
            logger.info("✅ All startup checks passed")
