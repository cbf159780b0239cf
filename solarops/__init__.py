"""
Solar Project Operations Platform
Flask Application Factory.

Usage:
    from solarops import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from solarops.config import config
from solarops.core.exceptions import (
    ConflictError,
    DemotionFailed,
    NotFoundError,
    PromotionFailed,
    StoreError,
    ValidationError,
    VersionConflict,
)
from solarops.middleware.logging_config import configure_logging
from solarops.middleware.rate_limiter import init_rate_limits
from solarops.middleware.timing import init_request_timing
from solarops.models import db
from solarops.utils.errors import E, api_error

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
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def _register_error_handlers(app):
    """Map service-layer exceptions and HTTP errors to JSON responses."""

    @app.errorhandler(NotFoundError)
    def _not_found_error(exc):
        return api_error(E.NOT_FOUND, str(exc))

    @app.errorhandler(ValidationError)
    def _validation_error(exc):
        return api_error(E.VALIDATION_INVALID, str(exc), details=exc.details)

    @app.errorhandler(ConflictError)
    def _conflict_error(exc):
        return api_error(E.CONFLICT_DUPLICATE, str(exc), details={"field": exc.field})

    @app.errorhandler(VersionConflict)
    def _version_conflict(exc):
        return api_error(
            E.WRITE_CONFLICT, str(exc),
            details={"doc_type_code": exc.doc_type_code, "retry": True},
        )

    @app.errorhandler(DemotionFailed)
    @app.errorhandler(PromotionFailed)
    def _write_failed(exc):
        logger.error(
            "Document write failed at %s stage (rolled_back=%s): %s",
            exc.stage, exc.rolled_back, exc.cause,
            extra={"project_id": exc.project_id, "document_id": exc.document_id},
        )
        code = E.WRITE_DEMOTE_FAILED if exc.stage == "demote" else E.WRITE_PROMOTE_FAILED
        return api_error(
            code, str(exc),
            details={
                "stage": exc.stage,
                "document_id": exc.document_id,
                "rolled_back": exc.rolled_back,
                "retry": exc.rolled_back,
            },
        )

    @app.errorhandler(StoreError)
    def _store_error(exc):
        logger.error("Store failure: %s", exc)
        return api_error(E.DATABASE, "Database error", details={"operation": exc.operation})

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def too_large(e):
        return {"error": "Request body too large"}, 413

    @app.errorhandler(415)
    def unsupported_media(e):
        return {"error": e.description or "Unsupported media type"}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500


def _register_cli(app):
    @app.cli.command("seed-milestone-rules")
    def seed_milestone_rules_cmd():
        """Insert the default admin and engineering milestone rules (idempotent)."""
        from solarops.services.milestone_rules import seed_default_rules
        count = seed_default_rules()
        db.session.commit()
        click.echo(f"Seeded {count} new milestone rules.")

    @app.cli.command("reconcile-progress")
    @click.option("--project-id", "project_ids", type=int, multiple=True,
                  help="Limit to these project ids (repeatable).")
    def reconcile_progress_cmd(project_ids):
        """Recompute milestones and cached progress for projects."""
        from solarops.services.progress_service import reconcile_all
        batch = reconcile_all(list(project_ids) or None, actor="cli")
        summary = batch.to_dict()
        click.echo(
            f"Reconciled {summary['synced']}/{summary['total']} projects, "
            f"{summary['failed']} failed, {summary['writes']} writes."
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
    config_cls = config[config_name]
    # ProductionConfig validates required env vars on instantiation
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

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

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config["MAX_CONTENT_LENGTH"] = app.config.get("MAX_JSON_BODY_BYTES")

    @app.before_request
    def _guard_request():
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and request.content_length and request.content_length > max_len:
            abort(413, description="Request body too large")
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from solarops.models import audit as _audit_models          # noqa: F401
    from solarops.models import document as _document_models    # noqa: F401
    from solarops.models import milestone as _milestone_models  # noqa: F401
    from solarops.models import project as _project_models      # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    db_uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
    if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
        os.makedirs(os.path.dirname(db_uri[len("sqlite:///"):]), exist_ok=True)
    with app.app_context():
        db.create_all()
        app.logger.info("db.create_all() completed successfully")

    # ── Blueprints ───────────────────────────────────────────────────────
    from solarops.blueprints.audit_bp import audit_bp
    from solarops.blueprints.document_bp import document_bp
    from solarops.blueprints.health_bp import health_bp
    from solarops.blueprints.milestone_bp import milestone_bp
    from solarops.blueprints.project_bp import project_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(project_bp)
    app.register_blueprint(document_bp)
    app.register_blueprint(milestone_bp)
    app.register_blueprint(audit_bp)

    _register_error_handlers(app)
    _register_cli(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
