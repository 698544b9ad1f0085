import logging
import os
import subprocess
from pathlib import Path

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from sameday.errors import EngineError
from sameday.extensions import cors, db, migrate
from sameday.integrations.messaging.factory import messaging_health
from sameday.segments.segment_auth import auth_bp
from sameday.segments.segment_deliveries import deliveries_bp
from sameday.segments.segment_disputes import disputes_bp
from sameday.segments.segment_escrow_admin import escrow_admin_bp
from sameday.segments.segment_inventory import inventory_bp
from sameday.segments.segment_notifications import notifications_bp
from sameday.segments.segment_orders_api import orders_bp
from sameday.segments.segment_pricing import pricing_bp
from sameday.segments.segment_stream import stream_bp
from sameday.utils.observability import init_sentry, install_request_observers
from sameday.utils.principal import principal_from_request
from sameday.utils.rate_limit import limiter_stats


def _resolve_alembic_head() -> str:
    try:
        from alembic.config import Config
        from alembic.script import ScriptDirectory

        migrations_dir = Path(__file__).resolve().parents[1] / "migrations"
        cfg = Config(str(migrations_dir / "alembic.ini"))
        cfg.set_main_option("script_location", str(migrations_dir))
        script = ScriptDirectory.from_config(cfg)
        heads = script.get_heads()
        return heads[0] if heads else "unknown"
    except Exception:
        return "unknown"


def _resolve_git_sha() -> str:
    for env_key in ("GIT_SHA", "SOURCE_VERSION"):
        val = (os.getenv(env_key) or "").strip()
        if val:
            return val
    try:
        repo_root = Path(__file__).resolve().parents[1]
        out = subprocess.check_output(
            ["git", "rev-parse", "HEAD"],
            cwd=str(repo_root),
            stderr=subprocess.DEVNULL,
        )
        return out.decode().strip()
    except Exception:
        return "unknown"


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except Exception:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _error_payload(error: str, message: str, status: int, detail: dict | None = None) -> dict:
    payload = {
        "ok": False,
        "error": error,
        "message": message,
        "status": int(status),
    }
    if detail:
        payload["detail"] = detail
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app():
    app = Flask(__name__)
    app.logger.setLevel((os.getenv("LOG_LEVEL") or "INFO").strip().upper())
    logging.getLogger("sameday").setLevel(app.logger.level)
    init_sentry(app)

    env = (os.getenv("SAMEDAY_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{os.path.join(instance_dir, 'sameday.db').replace(os.sep, '/')}"
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url

    engine_options = {
        "pool_pre_ping": True,
        "pool_reset_on_return": "rollback",
        "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s pool_recycle=%s",
            int(engine_options.get("pool_size", 0) or 0),
            int(engine_options.get("max_overflow", 0) or 0),
            int(engine_options.get("pool_timeout", 0) or 0),
            int(engine_options.get("pool_recycle", 0) or 0),
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    if env not in ("prod", "production"):
        with app.app_context():
            db.create_all()

    @app.errorhandler(EngineError)
    def _engine_error(error: EngineError):
        level = app.logger.warning if error.status_code >= 409 else app.logger.info
        level("engine_error path=%s code=%s status=%s msg=%s", request.path, error.code, error.status_code, error.message)
        return jsonify(_error_payload(error.code, error.message, error.status_code, error.detail)), int(error.status_code)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only for predictable frontend handling.
        if not request.path.startswith("/api/"):
            return error
        return jsonify(_error_payload(error.name, error.description or error.name, int(error.code or 500))), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        db.session.rollback()
        return jsonify(_error_payload("InternalServerError", "Internal server error", 500)), 500

    app.register_blueprint(auth_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(deliveries_bp)
    app.register_blueprint(disputes_bp)
    app.register_blueprint(escrow_admin_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(pricing_bp)
    app.register_blueprint(stream_bp)
    app.register_blueprint(notifications_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": True,
            "service": "sameday-backend",
            "env": env,
            "db": db_state,
            "git_sha": _resolve_git_sha(),
            "alembic_head": _resolve_alembic_head(),
            "rate_limiter": limiter_stats(),
            "messaging": messaging_health(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.before_request
    def _capture_auth_context():
        g.auth_user_id = None
        g.principal = None
        principal = principal_from_request()
        if principal is None:
            return
        try:
            import sentry_sdk

            sentry_sdk.set_user({"id": str(principal.user_id)})
            sentry_sdk.set_tag("auth_roles", ",".join(sorted(principal.roles)))
        except Exception:
            app.logger.debug("sentry_user_tag_skipped")

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    _register_cli(app)
    return app


def _register_cli(app):
    from sameday.jobs.escrow_runner import run_escrow_automation
    from sameday.jobs.notification_dispatcher import dispatch_queued_notifications
    from sameday.models import User, UserRole
    from sameday.services.reconciliation_service import audit_lifecycle_invariants, persist_report

    @app.cli.command("bootstrap-admin")
    def bootstrap_admin():
        env = (os.getenv("SAMEDAY_ENV") or os.getenv("FLASK_ENV") or "dev").strip().lower()
        allow = (os.getenv("ALLOW_ADMIN_BOOTSTRAP") or "").strip() == "1"
        if env not in ("dev", "development", "local", "test") and not allow:
            raise click.ClickException("Admin bootstrap disabled. Set ALLOW_ADMIN_BOOTSTRAP=1 or SAMEDAY_ENV=dev.")

        email = (os.getenv("ADMIN_EMAIL") or "").strip().lower()
        password = (os.getenv("ADMIN_PASSWORD") or "").strip()
        if not email or not password:
            raise click.ClickException("ADMIN_EMAIL and ADMIN_PASSWORD must be set.")

        u = User.query.filter_by(email=email).first()
        try:
            if u:
                u.set_password(password)
            else:
                u = User(name=email.split("@")[0], email=email, phone=(os.getenv("ADMIN_PHONE") or "").strip() or None)
                u.set_password(password)
                db.session.add(u)
                db.session.flush()
            if UserRole.query.filter_by(user_id=int(u.id), role="admin").first() is None:
                db.session.add(UserRole(user_id=int(u.id), role="admin", status="APPROVED"))
            db.session.commit()
            click.echo(f"admin_bootstrap_ok {u.email}")
        except Exception:
            db.session.rollback()
            raise click.ClickException("Failed to bootstrap admin.")

    @app.cli.command("run-escrow-sweeper")
    @click.option("--limit", default=500, show_default=True, type=int)
    def run_escrow_sweeper(limit: int):
        click.echo(run_escrow_automation(limit=limit))

    @app.cli.command("dispatch-notifications")
    @click.option("--limit", default=200, show_default=True, type=int)
    def dispatch_notifications(limit: int):
        click.echo(dispatch_queued_notifications(limit=limit))

    @app.cli.command("audit-invariants")
    @click.option("--persist/--no-persist", default=True, show_default=True)
    def audit_invariants(persist: bool):
        summary = audit_lifecycle_invariants()
        if persist:
            persist_report(summary)
        click.echo(f"orders_scanned={summary['orders_scanned']} violations={summary['violation_count']}")
        if summary["violation_count"]:
            raise SystemExit(2)
