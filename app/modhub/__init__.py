import logging
import os
from datetime import timedelta

from flask import Flask, g, render_template, request, session
from dotenv import load_dotenv
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError

from app.modhub.config import load_config
from app.modhub.db import init_db, teardown_db_session
from app.modhub.routes import bp as routes_bp
from app.modhub.auth import bp as auth_bp, load_current_user
from app.modhub.admin import bp as admin_bp
from app.modhub.modules.catalog.admin import bp as catalog_bp
from app.modhub.modules.catalog.view import ArchiveGuard

_UNGUARDED_PREFIXES = ("/static/", "/health", "/healthz")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.modhub.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        from app.modhub.rbac import user_has_permission

        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(g, "current_user", None), key)

        return {"has_perm": has_perm}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d %H:%M") -> str:
        if value is None:
            return "—"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/logout carry their own protections (rate limit, audit).
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    backend = app.config.get("MODULES_BACKEND") or "sql"
    if backend in ("supabase", "rest"):
        missing = [k for k in ("SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY") if not app.config.get(k)]
        if missing:
            if env in ("prod", "production"):
                raise RuntimeError(f"MODULES_BACKEND={backend} requires: {', '.join(missing)}")
            app.logger.error("MODULES BACKEND CONFIG ERROR: Missing required env vars: %s", ", ".join(missing))
    elif backend != "sql":
        raise RuntimeError(f"Unknown MODULES_BACKEND: {backend!r} (expected sql, supabase or rest)")

    init_db(app)
    app.extensions["module_archive_guard"] = ArchiveGuard()

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(catalog_bp, url_prefix="/admin")

    def _load_user_wrapper():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    # Schema health: the local tables must exist before /admin is usable.
    app.config["_schema_health_missing"] = []
    try:
        insp = sa_inspect(app.extensions["sqlalchemy_engine"])
        expected = ["users", "roles", "permissions", "audit_events"]
        if backend == "sql":
            expected.append("modules")
        app.config["_schema_health_missing"] = [t for t in expected if not insp.has_table(t)]
    except SQLAlchemyError as e:
        app.logger.exception("Schema health check failed: %s", e)
    if app.config["_schema_health_missing"]:
        app.logger.error(
            "DB schema out of date; run `alembic upgrade head`. Missing: %s",
            ", ".join(app.config["_schema_health_missing"]),
        )

    @app.before_request
    def _schema_health_guardrail():  # type: ignore[no-redef]
        missing = app.config.get("_schema_health_missing")
        if not missing:
            return None
        # Tests and first boots create tables after the factory runs; re-check lazily.
        insp = sa_inspect(app.extensions["sqlalchemy_engine"])
        missing = [t for t in missing if not insp.has_table(t)]
        app.config["_schema_health_missing"] = missing
        if missing and request.path.startswith("/admin"):
            return render_template("errors/schema_out_of_date.html", missing=missing), 500
        return None

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return render_template("errors/404.html"), 404

    @app.errorhandler(502)
    def _err_502(e):  # type: ignore[no-redef]
        return render_template("errors/502.html"), 502

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return render_template("errors/500.html"), 500

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return render_template("errors/403.html", missing_permission=missing), 403

    logging.getLogger(__name__).info("create_app() complete; app ready to serve (modules backend=%s)", backend)

    return app
