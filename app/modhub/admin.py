from datetime import date, datetime, time, timedelta

from flask import Blueprint, current_app, flash, g, render_template, request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.modhub.db import db_session
from app.modhub.models import AuditEvent
from app.modhub.modules.catalog.store import ModuleStoreError, module_store_from_config
from app.modhub.rbac import require_permission

bp = Blueprint("admin", __name__)


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    cfg = current_app.config
    backend = cfg.get("MODULES_BACKEND") or "sql"
    status = {
        "env": (cfg.get("ENV") or "development").strip().lower(),
        "db_connected": False,
        "db_error": None,
        "modules_backend": backend,
        "backend_configured": True,
        "backend_error": None,
        "module_counts": None,
    }

    try:
        s.execute(text("SELECT 1"))
        status["db_connected"] = True
    except SQLAlchemyError as e:
        status["db_error"] = str(e)

    if backend in ("supabase", "rest"):
        missing = [k for k in ("SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY") if not cfg.get(k)]
        status["backend_configured"] = not missing
        if missing:
            status["backend_error"] = f"Missing: {', '.join(missing)}"

    if status["backend_configured"]:
        try:
            modules = module_store_from_config(cfg, session=s).list_modules()
            archived = sum(1 for m in modules if m.is_archived)
            status["module_counts"] = {"total": len(modules), "active": len(modules) - archived, "archived": archived}
        except ModuleStoreError as e:
            status["backend_error"] = str(e)

    return render_template("admin/index.html", system_status=status)


@bp.get("/me")
@require_permission("admin.view")
def me():
    user = getattr(g, "current_user", None)
    role_keys: list[str] = []
    perm_keys: list[str] = []
    if user:
        role_keys = sorted({r.key for r in (user.roles or [])})
        perm_keys = sorted({p.key for r in (user.roles or []) for p in (r.permissions or [])})
    return render_template("admin/me.html", user=user, role_keys=role_keys, perm_keys=perm_keys)


@bp.get("/audit")
@require_permission("admin.view")
def audit_list():
    """
    Audit trail UI (last 200 events) with simple filters:
    - action (contains), e.g. "module.archive"
    - entity_id (exact), e.g. one module's id
    - date range (YYYY-MM-DD)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    entity_id = (request.args.get("entity_id") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    if (request.args.get("date_from") or "").strip() and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if (request.args.get("date_to") or "").strip() and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if entity_id:
        q = q.filter(AuditEvent.entity_id == entity_id)
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return render_template(
        "admin/audit/list.html",
        events=events,
        action=action,
        entity_id=entity_id,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )
