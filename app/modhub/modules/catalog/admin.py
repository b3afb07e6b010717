from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, url_for

from app.modhub.db import db_session
from app.modhub.models import User
from app.modhub.modules.catalog.service import (
    create_module,
    record_archive,
    update_module,
    validate_module_payload,
)
from app.modhub.modules.catalog.store import Module, ModuleStore, ModuleStoreError, module_store_from_config
from app.modhub.modules.catalog.view import (
    DEFAULT_PAGE_SIZE,
    FILTERS,
    NOTICE_TTL_SECONDS,
    PAGE_SIZES,
    ArchiveGuard,
    ModuleListController,
    archive_prompt,
)
from app.modhub.rbac import require_permission

bp = Blueprint("catalog", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _store() -> ModuleStore:
    return module_store_from_config(current_app.config, session=db_session())


def _guard() -> ArchiveGuard:
    return current_app.extensions["module_archive_guard"]


def _list_state(source) -> tuple[str, int, int]:
    """(filter, per_page, page) from query args or form fields, falling back to defaults."""
    filter_key = (source.get("filter") or "all").strip().lower()
    if filter_key not in FILTERS:
        filter_key = "all"
    try:
        per_page = int(source.get("per_page") or DEFAULT_PAGE_SIZE)
    except ValueError:
        per_page = DEFAULT_PAGE_SIZE
    if per_page not in PAGE_SIZES:
        per_page = DEFAULT_PAGE_SIZE
    try:
        page = int(source.get("page") or 1)
    except ValueError:
        page = 1
    return filter_key, per_page, page


def _list_url(filter_key: str, per_page: int, page: int | None = None) -> str:
    params: dict[str, object] = {}
    if filter_key != "all":
        params["filter"] = filter_key
    if per_page != DEFAULT_PAGE_SIZE:
        params["per_page"] = per_page
    if page and page > 1:
        params["page"] = page
    return url_for("catalog.modules_list", **params)


def _get_module_or_404(store: ModuleStore, module_id: str) -> Module:
    try:
        module = store.get_module(module_id)
    except ModuleStoreError:
        current_app.logger.exception("Module lookup failed (id=%s request_id=%s)", module_id, getattr(g, "request_id", None))
        abort(502)
    if module is None:
        abort(404)
    return module


def _form_payload() -> dict:
    return {
        "name": request.form.get("name"),
        "description": request.form.get("description"),
        "version": request.form.get("version"),
    }


# ---------- List ----------
@bp.get("/modules")
@require_permission("modules.view")
def modules_list():
    filter_key, per_page, page = _list_state(request.args)

    ctl = ModuleListController(_store(), guard=_guard(), page_size=per_page)
    ctl.load()
    ctl.apply_filter(filter_key)
    ctl.go_to_page(page)

    # Jinja cannot splat **kwargs in url_for; precompute filter/size/pagination URLs here.
    filter_urls = {f: _list_url(f, per_page) for f in FILTERS}
    size_urls = {n: _list_url(filter_key, n) for n in PAGE_SIZES}
    prev_url = _list_url(filter_key, per_page, ctl.page - 1) if ctl.has_prev else None
    next_url = _list_url(filter_key, per_page, ctl.page + 1) if ctl.has_next else None
    # Archive links carry the list state so the redirect lands on the same view.
    list_qs = _list_url(filter_key, per_page).partition("?")[2]
    list_qs = f"?{list_qs}" if list_qs else ""

    return render_template(
        "admin/modules/list.html",
        ctl=ctl,
        modules=ctl.displayed,
        filter_key=filter_key,
        per_page=per_page,
        filters=FILTERS,
        page_sizes=PAGE_SIZES,
        filter_urls=filter_urls,
        size_urls=size_urls,
        prev_url=prev_url,
        next_url=next_url,
        list_qs=list_qs,
    )


# ---------- New ----------
@bp.get("/modules/new")
@require_permission("modules.create")
def modules_new_get():
    return render_template("admin/modules/edit.html", module=None)


@bp.post("/modules/new")
@require_permission("modules.create")
def modules_new_post():
    s = db_session()
    u = _current_user()
    payload = _form_payload()

    errors = validate_module_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("catalog.modules_new_get"))

    try:
        module = create_module(_store(), s, payload, u)
    except ModuleStoreError:
        current_app.logger.exception("Module create failed (request_id=%s)", getattr(g, "request_id", None))
        flash("Failed to create module.", "danger")
        return redirect(url_for("catalog.modules_new_get"))
    s.commit()

    flash("Module created.", "success")
    return redirect(url_for("catalog.module_detail", module_id=module.id))


# ---------- Detail ----------
@bp.get("/modules/<module_id>")
@require_permission("modules.view")
def module_detail(module_id: str):
    module = _get_module_or_404(_store(), module_id)
    return render_template("admin/modules/detail.html", module=module)


# ---------- Edit ----------
@bp.get("/modules/<module_id>/edit")
@require_permission("modules.edit")
def module_edit_get(module_id: str):
    module = _get_module_or_404(_store(), module_id)
    return render_template("admin/modules/edit.html", module=module)


@bp.post("/modules/<module_id>/edit")
@require_permission("modules.edit")
def module_edit_post(module_id: str):
    s = db_session()
    u = _current_user()
    store = _store()
    module = _get_module_or_404(store, module_id)

    payload = _form_payload()
    errors = validate_module_payload(payload, existing=module)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("catalog.module_edit_get", module_id=module_id))

    reason = (request.form.get("reason") or "").strip() or None
    try:
        update_module(store, s, module, payload, u, reason=reason)
    except ModuleStoreError:
        current_app.logger.exception("Module update failed (id=%s request_id=%s)", module_id, getattr(g, "request_id", None))
        flash("Failed to update module.", "danger")
        return redirect(url_for("catalog.module_edit_get", module_id=module_id))
    s.commit()

    flash("Module updated.", "success")
    return redirect(url_for("catalog.module_detail", module_id=module_id))


# ---------- Archive ----------
@bp.get("/modules/<module_id>/archive")
@require_permission("modules.archive")
def module_archive_get(module_id: str):
    filter_key, per_page, _page = _list_state(request.args)
    module = _get_module_or_404(_store(), module_id)
    if module.is_archived:
        flash(f'"{module.name}" is already archived.', "info")
        return redirect(_list_url(filter_key, per_page))
    return render_template(
        "admin/modules/archive_confirm.html",
        module=module,
        prompt=archive_prompt(module.name),
        filter_key=filter_key,
        per_page=per_page,
        cancel_url=_list_url(filter_key, per_page),
        archiving=module.id in _guard(),
    )


@bp.post("/modules/<module_id>/archive")
@require_permission("modules.archive")
def module_archive_post(module_id: str):
    s = db_session()
    u = _current_user()
    store = _store()
    filter_key, per_page, _page = _list_state(request.form)
    back = _list_url(filter_key, per_page)

    module = _get_module_or_404(store, module_id)
    if module.is_archived:
        flash(f'"{module.name}" is already archived.', "info")
        return redirect(back)

    confirmed = (request.form.get("confirm") or "").strip().lower() == "yes"
    alerts: list[str] = []
    ctl = ModuleListController(store, confirm=lambda _prompt: confirmed, alert=alerts.append, guard=_guard())
    ctl.modules = [module]

    if confirmed and ctl.is_archiving(module.id):
        flash(f'"{module.name}" is already being archived.', "warning")
        return redirect(back)

    if ctl.archive(module.id, module.name):
        record_archive(s, module, u)
        s.commit()
        flash(ctl.notice or "", "success")
    for message in alerts:
        flash(message, "danger")
    return redirect(back)


@bp.app_context_processor
def _inject_notice_ttl() -> dict:
    return {"notice_ttl_ms": int(NOTICE_TTL_SECONDS * 1000)}
