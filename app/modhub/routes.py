from flask import Blueprint, g, redirect, render_template, url_for

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    if getattr(g, "current_user", None):
        return redirect(url_for("catalog.modules_list"))
    return render_template("public/index.html")


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast liveness probe. No DB or backend access.
    """
    return "ok", 200
