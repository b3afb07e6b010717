from __future__ import annotations

from typing import TYPE_CHECKING, Any

from app.modhub.audit import record_event

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.modhub.models import User
    from app.modhub.modules.catalog.store import Module, ModuleStore


def _clean(value: Any) -> str | None:
    return (str(value) if value is not None else "").strip() or None


def parse_version(raw: Any) -> int | None:
    """Parse a positive integer version; None when blank or invalid."""
    text = _clean(raw)
    if text is None:
        return None
    try:
        v = int(text)
    except ValueError:
        return None
    return v if v >= 1 else None


def validate_module_payload(payload: dict, existing: "Module | None" = None) -> list[str]:
    """Validate module creation/update payload. Returns list of errors."""
    errors = []
    if not _clean(payload.get("name")):
        errors.append("Name is required.")
    raw_version = _clean(payload.get("version"))
    if raw_version is not None:
        version = parse_version(raw_version)
        if version is None:
            errors.append("Version must be a whole number of at least 1.")
        elif existing is not None and version < existing.version:
            errors.append(f"Version cannot go backwards (current is {existing.version}).")
    return errors


def create_module(store: "ModuleStore", s: "Session", payload: dict, user: "User") -> "Module":
    """Insert through the store and audit locally."""
    fields = {
        "name": _clean(payload.get("name")),
        "description": _clean(payload.get("description")),
        "version": parse_version(payload.get("version")) or 1,
        "is_archived": False,
    }
    module = store.create_module(fields)

    record_event(
        s,
        actor=user,
        action="module.create",
        entity_type="Module",
        entity_id=module.id,
        metadata={"name": module.name, "version": module.version},
    )
    return module


def module_changes(module: "Module", payload: dict) -> dict[str, dict[str, Any]]:
    """Field-by-field diff between the stored record and submitted form values."""
    changes: dict[str, dict[str, Any]] = {}

    new_name = _clean(payload.get("name"))
    if new_name and new_name != module.name:
        changes["name"] = {"old": module.name, "new": new_name}

    new_description = _clean(payload.get("description"))
    if new_description != module.description:
        changes["description"] = {"old": module.description, "new": new_description}

    new_version = parse_version(payload.get("version"))
    if new_version is not None and new_version != module.version:
        changes["version"] = {"old": module.version, "new": new_version}

    return changes


def update_module(
    store: "ModuleStore",
    s: "Session",
    module: "Module",
    payload: dict,
    user: "User",
    reason: str | None = None,
) -> "Module":
    """Send only changed fields; a no-op edit does not touch the backend."""
    changes = module_changes(module, payload)
    if not changes:
        return module

    updated = store.update_module(module.id, {k: v["new"] for k, v in changes.items()})

    record_event(
        s,
        actor=user,
        action="module.edit",
        entity_type="Module",
        entity_id=module.id,
        reason=reason,
        metadata={"name": updated.name, "changes": changes},
    )
    return updated


def record_archive(s: "Session", module: "Module", user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="module.archive",
        entity_type="Module",
        entity_id=module.id,
        metadata={"name": module.name, "version": module.version},
    )
