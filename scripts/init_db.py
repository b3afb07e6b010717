"""
Seed permissions, the admin role and the admin user.

Idempotent: re-running adds whatever is missing and never overwrites an
existing admin user's password.

Usage:
  python scripts/init_db.py
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.modhub.models import Permission, Role, User  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402

PERMISSIONS: tuple[tuple[str, str], ...] = (
    ("admin.view", "Admin: view shell"),
    ("modules.view", "Modules: view"),
    ("modules.create", "Modules: create"),
    ("modules.edit", "Modules: edit"),
    ("modules.archive", "Modules: archive"),
)


def seed_only(*, database_url: str | None = None) -> None:
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@modhub.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///modhub.db").strip()

    with script_session(db_url) as s:
        perms: list[Permission] = []
        for key, name in PERMISSIONS:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            perms.append(p)

        role_admin = s.query(Role).filter(Role.key == "admin").one_or_none()
        if not role_admin:
            role_admin = Role(key="admin", name="Administrator")
            s.add(role_admin)
        for p in perms:
            if p not in role_admin.permissions:
                role_admin.permissions.append(p)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if role_admin not in user.roles:
            user.roles.append(role_admin)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
