#!/usr/bin/env python3
"""Grant the admin role to a user, optionally creating the user (idempotent).

Usage:
  python scripts/attach_admin_role.py --email editor@example.com
  python scripts/attach_admin_role.py --email editor@example.com --create --password '...'
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.modhub.models import Role, User  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", required=True, help="User email to grant the admin role")
    parser.add_argument("--create", action="store_true", help="Create the user if missing")
    parser.add_argument("--password", default="", help="Password for a newly created user")
    args = parser.parse_args()

    email = args.email.strip().lower()
    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///modhub.db").strip()

    with script_session(db_url) as s:
        role = s.query(Role).filter(Role.key == "admin").one_or_none()
        if not role:
            print("Admin role not found. Run python scripts/init_db.py first.")
            sys.exit(1)

        user = s.query(User).filter(User.email == email).one_or_none()
        if not user:
            if not args.create:
                print(f"User not found: {email} (pass --create to add it)")
                sys.exit(1)
            if not args.password:
                print("--password is required with --create")
                sys.exit(1)
            user = User(email=email, password_hash=generate_password_hash(args.password), is_active=True)
            s.add(user)
            print(f"Created user {email}")

        if role in (user.roles or []):
            print(f"User already has admin role: {email}")
            return
        user.roles.append(role)
        print(f"Admin role attached to {email}")


if __name__ == "__main__":
    main()
