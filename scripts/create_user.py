#!/usr/bin/env python3
"""Create a user (or update its role/department), idempotent.

Usage:
  python scripts/create_user.py --email jo@example.com --name "Jo Smith" --password secret
  python scripts/create_user.py --email jo@example.com --role admin --department "Operations"
"""

import argparse
import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.moc.models import Role, User  # noqa: E402
from app.moc.modules.departments.models import Department  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", required=True, help="User email")
    parser.add_argument("--name", default=None, help="Display name")
    parser.add_argument("--password", default=None, help="Password (required for new users)")
    parser.add_argument("--role", default="user", help="Role key to attach (default: user)")
    parser.add_argument("--department", default=None, help="Department name to assign")
    args = parser.parse_args()

    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///moc.db").strip()
    email = args.email.strip().lower()

    with script_session(db_url) as s:
        role = s.query(Role).filter(Role.key == args.role).one_or_none()
        if not role:
            print(f"Role not found: {args.role}. Run python scripts/init_db.py first.")
            return

        user = s.query(User).filter(User.email.ilike(email)).one_or_none()
        if not user:
            if not args.password:
                print("--password is required when creating a user.")
                return
            user = User(email=email, name=args.name, password_hash=generate_password_hash(args.password), is_active=True)
            s.add(user)
            print(f"Created user {email}")
        elif args.name:
            user.name = args.name

        if role not in (user.roles or []):
            user.roles.append(role)
            print(f"Role {args.role} attached to {email}")

        if args.department:
            dept = s.query(Department).filter(Department.name == args.department).one_or_none()
            if not dept:
                print(f"Department not found: {args.department}")
                return
            s.flush()
            user.department_id = dept.id
            print(f"{email} assigned to department {dept.name}")


if __name__ == "__main__":
    main()
