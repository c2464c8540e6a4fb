#!/usr/bin/env python3
"""Create a staff user (or update an existing one) with a role and tenant scope. Idempotent.

Usage:
  python scripts/assign_staff.py --email desk@dorm.edu --role user --mailroom 3
  python scripts/assign_staff.py --email lead@dorm.edu --role admin --organization 1
"""

import sys
import os
import argparse
from pathlib import Path

from werkzeug.security import generate_password_hash

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.mailroom.constants import ROLE_NAMES
from app.mailroom.models import Mailroom, Role, User
from scripts._db_utils import script_session


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", required=True, help="Staff user email")
    parser.add_argument("--role", required=True, choices=sorted(ROLE_NAMES), help="Role key to attach")
    parser.add_argument("--mailroom", type=int, default=None, help="Mailroom id (staff and managers)")
    parser.add_argument("--organization", type=int, default=None, help="Organization id (admins)")
    parser.add_argument("--password", default=None, help="Initial password for a new user (default: STAFF_PASSWORD)")
    args = parser.parse_args(argv)

    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///mailroom.db").strip()
    email = args.email.strip().lower()

    with script_session(db_url) as s:
        role = s.query(Role).filter(Role.key == args.role).one_or_none()
        if not role:
            print(f"Role {args.role!r} not found. Run python scripts/init_db.py first.")
            return 1

        mailroom = None
        if args.mailroom is not None:
            mailroom = s.get(Mailroom, args.mailroom)
            if not mailroom:
                print(f"Mailroom not found: {args.mailroom}")
                return 1

        user = s.query(User).filter(User.email == email).one_or_none()
        if not user:
            password = args.password or os.environ.get("STAFF_PASSWORD")
            if not password:
                print("New user needs --password or STAFF_PASSWORD.")
                return 1
            user = User(email=email, password_hash=generate_password_hash(password), is_active=True)
            s.add(user)
            print(f"Created user {email}")

        if mailroom is not None:
            user.mailroom_id = mailroom.id
            user.organization_id = mailroom.organization_id
        elif args.organization is not None:
            user.organization_id = args.organization

        if role in (user.roles or []):
            print(f"User already has role {args.role}: {email}")
        else:
            user.roles.append(role)
            print(f"Role {args.role} attached to {email}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
