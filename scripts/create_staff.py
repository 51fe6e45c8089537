#!/usr/bin/env python3
"""
Create a staff account.

Staff management lives outside the service; this is the provisioning hook.
The password is read from a prompt unless --password is given.
"""

import argparse
import getpass


def main() -> int:
    from lawman.db.models import StaffRole

    parser = argparse.ArgumentParser(description="Create a staff user.")
    parser.add_argument("username")
    parser.add_argument("--role", choices=[r.value for r in StaffRole], default=StaffRole.CONSULTANT.value)
    parser.add_argument("--name", dest="display_name", default=None)
    parser.add_argument("--email", default=None)
    parser.add_argument("--password", default=None, help="Avoid on shared machines; prompts when omitted")
    args = parser.parse_args()

    from lawman.auth import create_staff_user, is_password_too_long
    from lawman.db.models import StaffUser
    from lawman.db.session import session_scope, init_db

    password = args.password or getpass.getpass("Password: ")
    if not password:
        print("Password is required")
        return 2
    if is_password_too_long(password):
        print("Password exceeds 72 bytes")
        return 2

    init_db()
    with session_scope() as db:
        if db.get(StaffUser, args.username.strip().lower()) is not None:
            print(f"User {args.username} already exists")
            return 1
        user = create_staff_user(
            db,
            args.username,
            password,
            role=StaffRole(args.role),
            display_name=args.display_name,
            email=args.email,
        )
        print(f"Created {user.username} ({user.role.value})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
