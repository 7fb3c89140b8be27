#!/usr/bin/env python3
"""
Master Auth -- administration CLI.

Usage:
  python main.py create-admin --email admin@example.com --name Admin
  python main.py set-role user@example.com moderator
  python main.py list-users
  python main.py serve --port 5500 --reload

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the identity store (required unless DEBUG=true)
  DEBUG          true = generate missing secrets and use a local SQLite file
"""

import argparse
import getpass
import sys
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import ROLES, User
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings

_MIN_PASSWORD = 8


def create_admin(store: UserStore, email: str, name: str, password: str, rounds: int = 10) -> Optional[int]:
    """Create a verified admin account. Returns its id, or None if the email is taken."""
    user = User(
        email=email,
        name=name.strip() or email.split("@", 1)[0],
        role="admin",
        hashed_password=hash_password(password, rounds),
        is_verified=datetime.now(timezone.utc).isoformat(),
    )
    try:
        return store.create_user(user)
    except IntegrityError:
        return None


def set_role(store: UserStore, email: str, role: str) -> bool:
    """Change the role of the account with `email`. Returns False if no such account."""
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role!r}")
    user = store.get_by_email(email)
    if user is None:
        return False
    return store.update_user(user.id, role=role)


def _read_password(given: Optional[str]) -> Optional[str]:
    if given:
        return given
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="master-auth",
        description="Administer the Master Auth identity store and run the server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --email admin@example.com --name Admin
  python main.py set-role user@example.com moderator
  DEBUG=true python main.py serve --reload
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_admin = sub.add_parser("create-admin", help="Create a verified admin account")
    p_admin.add_argument("--email", required=True, help="Admin email address")
    p_admin.add_argument("--name", default="", help="Display name (default: email local part)")
    p_admin.add_argument("--password", help="Password (prompted when omitted)")

    p_role = sub.add_parser("set-role", help="Change the role of an existing account")
    p_role.add_argument("email", help="Account email address")
    p_role.add_argument("role", choices=ROLES, help="New role")

    sub.add_parser("list-users", help="Print every account with its role")

    p_serve = sub.add_parser("serve", help="Run the API and client routes with uvicorn")
    p_serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    p_serve.add_argument("--port", type=int, default=5500, help="Port (default: 5500)")
    p_serve.add_argument("--reload", action="store_true", help="Reload on code changes (development)")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    if args.command == "serve":
        import uvicorn

        uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
        return 0

    settings = get_settings()
    store = UserStore(settings.database_url)
    try:
        if args.command == "create-admin":
            password = _read_password(args.password)
            if password is None:
                return 1
            if len(password) < _MIN_PASSWORD:
                print(f"  [!] Password must be at least {_MIN_PASSWORD} characters.")
                return 1
            user_id = create_admin(store, args.email, args.name, password, settings.bcrypt_rounds)
            if user_id is None:
                print(f"  [!] An account for {args.email} already exists. Use set-role instead.")
                return 1
            print(f"  Created admin {args.email} (id {user_id}).")

        elif args.command == "set-role":
            if not set_role(store, args.email, args.role):
                print(f"  [!] No account for {args.email}.")
                return 1
            print(f"  {args.email} is now {args.role}.")

        elif args.command == "list-users":
            users = store.list_users()
            if not users:
                print("  No accounts yet.")
            for u in users:
                flags = []
                if u.is_verified:
                    flags.append("verified")
                if u.two_factor_enabled:
                    flags.append("2fa")
                if u.oauth_provider:
                    flags.append(u.oauth_provider)
                print(f"  {u.id:>5}  {u.role:<10} {u.email}  {' '.join(flags)}")
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
