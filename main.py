#!/usr/bin/env python3
"""
SessionKit -- operator commands for the credential store.

Usage:
  python main.py init-db
  python main.py create-admin --email admin@example.com --username admin --name "Site Admin"
  python main.py sessions admin@example.com
  python main.py revoke-all admin@example.com

Configuration comes from the same environment / .env as the API
(DATABASE_URL, ACCESS_TOKEN_SECRET, REFRESH_TOKEN_SECRET, ...).

create-admin reads the password from ADMIN_PASSWORD if set, otherwise prompts
for it without echo.
"""

import argparse
import getpass
import logging
import os
import sys

from auth.errors import AuthError
from auth.models import Role
from auth.passwords import PasswordHasher
from auth.store import CredentialStore, connect_with_retry
from core.config import get_settings

logger = logging.getLogger("sessionkit.cli")


def _email(value: str) -> str:
    """Normalize an email argument the same way the API request models do."""
    return value.strip().lower()


def _open_store() -> CredentialStore:
    settings = get_settings()
    store = CredentialStore(
        settings.database_url,
        refresh_ttl_days=settings.refresh_token_expire_days,
        statement_timeout_ms=settings.db_statement_timeout_ms,
    )
    connect_with_retry(store, attempts=settings.db_connect_retries, delay=settings.db_connect_retry_delay)
    return store


def cmd_init_db(store: CredentialStore, args: argparse.Namespace) -> int:
    store.create_schema()
    print("  Schema ready.")
    return 0


def cmd_create_admin(store: CredentialStore, args: argparse.Namespace) -> int:
    password = os.environ.get("ADMIN_PASSWORD") or getpass.getpass("  Password: ")
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 2
    password_hash = PasswordHasher().hash(password)
    store.create_schema()
    with store.transaction() as tx:
        tx.ensure_unique(args.email, args.username)
        user = tx.create_user(args.email, args.username, password_hash, args.name, role=Role.SUPER_ADMIN)
    print(f"  Created {Role.SUPER_ADMIN.value} {user.username} (id: {user.id})")
    return 0


def cmd_sessions(store: CredentialStore, args: argparse.Namespace) -> int:
    user = store.find_user_by_email(args.email)
    if user is None:
        print(f"  [!] No account for '{args.email}'.")
        return 1
    print(f"  {user.username}: {store.count_active_sessions(user.id)} active session(s)")
    return 0


def cmd_revoke_all(store: CredentialStore, args: argparse.Namespace) -> int:
    user = store.find_user_by_email(args.email)
    if user is None:
        print(f"  [!] No account for '{args.email}'.")
        return 1
    count = store.revoke_all_sessions(user.id)
    print(f"  Revoked {count} session(s) for {user.username}.")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SessionKit credential store operations.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables if they do not exist").set_defaults(func=cmd_init_db)

    admin = sub.add_parser("create-admin", help="Create a SUPER_ADMIN account with a password")
    admin.add_argument("--email", required=True, type=_email)
    admin.add_argument("--username", required=True)
    admin.add_argument("--name", default="Administrator")
    admin.set_defaults(func=cmd_create_admin)

    sessions = sub.add_parser("sessions", help="Show how many active sessions an account holds")
    sessions.add_argument("email", type=_email)
    sessions.set_defaults(func=cmd_sessions)

    revoke = sub.add_parser("revoke-all", help="Sign an account out everywhere")
    revoke.add_argument("email", type=_email)
    revoke.set_defaults(func=cmd_revoke_all)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(level=get_settings().log_level, format="%(levelname)-5s %(name)s %(message)s")
    store = _open_store()
    try:
        return args.func(store, args)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
