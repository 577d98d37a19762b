#!/usr/bin/env python3
"""
DashGate -- Self-hosted app launcher with unified authentication.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 1738
  python main.py create-admin alice
  python main.py create-admin alice --email alice@example.com

Environment variables:
  DB_PATH          SQLite database location (default /config/dashgate.db)
  CONFIG_PATH      Static app config (YAML)
  ENCRYPTION_KEY   Optional 64 hex chars; otherwise a key is generated and stored
  COOKIE_SECURE    true/false; overrides the stored setting
  AUTH_MODE        authelia | local | hybrid; seeds providers before setup
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.crypto import resolve_encryption_key
from auth.models import User
from auth.passwords import hash_password
from auth.settings import SettingsManager
from auth.store import open_store
from core.config import VERSION, get_settings

MIN_PASSWORD_LENGTH = 8


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    env = get_settings()
    uvicorn.run("asgi:app", host=args.host, port=args.port or env.port, proxy_headers=False)
    return 0


def _prompt_password() -> str:
    """Ask twice; returns "" when the entries differ or are too short."""
    password = getpass.getpass("Password: ")
    if len(password) < MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        return ""
    if getpass.getpass("Confirm password: ") != password:
        print("  [!] Passwords do not match.")
        return ""
    return password


def create_admin(username: str, password: str, email: str = "") -> int:
    """Create a local admin, enable local auth and mark setup complete.

    Returns the new user id. Raises IntegrityError when the username or email
    is taken.
    """
    env = get_settings()
    store = open_store(env.db_path)
    try:
        key = resolve_encryption_key(store, env.encryption_key)
        manager = SettingsManager(store, key, env)
        admin_group = manager.load().admin_group.split(",")[0].strip() or "admin"

        user_id = store.create_user(
            User(
                username=username,
                password_hash=hash_password(password),
                email=email or None,
                display_name=username,
                groups=[admin_group],
            )
        )

        def enable_local(s) -> None:
            s.local_auth_enabled = True
            s.setup_completed = True

        manager.apply(enable_local)
        store.log_audit(username, "user_created", f"Created admin {username!r} from the command line")
        return user_id
    finally:
        store.close()


def _create_admin(args: argparse.Namespace) -> int:
    username = args.username.strip()
    if not username:
        print("  [!] Username must not be empty.")
        return 1
    password = _prompt_password()
    if not password:
        return 1
    try:
        user_id = create_admin(username, password, args.email.strip())
    except IntegrityError:
        print(f"  [!] A user named '{username}' (or with that email) already exists.")
        return 1
    print(f"  Created admin '{username}' (id={user_id}). Local authentication is enabled.")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="dashgate",
        description="Self-hosted app launcher with unified authentication.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --port 8080
  python main.py create-admin alice --email alice@example.com
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    serve.add_argument("--port", type=int, default=None, help="Listen port (default: PORT or 1738)")
    serve.set_defaults(func=_serve)

    admin = sub.add_parser("create-admin", help="Create a local admin account")
    admin.add_argument("username", metavar="USERNAME")
    admin.add_argument("--email", default="", help="Optional email address")
    admin.set_defaults(func=_create_admin)

    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 1
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
