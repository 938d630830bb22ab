#!/usr/bin/env python3
"""
EstateGate -- administrative command line.

Usage:
  python main.py create-owner --email owner@example.com --username owner
  python main.py create-owner --email owner@example.com --username owner --password 'S3curePass'
  python main.py purge

Commands:
  create-owner  Create the single owner account. Owner is the only role that
                can create admins, so this is how a fresh deployment starts.
                Without --password a strong password is generated and printed
                once.
  purge         Delete expired refresh sessions and clear expired reset
                tokens. Request paths already ignore expired rows; this only
                reclaims storage.

Environment variables are read through core.config (DATABASE_URL,
SECRET_KEY, DEBUG, ...). The API server itself is started with
`uvicorn asgi:app`.
"""

import argparse
import sys

from api.models import RegisterRequest
from api.validation import validate
from auth.errors import AuthError
from auth.mailer import build_mailer
from auth.reset import PasswordResetService
from auth.service import AuthService
from auth.sessions import TokenService
from auth.store import AccountStore
from auth.tokens import generate_password
from core.bootstrap import configure_logging, install_error_hooks
from core.config import get_settings


def _build_services(store: AccountStore) -> tuple[AuthService, PasswordResetService, TokenService]:
    settings = get_settings()
    tokens = TokenService(store, settings)
    resets = PasswordResetService(store, tokens, build_mailer(settings), settings)
    return AuthService(store, tokens, resets), resets, tokens


def create_owner(store: AccountStore, email: str, username: str, password: str | None) -> int:
    """Validate input with the registration contract, then create the owner. Returns an exit code."""
    generated = password is None
    if generated:
        password = generate_password()

    result = validate({"username": username, "email": email, "password": password}, RegisterRequest)
    if not result.ok:
        for error in result.errors:
            print(f"  [!] {error}")
        return 2

    auth_service, _, _ = _build_services(store)
    try:
        account = auth_service.create_owner(result.payload.username, result.payload.email, result.payload.password)
    except AuthError as e:
        print(f"  [!] {e.message}")
        return 1

    print(f"  Owner '{account.username}' created (id {account.id}).")
    if generated:
        print(f"  Generated password: {password}")
        print("  Store it now -- it will not be shown again.")
    return 0


def purge(store: AccountStore) -> int:
    _, resets, tokens = _build_services(store)
    sessions = tokens.purge_expired_sessions()
    reset_tokens = resets.purge_expired_tokens()
    print(f"  Removed {sessions} expired session(s) and {reset_tokens} expired reset token(s).")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="estategate",
        description="EstateGate administrative commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-owner --email owner@example.com --username owner
  python main.py purge
        """,
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    owner = subparsers.add_parser("create-owner", help="Create the owner account")
    owner.add_argument("--email", required=True, help="Owner email address")
    owner.add_argument("--username", required=True, help="Owner username (3-30 letters, digits, _ or space)")
    owner.add_argument(
        "--password",
        default=None,
        help="Owner password. Omit to generate one (recommended -- avoids shell history).",
    )

    subparsers.add_parser("purge", help="Delete expired sessions and reset tokens")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    settings = get_settings()
    configure_logging(settings.log_level)
    install_error_hooks()

    store = AccountStore(settings.database_url)
    try:
        if args.command == "create-owner":
            return create_owner(store, args.email, args.username, args.password)
        return purge(store)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
