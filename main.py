#!/usr/bin/env python3
"""
smer-auth -- operator CLI for the account store.

Usage:
  python main.py create-account admin@example.com --name Admin
  python main.py deactivate 42
  python main.py purge-tokens

create-account provisions an already verified, active account (no activation
mail). The password is read with getpass, or from SMERAUTH_PASSWORD when
stdin is not a terminal.

Environment variables:
  DATABASE_URL   Account store (default: auth/smerauth.db next to this file).
  SECRET_KEY     Not needed by the CLI itself, but validated with the rest of
                 the settings; DEBUG=true generates one.
"""

import argparse
import getpass
import os
import sys
from typing import Optional

from auth.errors import AuthError
from auth.mailer import LogMailer
from auth.models import SignupProfile
from auth.service import AuthenticationService, build_service
from core.config import get_settings


def _read_password() -> str:
    """Prompt twice on a terminal; fall back to SMERAUTH_PASSWORD for scripts."""
    env_password = os.environ.get("SMERAUTH_PASSWORD")
    if env_password:
        return env_password
    password = getpass.getpass("Password: ")
    if getpass.getpass("Repeat password: ") != password:
        raise SystemExit("  [!] Passwords do not match.")
    return password


def _create_account(service: AuthenticationService, args: argparse.Namespace) -> int:
    profile = SignupProfile(
        email=args.email,
        password=_read_password(),
        username=args.username,
        name=args.name,
        surname=args.surname,
        patronymic=args.patronymic,
    )
    account_id = service.provision_account(profile)
    print(f"  Created account {account_id} ({profile.email.strip().lower()}), already activated.")
    return 0


def _deactivate(service: AuthenticationService, args: argparse.Namespace) -> int:
    service.deactivate(args.account_id)
    print(f"  Account {args.account_id} deactivated; refresh token revoked.")
    return 0


def _purge_tokens(service: AuthenticationService, args: argparse.Namespace) -> int:
    removed = service.purge_expired_tokens()
    print(f"  Removed {removed} expired activation/reset token(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="smer-auth",
        description="Operator commands for the smer-auth account store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-account admin@example.com --name Admin
  SMERAUTH_PASSWORD=... python main.py create-account ci@example.com
  python main.py deactivate 42
  DATABASE_URL=postgresql://user:pw@db/auth python main.py purge-tokens
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-account", help="Provision a verified, active account")
    create.add_argument("email", help="Login email (stored lowercased)")
    create.add_argument("--username", default="", help="Display username")
    create.add_argument("--name", default="", help="First name")
    create.add_argument("--surname", default="", help="Last name")
    create.add_argument("--patronymic", default="", help="Patronymic")
    create.set_defaults(handler=_create_account)

    deactivate = sub.add_parser("deactivate", help="Deactivate an account and revoke its sessions")
    deactivate.add_argument("account_id", type=int, metavar="ACCOUNT-ID")
    deactivate.set_defaults(handler=_deactivate)

    purge = sub.add_parser("purge-tokens", help="Delete expired activation and reset tokens")
    purge.set_defaults(handler=_purge_tokens)
    return parser


def main(argv: Optional[list[str]] = None, service: Optional[AuthenticationService] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    # The CLI never sends mail: provisioned accounts skip activation.
    service = service or build_service(get_settings(), mailer=LogMailer())
    try:
        return args.handler(service, args)
    except AuthError as exc:
        print(f"  [!] {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
