#!/usr/bin/env python3
"""
DealFlow auth -- operator command line.

Bootstraps the first admin and handles the account chores that should not
need a running server.

Usage:
  python main.py create-admin admin@example.com
  python main.py create-admin admin@example.com --first-name Ada --last-name Lovelace
  python main.py set-role someone@example.com manager
  python main.py disable someone@example.com
  python main.py enable someone@example.com
  python main.py audit --limit 20
  python main.py audit --email someone@example.com
  python main.py purge-sessions

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth database (default: auth/dealflow_auth.db)
  SECRET_KEY    Required unless DEBUG=true, same as the API server.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.binder import disable_account, enable_account
from auth.errors import AuthError
from auth.models import ROLE_ADMIN, ROLES, Account
from auth.passwords import register_local_account
from auth.provisioning import ensure_crm_profile
from auth.store import AccountStore


def _find_account(store: AccountStore, email: str) -> Optional[Account]:
    account = store.get_account_by_email(email)
    if account is None:
        print(f"  [!] No account with email '{email}'.")
    return account


def _read_password() -> str:
    password = getpass.getpass("  Password: ")
    if password != getpass.getpass("  Confirm password: "):
        print("  [!] Passwords do not match.")
        return ""
    return password


def cmd_create_admin(store: AccountStore, args: argparse.Namespace) -> int:
    password = _read_password()
    if not password:
        return 1
    try:
        account = register_local_account(
            store, args.email, password, first_name=args.first_name, last_name=args.last_name
        )
    except AuthError as e:
        print(f"  [!] {e.message}")
        return 1
    ensure_crm_profile(store, account)
    store.set_role(account.id, ROLE_ADMIN)
    print(f"  Admin account created: {account.email} (id {account.id})")
    return 0


def cmd_set_role(store: AccountStore, args: argparse.Namespace) -> int:
    account = _find_account(store, args.email)
    if account is None:
        return 1
    ensure_crm_profile(store, account)
    store.set_role(account.id, args.role)
    print(f"  {account.email} is now '{args.role}'.")
    return 0


def cmd_disable(store: AccountStore, args: argparse.Namespace) -> int:
    account = _find_account(store, args.email)
    if account is None:
        return 1
    disable_account(store, account.id)
    print(f"  {account.email} disabled. All sessions ended.")
    return 0


def cmd_enable(store: AccountStore, args: argparse.Namespace) -> int:
    account = _find_account(store, args.email)
    if account is None:
        return 1
    enable_account(store, account.id)
    print(f"  {account.email} enabled.")
    return 0


def cmd_audit(store: AccountStore, args: argparse.Namespace) -> int:
    account_id = None
    if args.email:
        account = _find_account(store, args.email)
        if account is None:
            return 1
        account_id = account.id
    events = store.list_audit_events(limit=args.limit, account_id=account_id)
    if not events:
        print("  No audit events.")
        return 0
    for e in events:
        when = e.created_at.strftime("%Y-%m-%d %H:%M:%S") if e.created_at else "-"
        status = "ok  " if e.success else "FAIL"
        reason = f"  ({e.failure_reason})" if e.failure_reason else ""
        print(f"  {when}  {status}  {e.action:<28} {e.email or '-'}{reason}")
    return 0


def cmd_purge_sessions(store: AccountStore, args: argparse.Namespace) -> int:
    purged = store.purge_expired_sessions()
    print(f"  Purged {purged} expired session(s).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="dealflow-auth",
        description="DealFlow auth -- operator commands",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Run 'python main.py <command> --help' for command options.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-admin", help="Create a local account with role 'admin' (prompts for password)")
    p.add_argument("email")
    p.add_argument("--first-name", default=None)
    p.add_argument("--last-name", default=None)
    p.set_defaults(func=cmd_create_admin)

    p = sub.add_parser("set-role", help="Change an account's CRM role")
    p.add_argument("email")
    p.add_argument("role", choices=ROLES)
    p.set_defaults(func=cmd_set_role)

    p = sub.add_parser("disable", help="Disable an account and end its sessions")
    p.add_argument("email")
    p.set_defaults(func=cmd_disable)

    p = sub.add_parser("enable", help="Re-enable a disabled account")
    p.add_argument("email")
    p.set_defaults(func=cmd_enable)

    p = sub.add_parser("audit", help="Print recent audit events, newest first")
    p.add_argument("--limit", type=int, default=50, metavar="N")
    p.add_argument("--email", default=None, help="Only events for this account")
    p.set_defaults(func=cmd_audit)

    p = sub.add_parser("purge-sessions", help="Delete expired session rows")
    p.set_defaults(func=cmd_purge_sessions)

    args = parser.parse_args(argv)
    store = AccountStore()
    try:
        return args.func(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
