#!/usr/bin/env python3
"""
VPNWarden -- keeps VPN gateway nodes consistent with the credential store.

Usage:
  vpnwarden sync                          reconcile every node
  vpnwarden sync --node https://gw1:41194 reconcile one node
  vpnwarden sync --workers 4              reconcile nodes in parallel
  vpnwarden housekeeping                  expiry and retention sweeps
  vpnwarden add-user alice --admin        create a local account (prompts for password)
  vpnwarden disable-user alice            disable and disconnect an account
  vpnwarden enable-user alice
  vpnwarden delete-user alice             disconnect and delete an account
  vpnwarden revoke-authorization KEY      revoke one OAuth grant and its configurations

Meant to be run by cron or a systemd timer (sync every minute, housekeeping
daily). Exit status is 1 only for setup failures (bad configuration, store
unreachable), which abort before anything is changed. Failed calls to single
nodes are logged and left for the next run; they do not change the exit
status.

Configuration is read from the environment and .env (see core/config.py).
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.config import LOG_DATEFMT, LOG_FORMAT, Settings, get_settings
from core.errors import ConfigurationError, StoreError, UnknownAccount

logger = logging.getLogger("vpnwarden.cli")


def _open_store(settings: Settings):
    from core.expiry import ExpiryPolicy
    from credentials.store import CredentialStore

    return CredentialStore(settings.database_url, ExpiryPolicy(settings.session_expiry))


def _account_service(settings: Settings):
    """Build the account service with its whole object graph."""
    from auth.store import LocalUserStore
    from core.accounts import AccountService
    from core.connections import ConnectionManager
    from core.daemon import DaemonClient
    from core.nodes import NodeDirectory

    nodes = NodeDirectory(settings.profiles)
    store = _open_store(settings)
    connections = ConnectionManager(store, nodes, DaemonClient.from_settings(settings))
    return AccountService(
        store,
        connections,
        local_users=LocalUserStore(settings.database_url),
        connection_log_retention=settings.connection_log_retention,
        user_log_retention=settings.user_log_retention,
    )


def _print_revocation(user_or_key: str, result) -> None:
    if result.is_noop:
        print(f"{user_or_key}: nothing was connected.")
    else:
        print(
            f"{user_or_key}: {len(result.peers_removed)} peer(s) removed, "
            f"{len(result.certificates_disconnected)} client(s) disconnected, "
            f"{len(result.certificates_deleted)} certificate(s) deleted."
        )
    for failure in result.failures:
        print(f"  [!] {failure}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_sync(settings: Settings, args: argparse.Namespace) -> int:
    from core.daemon import DaemonClient
    from core.nodes import NodeDirectory
    from core.reconcile import ReconciliationEngine

    nodes = NodeDirectory.from_settings(settings)
    store = _open_store(settings)
    daemon = DaemonClient.from_settings(settings)
    workers = args.workers or settings.sync_workers
    engine = ReconciliationEngine(store, nodes, daemon, workers=workers)
    try:
        report = engine.run(node_urls=[args.node.rstrip("/")] if args.node else None)
    finally:
        daemon.close()
        store.close()

    for node in report.nodes:
        print(
            f"{node.node_url}: +{len(node.added)} -{len(node.removed)} "
            f"disconnected {len(node.disconnected)}, failures {len(node.failures)}"
        )
    return 0


def cmd_housekeeping(settings: Settings, args: argparse.Namespace) -> int:
    counts = _account_service(settings).housekeeping()
    for name, count in counts.items():
        print(f"{name}: {count} removed")
    return 0


def cmd_add_user(settings: Settings, args: argparse.Namespace) -> int:
    from auth.models import User
    from auth.store import LocalUserStore
    from auth.tokens import hash_password

    password = getpass.getpass(f"Password for {args.username}: ")
    if not password:
        print("ERROR: empty password", file=sys.stderr)
        return 1
    if getpass.getpass("Repeat password: ") != password:
        print("ERROR: passwords do not match", file=sys.stderr)
        return 1

    user_store = LocalUserStore(settings.database_url)
    try:
        user_store.create_user(
            User(username=args.username, role="admin" if args.admin else "user", hashed_password=hash_password(password))
        )
    except IntegrityError:
        print(f"ERROR: user '{args.username}' already exists", file=sys.stderr)
        return 1
    finally:
        user_store.close()
    store = _open_store(settings)
    store.ensure_user(args.username)
    store.close()
    print(f"Created {'admin' if args.admin else 'user'} '{args.username}'.")
    return 0


def cmd_disable_user(settings: Settings, args: argparse.Namespace) -> int:
    _print_revocation(args.username, _account_service(settings).disable_account(args.username, actor="cli"))
    return 0


def cmd_enable_user(settings: Settings, args: argparse.Namespace) -> int:
    _account_service(settings).enable_account(args.username, actor="cli")
    print(f"{args.username}: enabled.")
    return 0


def cmd_delete_user(settings: Settings, args: argparse.Namespace) -> int:
    _print_revocation(args.username, _account_service(settings).delete_account(args.username, actor="cli"))
    return 0


def cmd_revoke_authorization(settings: Settings, args: argparse.Namespace) -> int:
    _print_revocation("authorization", _account_service(settings).revoke_authorization(args.auth_key))
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vpnwarden",
        description="Reconcile VPN gateway nodes with the credential store and revoke access.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    p = sub.add_parser("sync", help="Run one reconciliation pass")
    p.add_argument("--node", metavar="URL", help="Reconcile only this node")
    p.add_argument("--workers", type=int, metavar="N", help="Nodes processed in parallel (default: SYNC_WORKERS)")
    p.set_defaults(func=cmd_sync)

    p = sub.add_parser("housekeeping", help="Delete expired configurations and old log entries")
    p.set_defaults(func=cmd_housekeeping)

    p = sub.add_parser("add-user", help="Create a local account")
    p.add_argument("username")
    p.add_argument("--admin", action="store_true", help="Grant admin API access")
    p.set_defaults(func=cmd_add_user)

    for name, func, text in (
        ("disable-user", cmd_disable_user, "Disable an account and disconnect its sessions"),
        ("enable-user", cmd_enable_user, "Re-enable a disabled account"),
        ("delete-user", cmd_delete_user, "Disconnect and delete an account"),
    ):
        p = sub.add_parser(name, help=text)
        p.add_argument("username")
        p.set_defaults(func=func)

    p = sub.add_parser("revoke-authorization", help="Revoke one OAuth grant and its configurations")
    p.add_argument("auth_key")
    p.set_defaults(func=cmd_revoke_authorization)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"ERROR: invalid configuration: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level.upper(),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )

    try:
        return args.func(settings, args)
    except (ConfigurationError, StoreError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except UnknownAccount as e:
        print(f"ERROR: account '{e}' does not exist", file=sys.stderr)
        return 1
    except SQLAlchemyError as e:
        logger.debug("Database error", exc_info=True)
        print(f"ERROR: database error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
