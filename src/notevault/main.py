#!/usr/bin/env python
"""Command line entry point for NoteVault."""
import argparse
import getpass
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from notevault import __version__
from notevault.config import config
from notevault.exceptions import NoteVaultError, PasswordError, PasswordRequired
from notevault.models.schema import MergePolicy
from notevault.observability import configure_logging, sanitize_error_message
from notevault.services.vault_service import VaultService

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="notevault", description="Back up, restore and re-key a note store"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("NOTEVAULT_DATABASE_PATH"),
    )
    parser.add_argument(
        "--preferences-path",
        help="Preferences file path",
        type=str,
        default=os.environ.get("NOTEVAULT_PREFERENCES_PATH"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=config.log_level,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    export_cmd = commands.add_parser("export", help="Write the store to a backup file")
    export_cmd.add_argument("file", help="Backup file to write")
    export_cmd.add_argument(
        "--private", action="store_true", help="Include private notes and the password hash"
    )

    import_cmd = commands.add_parser("import", help="Merge a backup file into the store")
    import_cmd.add_argument("file", help="Backup file to read")
    import_cmd.add_argument(
        "--policy",
        choices=[p.value for p in MergePolicy],
        default=MergePolicy.UPDATE.value,
        help="How backup records interact with existing ones (default: update)",
    )
    import_cmd.add_argument("--private", action="store_true", help="Import private notes")

    passwd_cmd = commands.add_parser("passwd", help="Set, change or clear the store password")
    passwd_cmd.add_argument(
        "--old", action="store_true", help="Prompt for the current password"
    )
    passwd_cmd.add_argument("--new", action="store_true", help="Prompt for a new password")

    commands.add_parser("status", help="Show what the store holds")
    return parser.parse_args(argv)


def update_config(args: argparse.Namespace) -> None:
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)
    if args.preferences_path:
        config.preferences_path = Path(args.preferences_path)
    config.log_level = args.log_level.upper()


def _prompt_new_password() -> Optional[str]:
    first = getpass.getpass("New password (empty to clear): ")
    if not first:
        return None
    if getpass.getpass("Repeat new password: ") != first:
        raise PasswordError("The passwords do not match")
    return first


def run_export(service: VaultService, args: argparse.Namespace) -> None:
    summary = service.export(args.file, include_private=args.private)
    print(
        f"Exported {summary.categories} categories and {summary.notes} notes "
        f"to {summary.destination}"
    )


def run_import(service: VaultService, args: argparse.Namespace) -> None:
    store_password = None
    if args.private and service.password_service.has_password():
        store_password = getpass.getpass("Store password: ")
    old_password = None
    while True:
        try:
            summary = service.import_(
                args.file,
                args.policy,
                include_private=args.private,
                old_password=old_password,
                store_password=store_password,
            )
            break
        except PasswordRequired:
            if old_password is not None:
                raise
            old_password = getpass.getpass("Backup password: ")
    print(
        f"Imported ({summary.policy.value}): {summary.categories} categories, "
        f"{summary.notes.inserted} notes added, {summary.notes.updated} replaced, "
        f"{summary.notes.skipped} skipped"
    )


def run_passwd(service: VaultService, args: argparse.Namespace) -> None:
    old_password = None
    if args.old or service.password_service.has_password():
        old_password = getpass.getpass("Current password: ")
    new_password = None
    if args.new or not args.old:
        new_password = _prompt_new_password()
    summary = service.change_password(old_password, new_password)
    print(f"Password change {summary.transition.value}: {summary.notes_changed} notes updated")


def run_status(service: VaultService, args: argparse.Namespace) -> None:
    status = service.status()
    print(f"Categories:      {status['categories']}")
    print(f"Notes:           {status['notes']}")
    print(f"  public:        {status['public_notes']}")
    print(f"  private:       {status['private_notes']}")
    print(f"  encrypted:     {status['encrypted_notes']}")
    print(f"Password set:    {'yes' if status['password_set'] else 'no'}")
    activity = status["activity"]
    if activity["total_operations"]:
        print(
            f"Operations:      {activity['total_operations']} "
            f"({activity['total_errors']} failed)"
        )


COMMANDS = {
    "export": run_export,
    "import": run_import,
    "passwd": run_passwd,
    "status": run_status,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Run a NoteVault command. Returns the process exit status."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        configure_logging(config.log_dir, level=log_level, console=False)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logger.warning(f"Failed to configure file logging: {e}")

    try:
        with VaultService() as service:
            COMMANDS[args.command](service, args)
    except PasswordError as e:
        print(f"Rejected: {e.message}", file=sys.stderr)
        return 1
    except NoteVaultError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {sanitize_error_message(e.message)}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
