"""
Backup CLI tool for the classroom database.

Operator commands against the same BackupSubsystem the server uses:

    classroom-backup backup             snapshot + every configured channel
    classroom-backup backup-local       snapshot only
    classroom-backup backup-email       snapshot + email only
    classroom-backup list               local snapshots, newest first
    classroom-backup restore <file>     replace the live database
    classroom-backup check              integrity of the live database and snapshots
    classroom-backup startup-restore    run the startup fallback chain once
    classroom-backup email-test         verify SMTP and send a test message
    classroom-backup email-config       show the email configuration (redacted)

Configuration comes from the same environment variables as the server.

Invariants:
    - Exit status 0 only when the command fully succeeded
    - restore keeps a copy of the replaced database
    - Secrets are never printed

How to change safely:
    - Add commands additively; keep existing command names stable
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from ..config import ServerConfig
from ..delivery import Channel, EmailChannel
from ..delivery.email import format_size
from ..errors import BackupError
from ..subsystem import BackupRun, BackupSubsystem

logger = logging.getLogger(__name__)


def _print_run(run: BackupRun) -> int:
    print(f"Backup {run.outcome.value}")
    if run.snapshot:
        print(f"  Snapshot: {run.snapshot.filename} ({format_size(run.snapshot.size_bytes)})")
    for channel, result in run.channel_results.items():
        line = f"  {channel.value}: {result.status.value}"
        if result.error:
            line += f" ({result.error})"
        print(line)
    if run.error:
        print(f"  Error: {run.error}")
    return 0 if run.succeeded else 1


async def _backup(subsystem: BackupSubsystem, args: argparse.Namespace) -> int:
    run = await subsystem.trigger_backup(force=args.force)
    return _print_run(run)


async def _backup_local(subsystem: BackupSubsystem, args: argparse.Namespace) -> int:
    run = await subsystem.trigger_backup(channels=[], force=args.force)
    return _print_run(run)


async def _backup_email(subsystem: BackupSubsystem, args: argparse.Namespace) -> int:
    run = await subsystem.trigger_backup(channels=[Channel.EMAIL], force=args.force)
    return _print_run(run)


async def _list(subsystem: BackupSubsystem, args: argparse.Namespace) -> int:
    snapshots = subsystem.list_snapshots()
    if not snapshots:
        print(f"No snapshots in {subsystem.snapshots.backup_dir}")
        return 0

    print(f"{len(snapshots)} snapshot(s) in {subsystem.snapshots.backup_dir}:")
    for index, snapshot in enumerate(snapshots, start=1):
        print(
            f"  {index}. {snapshot.filename}  {format_size(snapshot.size_bytes)}  "
            f"{snapshot.created_at.isoformat()}"
        )
    return 0


async def _restore(subsystem: BackupSubsystem, args: argparse.Namespace) -> int:
    result = await subsystem.restore_from(args.snapshot)
    print("Restore completed successfully")
    print(f"  Source: {result['restored_from']}")
    print(f"  Database: {result['db_path']}")
    print(f"  Previous database kept at: {result['original_copy'] or 'none'}")
    return 0


async def _check(subsystem: BackupSubsystem, args: argparse.Namespace) -> int:
    report = await subsystem.check_integrity()
    status = "ok" if report.valid else f"INVALID ({report.reason})"
    print(f"Database {subsystem.db_path}: {status}")

    for snapshot in subsystem.list_snapshots():
        snapshot_report = subsystem.checker.check(snapshot.path)
        snapshot_status = "ok" if snapshot_report.valid else f"INVALID ({snapshot_report.reason})"
        print(f"  {snapshot.filename}: {snapshot_status}")

    return 0 if report.valid else 1


async def _startup_restore(subsystem: BackupSubsystem, args: argparse.Namespace) -> int:
    subsystem.snapshots.ensure_backup_dir()
    decision = await subsystem.coordinator.run()
    print(f"Startup restore: {decision.outcome.value}")
    print(f"  Source: {decision.source or 'none'}")
    print(f"  Attempts: {', '.join(state.value for state in decision.attempts)}")
    print(f"  Duration: {decision.duration_ms}ms")
    return 0


async def _email_test(subsystem: BackupSubsystem, args: argparse.Namespace) -> int:
    channel = EmailChannel(subsystem.config.email)
    result = await asyncio.get_event_loop().run_in_executor(
        None, lambda: channel.verify(send_test=not args.no_send)
    )
    print("SMTP connection ok")
    if result["test_message_sent"]:
        print(f"  Test message sent to {subsystem.config.email.to_addr}")
    else:
        print("  No test message sent")
    return 0


async def _email_config(subsystem: BackupSubsystem, args: argparse.Namespace) -> int:
    description: dict[str, Any] = EmailChannel(subsystem.config.email).describe_config()
    print(json.dumps(description, indent=2))
    return 0 if description["configured"] else 1


COMMANDS = {
    "backup": _backup,
    "backup-local": _backup_local,
    "backup-email": _backup_email,
    "list": _list,
    "restore": _restore,
    "check": _check,
    "startup-restore": _startup_restore,
    "email-test": _email_test,
    "email-config": _email_config,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="classroom-backup",
        description="Back up, check and restore the classroom points database",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("backup", "Snapshot and deliver to every configured channel"),
        ("backup-local", "Snapshot without off-box delivery"),
        ("backup-email", "Snapshot and deliver by email only"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--force", action="store_true", help="Skip integrity gates")

    subparsers.add_parser("list", help="List local snapshots")

    restore = subparsers.add_parser("restore", help="Replace the live database with a snapshot")
    restore.add_argument("snapshot", help="Snapshot filename (in the backup dir) or path")

    subparsers.add_parser("check", help="Check database and snapshot integrity")
    subparsers.add_parser("startup-restore", help="Run the startup recovery chain once")

    email_test = subparsers.add_parser("email-test", help="Verify SMTP settings")
    email_test.add_argument("--no-send", action="store_true", help="Only connect and log in")

    subparsers.add_parser("email-config", help="Show email configuration")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the backup tool."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    subsystem = BackupSubsystem.from_config(config)

    try:
        exit_code = asyncio.run(COMMANDS[args.command](subsystem, args))
    except BackupError as e:
        print(f"{args.command} failed: {e.message}", file=sys.stderr)
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
