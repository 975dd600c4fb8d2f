"""CLI for ledger-mirrored backups.

Provides commands to create, inspect, verify, restore, and prune backups,
plus emergency recovery from the ledger when the primary store is down.

Usage:
    LEDGER_BACKUP_PROFILE=local ledger-backup full --by admin-1
    ledger-backup incremental FULL_20260101T000000000000Z
    ledger-backup list --type FULL --limit 10
    ledger-backup show FULL_20260101T000000000000Z
    ledger-backup verify FULL_20260101T000000000000Z
    ledger-backup restore FULL_20260101T000000000000Z --safe --yes
    ledger-backup restore-chain INC_20260102T000000000000Z --yes
    ledger-backup emergency --yes
    ledger-backup delete INC_20260102T000000000000Z
    ledger-backup cleanup --max-full 3 --max-incremental 9
    ledger-backup stats
    ledger-backup mirror-pending
    ledger-backup schedule --once
    ledger-backup verify-ledger

Commands:
    full           - Create a FULL backup
    incremental    - Create an INCREMENTAL backup on a parent
    list           - List backups (primary store, ledger fallback)
    show           - Show one backup
    verify         - Reconcile primary and ledger records
    restore        - Restore a FULL backup
    restore-chain  - Restore a backup chain up to a backup
    emergency      - Recover from ledger metadata only
    delete         - Delete a backup
    cleanup        - Apply the retention policy
    stats          - Show storage and ledger statistics
    mirror-pending - Resubmit records stuck in LEDGER_PENDING
    schedule       - Run scheduled backups, storage checks, and cleanup
    verify-ledger  - Check the ledger log's hash chain
"""

import argparse
import asyncio
import logging
import sys
from datetime import timedelta
from typing import Awaitable, Callable

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ledger_backup.adapters.filesystem import FileLedgerMirror
from ledger_backup.config import load_backup_config
from ledger_backup.errors import BackupError
from ledger_backup.factory import ProfileNotFoundError, build_service
from ledger_backup.models import (
    BackupFilter,
    BackupRecord,
    BackupStatus,
    BackupType,
    RestoreReport,
    TriggerMethod,
)
from ledger_backup.scheduler import BackupScheduler
from ledger_backup.service import BackupService

console = Console()

STATUS_STYLES = {
    BackupStatus.ACTIVE: "green",
    BackupStatus.LEDGER_PENDING: "yellow",
    BackupStatus.FAILED: "red",
    BackupStatus.DELETED: "dim",
}


# ============================================================================
# Rendering helpers
# ============================================================================


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def _records_table(records: list[BackupRecord], title: str) -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Backup ID", style="cyan")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Created (UTC)")
    table.add_column("Parent")
    table.add_column("Docs", justify="right")
    table.add_column("Size", justify="right")

    for record in records:
        style = STATUS_STYLES.get(record.status, "")
        table.add_row(
            record.backup_id,
            record.type.value,
            f"[{style}]{record.status.value}[/{style}]" if style else record.status.value,
            record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            record.parent_backup_id or "",
            str(record.document_count),
            _format_size(record.size_bytes),
        )
    return table


def _record_details(record: BackupRecord) -> Table:
    table = Table(title=f"Backup {record.backup_id}", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")

    for key, value in record.model_dump(mode="json").items():
        if key in ("collections", "changes") and value:
            value = ", ".join(
                f"{name}={v}" if not isinstance(v, dict)
                else f"{name}(+{v['upserted']}/-{v['deleted']})"
                for name, v in value.items()
            )
        table.add_row(key, "" if value is None else str(value))
    return table


def _print_restore(report: RestoreReport) -> None:
    table = Table(title="Restore steps", show_header=True, header_style="bold")
    table.add_column("Backup ID", style="cyan")
    table.add_column("Type")
    table.add_column("Outcome")
    table.add_column("Collections", justify="right")
    table.add_column("Documents", justify="right")

    outcome_styles = {"APPLIED": "green", "FAILED": "red", "SKIPPED": "dim", "CANCELLED": "yellow"}
    for step in report.steps:
        style = outcome_styles[step.outcome]
        table.add_row(
            step.backup_id,
            step.type.value,
            f"[{style}]{step.outcome}[/{style}]",
            str(step.collections),
            str(step.documents),
        )
    console.print(table)
    console.print(
        f"State: [bold]{report.state.value}[/bold]  "
        f"collections={report.collections_restored}  "
        f"documents={report.documents_restored}  "
        f"({report.duration_seconds:.2f}s)"
    )


def _print_error(error: BackupError) -> None:
    console.print(f"\n[bold red]x[/bold red] [red]{error.kind.value}[/red]: {error.message}")
    if error.backup_id:
        console.print(f"  [dim]backup:[/dim] {error.backup_id}")
    if error.step:
        console.print(f"  [dim]step:[/dim] {error.step}")
    if error.cause is not None:
        console.print(f"  [dim]cause:[/dim] {error.cause!r}")
    report = error.report
    if isinstance(report, RestoreReport):
        _print_restore(report)


def _confirm(args: argparse.Namespace, message: str) -> bool:
    if getattr(args, "yes", False):
        return True
    console.print(f"[yellow]{message}[/yellow]")
    response = input("Continue? [y/N] ")
    return response.lower() in ("y", "yes")


# ============================================================================
# Service wiring
# ============================================================================


def _open_service(args: argparse.Namespace) -> BackupService:
    config = load_backup_config(getattr(args, "config", None))
    return build_service(config, getattr(args, "profile", None))


async def _with_service(
    args: argparse.Namespace,
    action: Callable[[argparse.Namespace, BackupService], Awaitable[int]],
) -> int:
    """Open the service, run ``action``, and map failures to exit code 1."""
    try:
        service = _open_service(args)
    except (FileNotFoundError, ProfileNotFoundError, KeyError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    try:
        return await action(args, service)
    except BackupError as e:
        _print_error(e)
        return 1
    finally:
        await service.close()


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_full(args: argparse.Namespace, service: BackupService) -> int:
    console.print("Creating FULL backup...", style="dim")
    result = await service.create_full_backup(
        args.triggered_by,
        trigger_method=TriggerMethod(args.method),
        wait_for_mirror=True,
    )
    console.print(_record_details(result.record))
    return 0 if result.record.status is BackupStatus.ACTIVE else 1


async def _async_incremental(args: argparse.Namespace, service: BackupService) -> int:
    console.print(f"Creating INCREMENTAL backup on {args.parent}...", style="dim")
    result = await service.create_incremental_backup(
        args.parent,
        triggered_by=args.triggered_by,
        trigger_method=TriggerMethod(args.method),
        wait_for_mirror=True,
    )
    if result.chain_reset:
        console.print(
            "[yellow]Chain depth limit reached; created a FULL backup instead.[/yellow]"
        )
    console.print(_record_details(result.record))
    return 0 if result.record.status is BackupStatus.ACTIVE else 1


async def _async_list(args: argparse.Namespace, service: BackupService) -> int:
    filter = BackupFilter(
        type=BackupType(args.type) if args.type else None,
        status=[BackupStatus(s) for s in args.status] if args.status else None,
        triggered_by=args.triggered_by,
    )
    result = await service.list_backups(filter, args.limit)
    if result.source == "unavailable":
        console.print(f"[bold red]x[/bold red] No metadata source available: {result.error}")
        return 1

    console.print(_records_table(result.records, f"Backups (source: {result.source})"))
    if result.source == "ledger":
        console.print("[yellow]Primary store unavailable; records read from ledger.[/yellow]")
    return 0


async def _async_show(args: argparse.Namespace, service: BackupService) -> int:
    record = await service.get_backup(args.backup_id)
    console.print(_record_details(record))
    return 0


async def _async_verify(args: argparse.Namespace, service: BackupService) -> int:
    if args.all:
        results = await service.verify_all_backups()
    else:
        if not args.backup_id:
            console.print("[red]Error: backup id required (or --all)[/red]")
            return 1
        results = [await service.verify_backup(args.backup_id)]

    table = Table(title="Reconciliation", show_header=True, header_style="bold")
    table.add_column("Backup ID", style="cyan")
    table.add_column("Match")
    table.add_column("Mismatched")
    table.add_column("Errors", style="dim")
    for result in results:
        errors = "; ".join(e for e in (result.primary_error, result.ledger_error) if e)
        table.add_row(
            result.backup_id,
            "[green]yes[/green]" if result.match else "[red]no[/red]",
            ", ".join(result.mismatched_fields),
            errors,
        )
    console.print(table)
    return 0 if all(r.match for r in results) else 1


async def _async_restore(args: argparse.Namespace, service: BackupService) -> int:
    mode = "safe (merge)" if args.safe else "destructive (replace)"
    if not _confirm(args, f"Restore {args.backup_id} in {mode} mode?"):
        console.print("Cancelled.")
        return 0
    report = await service.restore_full(args.backup_id, safe_mode=args.safe)
    _print_restore(report)
    return 0


async def _async_restore_chain(args: argparse.Namespace, service: BackupService) -> int:
    if not _confirm(args, f"Restore the chain ending at {args.backup_id}? Live data will be replaced."):
        console.print("Cancelled.")
        return 0
    report = await service.restore_chain(args.backup_id)
    _print_restore(report)
    return 0


async def _async_emergency(args: argparse.Namespace, service: BackupService) -> int:
    if not _confirm(args, "Run emergency recovery from ledger metadata?"):
        console.print("Cancelled.")
        return 0
    report = await service.emergency_recovery(force=args.force)

    console.print(
        f"Recovered to [bold cyan]{report.target_backup_id}[/bold cyan] "
        f"(FULL {report.backup_id}, chain of {report.chain_length}, "
        f"{report.ledger_records} ledger record(s))"
    )
    if report.already_applied:
        console.print("[dim]Live data already matched; nothing applied.[/dim]")
    for step in report.steps:
        console.print(f"  {step.backup_id}: {step.outcome}")
    console.print(f"State: [bold]{report.state.value}[/bold]")
    if report.error:
        console.print(f"[red]{report.error['kind']}: {report.error['message']}[/red]")
        return 1
    return 0


async def _async_delete(args: argparse.Namespace, service: BackupService) -> int:
    record = await service.delete_backup(args.backup_id, purge_primary=args.purge)
    console.print(f"[bold green]v[/bold green] {record.backup_id} deleted")
    return 0


async def _async_cleanup(args: argparse.Namespace, service: BackupService) -> int:
    policy = service.config.retention.to_policy()
    overrides: dict = {}
    if args.max_full is not None or args.max_incremental is not None:
        limits = dict(policy.max_count_per_type or {})
        if args.max_full is not None:
            limits[BackupType.FULL] = args.max_full
        if args.max_incremental is not None:
            limits[BackupType.INCREMENTAL] = args.max_incremental
        overrides["max_count_per_type"] = limits
    if args.max_age_days is not None:
        overrides["max_age"] = timedelta(days=args.max_age_days)
    policy = policy.model_copy(update=overrides)

    result = await service.cleanup_old_backups(policy)
    console.print(f"Deleted: {', '.join(result.deleted_ids) or '(none)'}")
    if result.skipped_ids:
        console.print(f"[yellow]Kept (live dependents): {', '.join(result.skipped_ids)}[/yellow]")
    for backup_id, error in result.errors.items():
        console.print(f"[red]{backup_id}: {error}[/red]")
    return 1 if result.errors else 0


async def _async_stats(args: argparse.Namespace, service: BackupService) -> int:
    storage = await service.get_storage_stats()
    ledger = await service.get_ledger_stats()

    table = Table(title="Backup statistics", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    alert_style = {"OK": "green", "WARNING": "yellow", "CRITICAL": "red"}[storage.alert_level]
    table.add_row("Source", storage.source)
    table.add_row("Active backups", f"{storage.total_backups} "
                  f"({storage.full_backups} full, {storage.incremental_backups} incremental)")
    table.add_row(
        "Storage used",
        f"{_format_size(storage.used_bytes)} / {_format_size(storage.limit_bytes)} "
        f"([{alert_style}]{storage.usage_percentage:.2f}% {storage.alert_level}[/{alert_style}])",
    )
    table.add_row("Oldest", str(storage.oldest_backup or ""))
    table.add_row("Newest", str(storage.newest_backup or ""))
    if ledger.available:
        table.add_row("Ledger records", f"{ledger.total} ({ledger.active} active, {ledger.deleted} deleted)")
    else:
        table.add_row("Ledger", f"[red]unavailable[/red] {ledger.error or ''}")
    console.print(table)
    return 0


async def _async_mirror_pending(args: argparse.Namespace, service: BackupService) -> int:
    ids = await service.resubmit_pending()
    await service.wait_for_mirroring()
    console.print(f"Resubmitted {len(ids)} record(s): {', '.join(ids) or '(none)'}")
    return 0


async def _async_schedule(args: argparse.Namespace, service: BackupService) -> int:
    scheduler = BackupScheduler(service)
    if args.once:
        ran = await scheduler.run_pending()
        status = scheduler.status
        console.print(f"Ran: {', '.join(ran) or '(nothing due)'}")
        console.print(
            f"Backups completed: {status.backups_completed}  failed: {status.backups_failed}"
        )
        if status.storage is not None:
            console.print(
                f"Storage: {status.storage.usage_percentage:.2f}% ({status.storage.alert_level})"
            )
        if status.last_cleanup is not None:
            console.print(f"Cleanup deleted: {', '.join(status.last_cleanup.deleted_ids) or '(none)'}")
        return 1 if status.backups_failed else 0

    if not scheduler.settings.enabled:
        console.print(
            "[yellow]Scheduling is disabled; set enabled = true in the schedule "
            "section of backup.toml, or use --once.[/yellow]"
        )
        return 1
    console.print("Backup scheduler running, Ctrl+C to stop.", style="dim")
    try:
        await scheduler.start()
    finally:
        await scheduler.stop()
    return 0


async def _async_verify_ledger(args: argparse.Namespace, service: BackupService) -> int:
    if not isinstance(service.ledger, FileLedgerMirror):
        console.print("[yellow]Ledger log verification needs a file ledger.[/yellow]")
        return 1
    broken = service.ledger.verify_log()
    if broken:
        console.print(
            f"[bold red]x[/bold red] Hash chain broken at line(s): "
            f"{', '.join(str(n) for n in broken)}"
        )
        return 1
    console.print("[bold green]v[/bold green] Ledger hash chain intact")
    return 0


# ============================================================================
# Sync command wrappers
# ============================================================================


def cmd_full(args: argparse.Namespace) -> int:
    """Create a FULL backup.

    Wraps the async implementation with ``asyncio.run()``.

    Returns:
        0 when the backup is stored and mirrored, 1 otherwise.
    """
    return asyncio.run(_with_service(args, _async_full))


def cmd_incremental(args: argparse.Namespace) -> int:
    """Create an INCREMENTAL backup on ``args.parent``."""
    return asyncio.run(_with_service(args, _async_incremental))


def cmd_list(args: argparse.Namespace) -> int:
    """List backups.  Returns 1 only when no metadata source answers."""
    return asyncio.run(_with_service(args, _async_list))


def cmd_show(args: argparse.Namespace) -> int:
    return asyncio.run(_with_service(args, _async_show))


def cmd_verify(args: argparse.Namespace) -> int:
    """Reconcile one or all backups.  Returns 1 on any mismatch."""
    return asyncio.run(_with_service(args, _async_verify))


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore a FULL backup (destructive unless ``--safe``)."""
    return asyncio.run(_with_service(args, _async_restore))


def cmd_restore_chain(args: argparse.Namespace) -> int:
    return asyncio.run(_with_service(args, _async_restore_chain))


def cmd_emergency(args: argparse.Namespace) -> int:
    """Recover from ledger metadata.

    Wraps the async implementation with ``asyncio.run()``.

    Returns:
        0 on COMPLETE, 1 on failure or if the primary store is reachable
        without ``--force``.
    """
    return asyncio.run(_with_service(args, _async_emergency))


def cmd_delete(args: argparse.Namespace) -> int:
    return asyncio.run(_with_service(args, _async_delete))


def cmd_cleanup(args: argparse.Namespace) -> int:
    """Apply the retention policy from backup.toml plus CLI overrides."""
    return asyncio.run(_with_service(args, _async_cleanup))


def cmd_stats(args: argparse.Namespace) -> int:
    return asyncio.run(_with_service(args, _async_stats))


def cmd_mirror_pending(args: argparse.Namespace) -> int:
    return asyncio.run(_with_service(args, _async_mirror_pending))


def cmd_schedule(args: argparse.Namespace) -> int:
    """Run scheduled backups until interrupted, or one pass with ``--once``.

    Returns:
        0 on a clean stop or a pass without failed backups, 1 otherwise.
    """
    try:
        return asyncio.run(_with_service(args, _async_schedule))
    except KeyboardInterrupt:
        console.print("Backup scheduler stopped.", style="dim")
        return 0


def cmd_verify_ledger(args: argparse.Namespace) -> int:
    """Check the file ledger's hash chain.  Returns 1 if it is broken."""
    return asyncio.run(_with_service(args, _async_verify_ledger))


# ============================================================================
# Main entry point
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledger-backup",
        description="Ledger-mirrored backup, restore, and recovery",
    )
    parser.add_argument("--config", help="Path to backup.toml (default: $LEDGER_BACKUP_CONFIG or ./backup.toml)")
    parser.add_argument("--profile", help="Primary store profile (default: $LEDGER_BACKUP_PROFILE)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # full command
    p_full = subparsers.add_parser("full", help="Create a FULL backup")
    p_full.add_argument("--by", dest="triggered_by", default="SYSTEM", help="Who triggered the backup")
    p_full.add_argument("--method", choices=[m.value for m in TriggerMethod], default="MANUAL")
    p_full.set_defaults(func=cmd_full)

    # incremental command
    p_inc = subparsers.add_parser("incremental", help="Create an INCREMENTAL backup")
    p_inc.add_argument("parent", help="Parent backup id")
    p_inc.add_argument("--by", dest="triggered_by", default="SYSTEM", help="Who triggered the backup")
    p_inc.add_argument("--method", choices=[m.value for m in TriggerMethod], default="MANUAL")
    p_inc.set_defaults(func=cmd_incremental)

    # list command
    p_list = subparsers.add_parser("list", help="List backups")
    p_list.add_argument("--type", choices=[t.value for t in BackupType])
    p_list.add_argument("--status", action="append", choices=[s.value for s in BackupStatus])
    p_list.add_argument("--by", dest="triggered_by")
    p_list.add_argument("--limit", type=int, default=50)
    p_list.set_defaults(func=cmd_list)

    # show command
    p_show = subparsers.add_parser("show", help="Show one backup")
    p_show.add_argument("backup_id")
    p_show.set_defaults(func=cmd_show)

    # verify command
    p_verify = subparsers.add_parser("verify", help="Reconcile primary and ledger records")
    p_verify.add_argument("backup_id", nargs="?")
    p_verify.add_argument("--all", action="store_true", help="Verify every known backup")
    p_verify.set_defaults(func=cmd_verify)

    # restore command
    p_restore = subparsers.add_parser("restore", help="Restore a FULL backup")
    p_restore.add_argument("backup_id")
    p_restore.add_argument("--safe", action="store_true", help="Merge by primary key instead of replacing")
    p_restore.add_argument("--yes", "-y", action="store_true", help="Skip confirmation")
    p_restore.set_defaults(func=cmd_restore)

    # restore-chain command
    p_chain = subparsers.add_parser("restore-chain", help="Restore a backup chain")
    p_chain.add_argument("backup_id")
    p_chain.add_argument("--yes", "-y", action="store_true", help="Skip confirmation")
    p_chain.set_defaults(func=cmd_restore_chain)

    # emergency command
    p_emergency = subparsers.add_parser("emergency", help="Recover from ledger metadata")
    p_emergency.add_argument("--force", action="store_true", help="Run even if the primary store answers")
    p_emergency.add_argument("--yes", "-y", action="store_true", help="Skip confirmation")
    p_emergency.set_defaults(func=cmd_emergency)

    # delete command
    p_delete = subparsers.add_parser("delete", help="Delete a backup")
    p_delete.add_argument("backup_id")
    p_delete.add_argument("--purge", action="store_true", help="Also remove the primary record")
    p_delete.set_defaults(func=cmd_delete)

    # cleanup command
    p_cleanup = subparsers.add_parser("cleanup", help="Apply the retention policy")
    p_cleanup.add_argument("--max-full", type=int)
    p_cleanup.add_argument("--max-incremental", type=int)
    p_cleanup.add_argument("--max-age-days", type=float)
    p_cleanup.set_defaults(func=cmd_cleanup)

    # stats command
    p_stats = subparsers.add_parser("stats", help="Show storage and ledger statistics")
    p_stats.set_defaults(func=cmd_stats)

    # mirror-pending command
    p_pending = subparsers.add_parser("mirror-pending", help="Resubmit LEDGER_PENDING records")
    p_pending.set_defaults(func=cmd_mirror_pending)

    # schedule command
    p_schedule = subparsers.add_parser("schedule", help="Run scheduled backups and cleanup")
    p_schedule.add_argument("--once", action="store_true", help="Run the jobs that are due once and exit")
    p_schedule.set_defaults(func=cmd_schedule)

    # verify-ledger command
    p_vledger = subparsers.add_parser("verify-ledger", help="Check the ledger hash chain")
    p_vledger.set_defaults(func=cmd_verify_ledger)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
