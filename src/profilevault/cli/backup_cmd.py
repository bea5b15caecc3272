"""CLI commands for profile backups: pvault backup now/list/restore/delete/verify/orphans/adopt."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path

import click

from profilevault.core.config import config_path, load_config, resolve_home
from profilevault.core.service import BackupService, OperationResult

home_option = click.option(
    "--home",
    type=click.Path(path_type=Path),
    default=None,
    help="Override PVAULT_HOME path.",
)


def _service(home: Path | None, profile: str) -> BackupService:
    home_path = home or resolve_home()
    config = load_config(config_path(home_path))
    try:
        return BackupService.for_profile(home_path, profile, config)
    except ValueError as e:
        raise click.ClickException(str(e)) from e


def format_bytes(size: int) -> str:
    """Human-readable byte count (1024-based)."""
    if size == 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"


def _format_ts(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def report(result: OperationResult) -> None:
    """Echo a service result; failures exit non-zero."""
    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)
    if not result.success:
        kind = result.error_kind.value if result.error_kind else "Error"
        raise click.ClickException(f"{kind}: {result.message}")
    click.echo(result.message)


@click.group("backup")
def backup_group() -> None:
    """Create, list and restore profile backups."""


@backup_group.command("now")
@click.argument("profile")
@home_option
@click.option("--if-changed", is_flag=True, help="Skip if the profile has not changed since the last backup.")
def backup_now(profile: str, home: Path | None, if_changed: bool) -> None:
    """Back up PROFILE now."""
    service = _service(home, profile)
    report(asyncio.run(service.create_backup(only_if_changed=if_changed)))


@backup_group.command("list")
@click.argument("profile")
@home_option
@click.option("--json", "as_json", is_flag=True, help="Print the backup list as JSON.")
def backup_list(profile: str, home: Path | None, as_json: bool) -> None:
    """List retained backups of PROFILE, newest first."""
    service = _service(home, profile)
    backups = asyncio.run(service.list_backups())

    if as_json:
        click.echo(json.dumps([b.to_dict() for b in backups], indent=2))
        return
    if not backups:
        click.echo("No backups available.")
        return
    for b in backups:
        click.echo(
            f"  {b.id}  {_format_ts(b.timestamp)}  "
            f"{b.file_count} files, {format_bytes(b.size)}  [{b.reason}]"
        )


@backup_group.command("restore")
@click.argument("profile")
@click.argument("backup_id")
@home_option
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
def backup_restore(profile: str, backup_id: str, home: Path | None, yes: bool) -> None:
    """Replace PROFILE with the contents of BACKUP_ID."""
    if not yes:
        click.confirm(
            "This will replace your current profile with the selected backup. "
            "A backup of your current profile will be created first. Continue?",
            abort=True,
        )
    service = _service(home, profile)
    report(asyncio.run(service.restore(backup_id)))


@backup_group.command("delete")
@click.argument("profile")
@click.argument("backup_id")
@home_option
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
def backup_delete(profile: str, backup_id: str, home: Path | None, yes: bool) -> None:
    """Delete BACKUP_ID of PROFILE."""
    if not yes:
        click.confirm(f"Delete backup {backup_id}? This cannot be undone.", abort=True)
    service = _service(home, profile)
    report(asyncio.run(service.delete_backup(backup_id)))


@backup_group.command("verify")
@click.argument("profile")
@click.argument("backup_id", required=False)
@home_option
def backup_verify(profile: str, backup_id: str | None, home: Path | None) -> None:
    """Check backups of PROFILE against the index (all, or just BACKUP_ID)."""
    service = _service(home, profile)

    async def _verify() -> list[OperationResult]:
        ids = [backup_id] if backup_id else [b.id for b in await service.list_backups()]
        return [await service.verify_backup(i) for i in ids]

    results = asyncio.run(_verify())
    if not results:
        click.echo("No backups available.")
        return
    failed = 0
    for result in results:
        status = "OK" if result.success else "FAILED"
        click.echo(f"  {status}: {result.message}")
        failed += not result.success
    if failed:
        raise click.ClickException(f"{failed} backup(s) failed verification")


@backup_group.command("orphans")
@click.argument("profile")
@home_option
def backup_orphans(profile: str, home: Path | None) -> None:
    """List backup folders of PROFILE that the index no longer knows about."""
    service = _service(home, profile)
    orphans = asyncio.run(service.find_orphans())
    if not orphans:
        click.echo("No orphaned backup folders.")
        return
    click.echo(f"Orphaned backup folders in {service.store.root}:")
    for name in orphans:
        click.echo(f"  {name}")
    click.echo(f"Run 'pvault backup adopt {profile}' to add them back to the index.")


@backup_group.command("adopt")
@click.argument("profile")
@home_option
def backup_adopt(profile: str, home: Path | None) -> None:
    """Add orphaned backup folders of PROFILE back to the index."""
    service = _service(home, profile)
    report(asyncio.run(service.adopt_orphans()))
