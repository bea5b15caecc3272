"""CLI commands for auto-backup settings: pvault settings show/set."""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from pathlib import Path

import click

from profilevault.cli.backup_cmd import _service, home_option, report

_MINUTE_MS = 60 * 1000
_DAY_MS = 24 * 60 * _MINUTE_MS


@click.group("settings")
def settings_group() -> None:
    """Show or change a profile's auto-backup settings."""


@settings_group.command("show")
@click.argument("profile")
@home_option
@click.option("--json", "as_json", is_flag=True, help="Print settings as JSON.")
def settings_show(profile: str, home: Path | None, as_json: bool) -> None:
    """Show backup settings for PROFILE."""
    settings = asyncio.run(_service(home, profile).get_settings())
    if as_json:
        click.echo(json.dumps(settings.to_dict(), indent=2))
        return
    click.echo(f"Auto-backup: {'enabled' if settings.enabled else 'disabled'}")
    click.echo(f"Interval:    {settings.interval_ms / _MINUTE_MS:g} minutes")
    click.echo(f"Keep at most {settings.max_count} backups")
    click.echo(f"Keep for at most {settings.max_age_ms / _DAY_MS:g} days")


@settings_group.command("set")
@click.argument("profile")
@home_option
@click.option("--enable/--disable", "enabled", default=None, help="Turn auto-backup on or off.")
@click.option("--interval-minutes", type=float, default=None, help="Minutes between auto-backups.")
@click.option("--max-count", type=int, default=None, help="Maximum number of backups to keep.")
@click.option("--max-age-days", type=float, default=None, help="Delete backups older than this.")
def settings_set(
    profile: str,
    home: Path | None,
    enabled: bool | None,
    interval_minutes: float | None,
    max_count: int | None,
    max_age_days: float | None,
) -> None:
    """Change backup settings for PROFILE. Unspecified values are kept."""
    service = _service(home, profile)

    async def _update():
        current = await service.get_settings()
        updated = replace(current)
        if enabled is not None:
            updated.enabled = enabled
        if interval_minutes is not None:
            updated.interval_ms = int(interval_minutes * _MINUTE_MS)
        if max_count is not None:
            updated.max_count = max_count
        if max_age_days is not None:
            updated.max_age_ms = int(max_age_days * _DAY_MS)
        return await service.set_settings(updated)

    report(asyncio.run(_update()))
