"""CLI commands for the auto-backup daemon: pvault daemon start/stop/status/logs."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from pathlib import Path

import click

from profilevault.cli.backup_cmd import _service, format_bytes, home_option
from profilevault.core.config import config_path, load_config, resolve_home
from profilevault.core.service import BackupService
from profilevault.daemon.service import DaemonPidFile


@click.group("daemon")
def daemon_group() -> None:
    """Run scheduled backups in the background."""


async def _run_daemon(service: BackupService) -> None:
    from profilevault.daemon.scheduler import BackupScheduler

    scheduler = BackupScheduler(service)
    await scheduler.start()

    stopping = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Windows event loops have no signal handler support
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stopping.set)

    try:
        await stopping.wait()
    finally:
        scheduler.stop()


@daemon_group.command("start")
@click.argument("profile")
@home_option
def daemon_start(profile: str, home: Path | None) -> None:
    """Start auto-backups for PROFILE (foreground)."""
    home_path = home or resolve_home()
    pid_file = DaemonPidFile(home_path, profile)
    running = pid_file.live_pid()
    if running is not None:
        raise click.ClickException(f"A daemon for {profile} is already running (PID {running}).")

    config = load_config(config_path(home_path))
    daemon_cfg = config.get("daemon", {})

    log_path = home_path / ".pvault" / "daemon.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, daemon_cfg.get("log_level", "info").upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(str(log_path), encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )
    log = logging.getLogger("profilevault.daemon")
    log.info("Daemon starting for %s (home=%s)", profile, home_path)

    service = _service(home_path, profile)
    pid_file.claim()
    click.echo(f"Auto-backup daemon started for {profile} (home={home_path})")
    click.echo("Press Ctrl+C to stop.")

    try:
        asyncio.run(_run_daemon(service))
    except KeyboardInterrupt:
        pass
    except RuntimeError as e:
        raise click.ClickException(str(e)) from e
    finally:
        pid_file.clear()
    click.echo("Daemon stopped.")


@daemon_group.command("stop")
@click.argument("profile")
@home_option
def daemon_stop(profile: str, home: Path | None) -> None:
    """Stop the auto-backup daemon for PROFILE."""
    pid = DaemonPidFile(home or resolve_home(), profile).live_pid()
    if pid is not None:
        try:
            os.kill(pid, signal.SIGTERM)
            click.echo(f"Sent SIGTERM to daemon (PID {pid}).")
        except OSError as e:
            click.echo(f"Failed to stop daemon: {e}")
    else:
        click.echo("Daemon is not running.")


@daemon_group.command("status")
@click.argument("profile")
@home_option
def daemon_status(profile: str, home: Path | None) -> None:
    """Show daemon and backup status for PROFILE."""
    home_path = home or resolve_home()
    pid = DaemonPidFile(home_path, profile).live_pid()
    if pid is not None:
        click.echo(f"Daemon: running (PID {pid})")
    else:
        click.echo("Daemon: stopped")

    service = _service(home_path, profile)

    async def _gather():
        return (
            await service.get_settings(),
            await service.list_backups(),
            await service.is_busy(),
        )

    settings, backups, busy = asyncio.run(_gather())
    if settings.enabled:
        click.echo(f"Auto-backup: every {settings.interval_ms / 60_000:g} minutes")
    else:
        click.echo("Auto-backup: disabled")
    if busy:
        click.echo("Lock: held (a backup or restore is in progress)")
    if backups:
        last = backups[0]
        click.echo(f"Backups: {len(backups)} (latest {last.id}, {format_bytes(last.size)})")
    else:
        click.echo("Backups: none")


@daemon_group.command("logs")
@home_option
@click.option("-n", "--lines", default=50, help="Number of lines to show.")
def daemon_logs(home: Path | None, lines: int) -> None:
    """Show the daemon log (last N lines)."""
    home_path = home or resolve_home()
    log_path = home_path / ".pvault" / "daemon.log"

    if not log_path.exists():
        click.echo("No daemon log found.")
        return

    for line in log_path.read_text(encoding="utf-8").splitlines()[-lines:]:
        click.echo(line)
