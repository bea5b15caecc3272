"""CLI entry point for ProfileVault (pvault command)."""

import click

from profilevault import __version__
from profilevault.cli.backup_cmd import backup_group
from profilevault.cli.daemon_cmd import daemon_group
from profilevault.cli.settings_cmd import settings_group


@click.group()
@click.version_option(version=__version__, prog_name="profilevault")
def cli() -> None:
    """ProfileVault: crash-safe backup and restore for cart-machine profiles."""


cli.add_command(backup_group)
cli.add_command(settings_group)
cli.add_command(daemon_group)


if __name__ == "__main__":
    cli()
