"""
tripsync CLI -- run and inspect sync cycles from a terminal.

Each command group lives in its own module and is attached to the
main group through a register function.

Entry point: tripsync.cli:main
"""

from __future__ import annotations

import click

from .. import __version__
from ._common import setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="tripsync")
@click.option("--verbose", "-v", is_flag=True, help="Log engine activity to stderr.")
def main(verbose: bool):
    """tripsync -- offline-first travel journal sync."""
    setup_logging(verbose)


# ---------------------------------------------------------------------------
# Register all command groups from modular files
# ---------------------------------------------------------------------------

from .sync_cmd import register_sync_commands
from .files_cmd import register_files_commands
from .config_cmd import register_config_commands

register_sync_commands(main)
register_files_commands(main)
register_config_commands(main)
