"""Shared utilities for the CLI command modules.

Provides the Rich console, logging setup, engine wiring and status
formatting used by every command group.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from .. import SYNC_HOME
from ..config import SyncConfig, build_engine, load_config
from ..models import SyncStatus
from ..orchestrator import SyncOrchestrator

console = Console()
logger = logging.getLogger("tripsync.cli")

home_option = click.option(
    "--home", default=SYNC_HOME, type=click.Path(), help="Sync home directory.",
)


def setup_logging(verbose: bool) -> None:
    """Send engine logs to stderr; INFO with --verbose, WARNING otherwise."""
    root = logging.getLogger("tripsync")
    for old in [h for h in root.handlers if h.get_name() == "tripsync-cli"]:
        root.removeHandler(old)
    handler = logging.StreamHandler(sys.stderr)
    handler.set_name("tripsync-cli")
    handler.setFormatter(
        logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s")
    )
    root.addHandler(handler)
    root.setLevel(logging.INFO if verbose else logging.WARNING)


def open_engine(home: str) -> tuple[SyncConfig, SyncOrchestrator]:
    """Load config and wire up an orchestrator, or exit with an error."""
    home_path = Path(home).expanduser()
    config = load_config(home_path)
    try:
        engine = build_engine(config, home=home_path)
    except ValueError as exc:
        console.print(f"[bold red]Configuration error:[/] {exc}")
        sys.exit(1)
    return config, engine


def status_style(status: Optional[str]) -> str:
    """Rich markup for a sync status value.

    Args:
        status: Metadata or binary status.

    Returns:
        str: Rich markup string for the status.
    """
    value = status.value if isinstance(status, SyncStatus) else status
    return {
        "in_sync": "[green]in_sync[/]",
        "needs_upload": "[yellow]needs_upload[/]",
        "needs_download": "[yellow]needs_download[/]",
        "files_pending": "[cyan]files_pending[/]",
        "uploading": "[cyan]uploading[/]",
        "downloading": "[cyan]downloading[/]",
        "conflict": "[bold magenta]conflict[/]",
        "sync_error": "[bold red]sync_error[/]",
        "local_only": "[dim]local_only[/]",
    }.get(value or "", "[dim]-[/]")
