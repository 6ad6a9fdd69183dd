"""File commands: status, process."""

from __future__ import annotations

import click
from rich.table import Table

from ._common import console, home_option, open_engine, status_style
from ..models import SyncStatus
from ..network import NetworkQuality
from ..schema import file_types


def register_files_commands(main: click.Group) -> None:
    """Register the files command group."""

    @main.group()
    def files():
        """Inspect and move photo and GPX binaries."""

    @files.command("status")
    @home_option
    @click.option("--all", "show_all", is_flag=True, help="Include files already in sync.")
    def files_status(home, show_all):
        """List binaries and where each one stands."""
        _, engine = open_engine(home)
        rows = [
            e for etype in file_types() for e in engine.store.all(etype)
            if e.file_status is not None
            and (show_all or e.file_status != SyncStatus.IN_SYNC)
        ]
        if not rows:
            console.print("\n  [green]All files in sync.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Type", style="bold")
        table.add_column("Object key", style="cyan")
        table.add_column("Size", justify="right")
        table.add_column("Status")
        for entity in sorted(rows, key=lambda e: (e.entity_type.value, e.fields.get("object_key", ""))):
            size = entity.fields.get("file_size")
            table.add_row(
                entity.entity_type.value,
                entity.fields.get("object_key", "-"),
                f"{size:,}" if isinstance(size, int) else "-",
                status_style(entity.file_status),
            )
        console.print()
        console.print(table)
        console.print()

    @files.command("process")
    @home_option
    @click.option("--retry-failed", is_flag=True, help="Retry binaries in sync_error.")
    @click.option(
        "--quality",
        type=click.Choice([q.value for q in NetworkQuality]),
        default=None,
        help="Override the network quality tier.",
    )
    def files_process(home, retry_failed, quality):
        """Queue pending binaries and transfer them now."""
        _, engine = open_engine(home)
        if engine.files is None:
            console.print("[yellow]No file transfer manager configured.[/]")
            return
        if quality:
            engine.files.set_network_quality(NetworkQuality(quality))
        if retry_failed:
            engine.retry_failed_files()

        queued = sum(engine.handoff_files(etype) for etype in file_types())
        if not queued:
            console.print("\n  [green]Nothing to transfer.[/]\n")
            return

        limits = engine.files.limits
        console.print(
            f"\n  Transferring {queued} file(s) "
            f"[dim]({engine.files.quality.value}: {limits.concurrency} parallel, "
            f"batches of {limits.batch_size})[/]"
        )
        outcomes = engine.files.process_pending()
        for outcome in outcomes:
            mark = "[green]ok[/]" if outcome.success else "[red]failed[/]"
            line = f"    {mark} {outcome.direction.value} [cyan]{outcome.object_key}[/]"
            if outcome.error:
                line += f" [dim]{outcome.error}[/]"
            console.print(line)
        console.print()
