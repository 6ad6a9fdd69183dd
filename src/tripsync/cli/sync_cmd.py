"""Sync commands: run, status, validate, recover."""

from __future__ import annotations

import json
import sys

import click
from rich.panel import Panel
from rich.table import Table

from ._common import console, home_option, open_engine, status_style
from ..errors import SyncBusy
from ..orchestrator import CycleReport

# Distinct from the generic failure code so wrappers can prompt for a new token.
EXIT_AUTH_REJECTED = 3


def _print_report(report: CycleReport) -> None:
    colour = "green" if report.success else "red"
    verdict = "completed" if report.success else ("cancelled" if report.cancelled else "failed")
    console.print()
    console.print(
        Panel(
            f"[bold {colour}]Cycle {verdict}[/]  [dim]{report.cycle_id}[/]\n"
            f"Phases: {' -> '.join(p.value for p in report.phases)}",
            title="tripsync",
            border_style="bright_blue",
        )
    )

    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("Step", style="bold")
    table.add_column("Count", justify="right")
    table.add_row("Uploaded", str(report.uploaded))
    table.add_row("Deletions sent", str(report.deletions_sent))
    table.add_row("Created", str(report.created))
    table.add_row("Updated", str(report.updated))
    table.add_row("Kept local", str(report.kept_local))
    table.add_row("Merged", str(report.merged))
    table.add_row("Conflicts", str(len(report.conflicts)))
    table.add_row("Removed", str(report.removed))
    table.add_row("Files queued", str(report.files_enqueued))
    console.print(table)

    if report.failures:
        console.print(f"\n  [bold red]{len(report.failures)} failure(s):[/]")
        for failure in report.failures:
            console.print(
                f"    {failure.operation} {failure.entity_type.value} "
                f"[cyan]{failure.entity_id}[/]: [dim]{failure.error}[/]"
            )
    if report.error:
        console.print(f"\n  [red]{report.error}[/]")
    if report.validation and not report.validation.ok:
        console.print(
            f"  [yellow]{len(report.validation.violations)} consistency warning(s)[/] "
            "[dim](tripsync sync validate)[/]"
        )
    console.print()


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Run and inspect metadata sync cycles."""

    @sync.command("run")
    @home_option
    @click.option("--no-files", is_flag=True, help="Do not transfer binaries after the cycle.")
    def sync_run(home, no_files):
        """Run one sync cycle (upload, download, validate, finalize)."""
        config, engine = open_engine(home)
        try:
            report = engine.run_cycle()
        except SyncBusy as exc:
            console.print(f"[bold red]Busy:[/] {exc}")
            sys.exit(1)

        _print_report(report)
        if report.auth_rejected:
            console.print(
                f"  [bold yellow]Credentials rejected.[/] Refresh the token in "
                f"${config.token_env_var} and run again.\n"
            )
            sys.exit(EXIT_AUTH_REJECTED)

        if engine.files is not None and not no_files and engine.files.pending_count():
            outcomes = engine.files.process_pending()
            done = sum(1 for o in outcomes if o.success)
            console.print(f"  Files: [green]{done} transferred[/], [red]{len(outcomes) - done} failed[/]\n")

        if not report.success:
            sys.exit(1)

    @sync.command("status")
    @home_option
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def sync_status(home, json_out):
        """Show the watermark, cycle flag and entity status counts."""
        config, engine = open_engine(home)
        info = engine.status()
        info["device_id"] = config.device_id

        if json_out:
            click.echo(json.dumps(info, indent=2))
            return

        console.print()
        console.print(
            Panel(
                f"Transport: [cyan]{info['transport']}[/]  Device: [cyan]{info['device_id']}[/]\n"
                f"Last synced: {info['last_synced_at'] or '[dim]never[/]'}\n"
                f"Cycles completed: {info['cycles_completed']}",
                title="Sync Status",
                border_style="bright_blue",
            )
        )
        if info["cycle_in_progress"]:
            console.print("  [yellow]A cycle is marked in progress.[/] Run tripsync sync recover if it crashed.")
        if info["last_error"]:
            console.print(f"  [red]Last error:[/] {info['last_error']}")

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Status")
        table.add_column("Records", justify="right")
        table.add_column("Files", justify="right")
        for name in sorted(set(info["entities"]) | set(info["files"])):
            table.add_row(
                status_style(name),
                str(info["entities"].get(name, 0)),
                str(info["files"].get(name, 0)),
            )
        console.print(table)
        console.print(f"\n  Pending deletions: {info['pending_tombstones']}\n")

    @sync.command("validate")
    @home_option
    @click.option("--strict", is_flag=True, help="Exit non-zero when violations are found.")
    def sync_validate(home, strict):
        """Check local referential integrity and status sanity."""
        _, engine = open_engine(home)
        report = engine.validator.validate(engine.store)

        if report.ok:
            console.print(f"\n  [green]No violations[/] in {report.checked} records.\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Kind", style="yellow")
        table.add_column("Type", style="bold")
        table.add_column("Id", style="cyan")
        table.add_column("Detail", style="dim")
        for v in report.violations:
            table.add_row(v.kind, v.entity_type.value, v.entity_id, v.detail)
        console.print()
        console.print(table)
        console.print(f"\n  {len(report.violations)} violation(s) in {report.checked} records.\n")
        if strict:
            sys.exit(1)

    @sync.command("recover")
    @home_option
    def sync_recover(home):
        """Clear state left behind by an interrupted cycle."""
        _, engine = open_engine(home)
        counts = engine.recover()
        if not any(counts.values()):
            console.print("\n  [green]Nothing to recover.[/]\n")
            return
        console.print(
            f"\n  Cycle flag cleared: {'yes' if counts['flag_cleared'] else 'no'}\n"
            f"  Records reset: {counts['records']}\n"
            f"  Files reset: {counts['files']}\n"
        )
