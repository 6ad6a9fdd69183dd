"""Config commands: show, init."""

from __future__ import annotations

import sys
from pathlib import Path

import click
import yaml

from ._common import console, home_option
from ..config import CONFIG_FILENAME, SyncConfig, TransportType, load_config, save_config


def register_config_commands(main: click.Group) -> None:
    """Register the config command group."""

    @main.group()
    def config():
        """Show or create the sync configuration."""

    @config.command("show")
    @home_option
    def config_show(home):
        """Print the effective configuration."""
        cfg = load_config(Path(home).expanduser())
        click.echo(yaml.dump(cfg.model_dump(mode="json"), default_flow_style=False).rstrip())

    @config.command("init")
    @home_option
    @click.option(
        "--transport",
        type=click.Choice([t.value for t in TransportType]),
        default=TransportType.LOCAL.value,
        help="How to reach the sync server.",
    )
    @click.option("--server-url", default=None, help="GraphQL server base URL.")
    @click.option("--local-path", default=None, help="Directory of the local server.")
    @click.option("--force", is_flag=True, help="Overwrite an existing config.")
    def config_init(home, transport, server_url, local_path, force):
        """Write a config.yaml with defaults."""
        home_path = Path(home).expanduser()
        if (home_path / CONFIG_FILENAME).exists() and not force:
            console.print("[bold red]Config already exists.[/] Use --force to overwrite.")
            sys.exit(1)
        if transport == TransportType.GRAPHQL.value and not server_url:
            console.print("[bold red]--server-url is required for the graphql transport.[/]")
            sys.exit(1)

        cfg = SyncConfig(transport=TransportType(transport), server_url=server_url)
        if local_path:
            cfg.local_server_path = local_path
        path = save_config(cfg, home_path)
        console.print(f"\n  [green]Wrote[/] {path}\n")
