"""Configuration commands (boxkeeper config ...)."""

from __future__ import annotations

import json
from dataclasses import asdict

import click
from rich.markup import escape

from ..config import Config, load_config, save_config, set_config_value
from ..errors import BoxkeeperError
from ..paths import get_config_path
from .utils import console, fail


@click.group()
def config() -> None:
    """Show or change the configuration."""


@config.command("show")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def show(as_json: bool) -> None:
    """Print the effective configuration."""
    try:
        current = load_config()
    except BoxkeeperError as e:
        fail(e)
    data = asdict(current)
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return
    console.print(f"[dim]{escape(str(get_config_path()))}[/dim]")
    for key, value in data.items():
        console.print(f"  [bold]{key}[/bold] = {escape(json.dumps(value))}", highlight=False)


@config.command("set")
@click.argument("key")
@click.argument("value")
def set_value(key: str, value: str) -> None:
    """Set one configuration key."""
    try:
        updated = set_config_value(load_config(), key, value)
    except BoxkeeperError as e:
        fail(e)
    save_config(updated)
    console.print(f"[green]✓ {escape(key)} updated[/green]")
    if key in ("port", "bind_address", "cockpit_enabled", "cockpit_port"):
        console.print("[dim]Takes effect on the next container: boxkeeper start --pull[/dim]")


@config.command("reset")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
def reset(yes: bool) -> None:
    """Restore the default configuration."""
    if not yes and not click.confirm("Reset configuration to defaults?", default=False):
        console.print("[dim]Cancelled.[/dim]")
        return
    save_config(Config())
    console.print("[green]✓ Configuration reset[/green]")
