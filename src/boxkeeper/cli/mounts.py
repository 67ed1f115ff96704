"""Bind mount commands (boxkeeper mount ...).

Mounts are stored in config.json and applied when the container is created,
so every change needs a recreate (``boxkeeper start --pull``) to take effect.
"""

from __future__ import annotations

import click
from rich.markup import escape
from rich.table import Table

from ..config import load_config, save_config
from ..errors import BoxkeeperError, ValidationError
from .utils import console, fail

RECREATE_NOTE = "[dim]Takes effect when the container is recreated: boxkeeper start --pull[/dim]"


def _load():
    try:
        return load_config()
    except BoxkeeperError as e:
        fail(e)


@click.group()
def mount() -> None:
    """Manage host directories mounted into the service container."""


@mount.command("add")
@click.argument("spec", metavar="HOST:CONTAINER[:ro|rw]")
@click.option("--no-validate", is_flag=True, help="Skip the host path check")
@click.option("--force", "-f", is_flag=True, help="Allow a system directory as the target")
def add(spec: str, no_validate: bool, force: bool) -> None:
    """Add a bind mount."""
    from ..mounts import ParsedMount, is_system_path, validate_mount_path

    config = _load()
    try:
        parsed = ParsedMount.parse(spec)
        if not no_validate:
            validate_mount_path(parsed.host_path)
        if is_system_path(parsed.container_path):
            if not force:
                raise ValidationError(
                    f"Mount target {parsed.container_path} is a system directory "
                    "and may break the container",
                    hint="Use --force to add it anyway",
                )
            console.print(
                f"[yellow]Warning: mounting to {escape(parsed.container_path)} may affect "
                "container system files[/yellow]"
            )
    except BoxkeeperError as e:
        fail(e)

    for existing in config.mounts:
        try:
            current = ParsedMount.parse(existing)
        except ValidationError:
            continue
        if current.host_path == parsed.host_path:
            host = escape(parsed.host_path)
            console.print(f"Mount for [cyan]{host}[/cyan] is already configured.")
            console.print(f"Remove it first with: [cyan]boxkeeper mount remove {host}[/cyan]")
            return

    config.mounts.append(parsed.format())
    save_config(config)
    console.print(
        f"[green]✓ Added mount[/green] {escape(parsed.host_path)} -> "
        f"{escape(parsed.container_path)} ({parsed.mode})"
    )
    console.print(RECREATE_NOTE)


@mount.command("list")
@click.option("--names-only", is_flag=True, help="Print host paths only")
def list_mounts(names_only: bool) -> None:
    """List configured mounts."""
    from ..mounts import ParsedMount

    config = _load()
    if not config.mounts:
        if not names_only:
            console.print("[dim]No mounts configured[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Host path")
    table.add_column("Container path")
    table.add_column("Mode")
    for raw in config.mounts:
        try:
            parsed = ParsedMount.parse(raw)
        except ValidationError:
            if not names_only:
                table.add_row(escape(raw), "[red](invalid)[/red]", "-")
            continue
        if names_only:
            click.echo(parsed.host_path)
        else:
            table.add_row(escape(parsed.host_path), escape(parsed.container_path), parsed.mode)
    if not names_only:
        console.print(table)


@mount.command("remove")
@click.argument("host_path")
def remove(host_path: str) -> None:
    """Remove the mount for a host path."""
    from ..mounts import ParsedMount

    config = _load()
    kept = []
    for raw in config.mounts:
        try:
            matches = ParsedMount.parse(raw).host_path == host_path
        except ValidationError:
            matches = False
        if not matches:
            kept.append(raw)

    if len(kept) == len(config.mounts):
        fail(
            ValidationError(
                f"No mount found for host path: {host_path}",
                hint="List mounts with: boxkeeper mount list",
            )
        )
    config.mounts = kept
    save_config(config)
    console.print(f"[green]✓ Removed mount[/green] {escape(host_path)}")
    console.print(RECREATE_NOTE)
