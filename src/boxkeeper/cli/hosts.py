"""Remote host commands (boxkeeper host ...)."""

from __future__ import annotations

import click
from rich.markup import escape
from rich.table import Table

from ..errors import BoxkeeperError
from ..hosts import HostConfig, load_hosts, save_hosts
from .utils import console, fail


def _load():
    try:
        return load_hosts()
    except BoxkeeperError as e:
        fail(e)


@click.group()
def host() -> None:
    """Manage remote hosts reached over SSH."""


@host.command("add")
@click.argument("name")
@click.argument("hostname")
@click.option("--user", "-u", help="SSH user (default: current user)")
@click.option("--port", "-p", type=click.IntRange(1, 65535), help="SSH port")
@click.option("--identity", "-i", "identity_file", help="SSH private key")
@click.option("--jump", "-J", "jump_host", help="Jump host (ssh -J)")
@click.option("--group", "groups", multiple=True, help="Group label (repeatable)")
@click.option("--description", "-d", help="Free-form note")
@click.option("--default", "make_default", is_flag=True, help="Make this the default host")
def add(
    name: str,
    hostname: str,
    user: str | None,
    port: int | None,
    identity_file: str | None,
    jump_host: str | None,
    groups: tuple[str, ...],
    description: str | None,
    make_default: bool,
) -> None:
    """Add a remote host."""
    hosts = _load()
    entry = HostConfig(
        hostname=hostname,
        port=port,
        identity_file=identity_file,
        jump_host=jump_host,
        groups=list(groups),
        description=description,
    )
    if user:
        entry.user = user
    try:
        hosts.add_host(name, entry)
        if make_default:
            hosts.set_default(name)
    except BoxkeeperError as e:
        fail(e)
    save_hosts(hosts)
    ssh = escape(entry.format_ssh_command())
    console.print(f"[green]✓ Added host {escape(name)}[/green] ({ssh})")


@host.command("list")
def list_hosts() -> None:
    """List configured hosts."""
    hosts = _load()
    if not hosts.hosts:
        console.print("[dim]No remote hosts configured[/dim]")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Name")
    table.add_column("SSH")
    table.add_column("Groups")
    table.add_column("Description")
    for name in hosts.host_names():
        entry = hosts.hosts[name]
        label = escape(name)
        if name == hosts.default_host:
            label += " [green](default)[/green]"
        table.add_row(
            label,
            escape(entry.format_ssh_command()),
            escape(", ".join(entry.groups)),
            escape(entry.description or ""),
        )
    console.print(table)


@host.command("remove")
@click.argument("name")
def remove(name: str) -> None:
    """Remove a host."""
    hosts = _load()
    try:
        hosts.remove_host(name)
    except BoxkeeperError as e:
        fail(e)
    save_hosts(hosts)
    console.print(f"[green]✓ Removed host {escape(name)}[/green]")


@host.command("default")
@click.argument("name", required=False)
@click.option("--clear", is_flag=True, help="Go back to the local engine by default")
def default(name: str | None, clear: bool) -> None:
    """Show or set the default host."""
    hosts = _load()
    if name is None and not clear:
        current = hosts.default_host or "local"
        console.print(f"Default host: [cyan]{escape(current)}[/cyan]")
        return
    try:
        hosts.set_default(None if clear else name)
    except BoxkeeperError as e:
        fail(e)
    save_hosts(hosts)
    console.print(f"[green]✓ Default host: {escape(hosts.default_host or 'local')}[/green]")


@host.command("test")
@click.argument("name")
def test(name: str) -> None:
    """Check SSH access and Docker on a host."""
    from ..tunnel import check_host_connection

    hosts = _load()
    try:
        entry = hosts.get_host(name)
        console.print(f"[dim]Connecting: {escape(entry.format_ssh_command())}[/dim]")
        version = check_host_connection(entry)
    except BoxkeeperError as e:
        fail(e)
    console.print(f"[green]✓ {escape(name)} is reachable[/green] (Docker {escape(version)})")
