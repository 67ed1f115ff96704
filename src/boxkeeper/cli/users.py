"""User management commands (boxkeeper user ...).

Accounts live inside the running container; their names are also kept in the
config so a recreated container gets them back.
"""

from __future__ import annotations

import click
from rich.markup import escape
from rich.table import Table

from ..errors import BoxkeeperError
from .utils import console, engine_session, fail, get_host_option


def _load_config():
    from ..config import load_config

    try:
        return load_config()
    except BoxkeeperError as e:
        fail(e)


def _save_users(config, users: list[str]) -> None:
    from ..config import save_config

    config.users = sorted(set(users))
    save_config(config)


def _read_password(generate: bool) -> tuple[str, bool]:
    from ..users import generate_password

    if generate:
        return generate_password(), True
    password = click.prompt("Password", hide_input=True, confirmation_prompt=True)
    return password, False


def _show_generated(username: str, password: str) -> None:
    console.print(f"\nPassword for [bold]{escape(username)}[/bold]:")
    console.print(f"  [cyan]{escape(password)}[/cyan]", highlight=False)
    console.print("[dim]It is shown only once.[/dim]")


def _show_pending(username: str) -> None:
    name = escape(username)
    console.print(f"[green]✓ User {name} recorded[/green]")
    console.print("[dim]The service container does not exist yet; the account is created[/dim]")
    console.print("[dim]locked on the next start.[/dim]")
    console.print("Next steps:")
    console.print("  [cyan]boxkeeper start[/cyan]")
    console.print(f"  [cyan]boxkeeper user passwd {name}[/cyan]")


@click.group()
def user() -> None:
    """Manage login users inside the service container."""


@user.command("add")
@click.argument("username")
@click.option("--generate", "-g", is_flag=True, help="Generate a random password")
@click.pass_context
def add_user(ctx: click.Context, username: str, generate: bool) -> None:
    """Create a user and set their password.

    Before the service container exists the name is only recorded; the
    account is created (locked) by the next start.
    """
    from ..container import get_container
    from ..users import create_user, set_user_password, validate_username

    try:
        validate_username(username)
    except BoxkeeperError as e:
        fail(e)
    config = _load_config()

    with engine_session(get_host_option(ctx), lock=True) as conn:
        if not get_container(conn).exists:
            _save_users(config, [*config.users, username])
            _show_pending(username)
            return
        password, generated = _read_password(generate)
        create_user(conn, username)
        set_user_password(conn, username, password)
    _save_users(config, [*config.users, username])

    console.print(f"[green]✓ User {escape(username)} created[/green]")
    if generated:
        _show_generated(username, password)


@user.command("list")
@click.pass_context
def list_users_cmd(ctx: click.Context) -> None:
    """List users in the container."""
    from ..users import list_users

    with engine_session(get_host_option(ctx)) as conn:
        users = list_users(conn)

    if not users:
        console.print("[dim]No users[/dim]")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("User")
    table.add_column("UID", justify="right")
    table.add_column("Home")
    table.add_column("Status")
    for info in users:
        state = "[yellow]locked[/yellow]" if info.locked else "[green]active[/green]"
        table.add_row(escape(info.username), str(info.uid), escape(info.home), state)
    console.print(table)


@user.command("remove")
@click.argument("username")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def remove_user(ctx: click.Context, username: str, yes: bool) -> None:
    """Delete a user and their home directory."""
    from ..users import delete_user

    config = _load_config()
    if not yes and not click.confirm(f"Delete user {username} and their home?", default=False):
        console.print("[dim]Cancelled.[/dim]")
        return

    with engine_session(get_host_option(ctx), lock=True) as conn:
        delete_user(conn, username)
    _save_users(config, [u for u in config.users if u != username])
    console.print(f"[green]✓ User {escape(username)} removed[/green]")


@user.command("passwd")
@click.argument("username")
@click.option("--generate", "-g", is_flag=True, help="Generate a random password")
@click.pass_context
def passwd(ctx: click.Context, username: str, generate: bool) -> None:
    """Set a new password (also unlocks recreated accounts)."""
    from ..users import is_user_locked, set_user_password, unlock_user, user_exists

    password, generated = _read_password(generate)
    with engine_session(get_host_option(ctx), lock=True) as conn:
        if not user_exists(conn, username):
            fail(BoxkeeperError(f"User '{username}' does not exist"))
        set_user_password(conn, username, password)
        if is_user_locked(conn, username):
            unlock_user(conn, username)

    console.print(f"[green]✓ Password updated for {escape(username)}[/green]")
    if generated:
        _show_generated(username, password)


@user.command("enable")
@click.argument("username")
@click.pass_context
def enable(ctx: click.Context, username: str) -> None:
    """Unlock a user."""
    from ..users import unlock_user

    with engine_session(get_host_option(ctx), lock=True) as conn:
        unlock_user(conn, username)
    console.print(f"[green]✓ User {escape(username)} enabled[/green]")


@user.command("disable")
@click.argument("username")
@click.pass_context
def disable(ctx: click.Context, username: str) -> None:
    """Lock a user without deleting it."""
    from ..users import lock_user

    with engine_session(get_host_option(ctx), lock=True) as conn:
        lock_user(conn, username)
    console.print(f"[green]✓ User {escape(username)} disabled[/green]")
