"""CLI package for boxkeeper.

This package contains the CLI commands and supporting modules:
- __init__: root group and service lifecycle commands
- users: in-container login users (boxkeeper user ...)
- hosts: remote host definitions (boxkeeper host ...)
- mounts: bind mounts applied at container creation (boxkeeper mount ...)
- settings: configuration file (boxkeeper config ...)
- utils: console, error reporting, engine sessions

Lazy Import Strategy:
    Engine, image and service modules pull in docker-py and requests. They are
    imported inside the commands that need them so --help/--version and the
    config/host commands stay fast.
"""

from __future__ import annotations

import sys

# Configure UTF-8 encoding for Windows console output
# Must happen before any output, including Rich Console initialization
if sys.platform == "win32":
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    if hasattr(sys.stderr, "reconfigure"):
        sys.stderr.reconfigure(encoding="utf-8", errors="replace")

import click
from rich.markup import escape
from rich.table import Table

from .. import __version__
from ..constants import CONTAINER_PORT
from ..errors import BoxkeeperError
from ..logging import set_debug
from .utils import console, engine_session, fail, format_uptime, get_host_option


@click.group()
@click.option(
    "--host",
    "-H",
    metavar="NAME",
    help="Remote host from hosts.json ('local' forces the local engine)",
)
@click.option("--debug", is_flag=True, help="Show debug logs")
@click.version_option(version=__version__, prog_name="boxkeeper")
@click.pass_context
def cli(ctx: click.Context, host: str | None, debug: bool) -> None:
    """boxkeeper - Run one long-lived service container, locally or over SSH."""
    if debug:
        set_debug(True)
    ctx.ensure_object(dict)
    ctx.obj["host"] = host


def _load_config():
    from ..config import load_config

    try:
        return load_config()
    except BoxkeeperError as e:
        fail(e)


def _print_security_summary(config) -> None:
    if not config.users:
        console.print(
            "[yellow]Warning: no users configured, the service accepts "
            "unauthenticated connections.[/yellow]"
        )
    if config.is_network_exposed():
        console.print(f"[yellow]Service is exposed on {escape(config.bind_address)}.[/yellow]")


def _print_recreated_users(users: list[str]) -> None:
    if not users:
        return
    console.print(
        "\n[yellow]Note:[/yellow] User accounts were recreated but passwords were NOT preserved."
    )
    console.print("      Set new ones with: [cyan]boxkeeper user passwd <username>[/cyan]")


def _follow_until_stopped(host: str | None) -> None:
    """Stream service output until the container stops (foreground mode)."""
    from ..service import iter_log_lines

    with engine_session(host) as conn:
        try:
            for line in iter_log_lines(conn, 0, follow=True):
                console.print(escape(line), highlight=False)
        except BoxkeeperError as e:
            fail(e)
        except KeyboardInterrupt:
            pass


@cli.command()
@click.option("--port", "-p", type=click.IntRange(1, 65535), help="Host port for the service")
@click.option("--pull", is_flag=True, help="Pull the latest prebuilt image first")
@click.option(
    "--cached-rebuild", is_flag=True, help="Rebuild the image locally, reusing cached layers"
)
@click.option("--full-rebuild", is_flag=True, help="Rebuild the image locally from scratch")
@click.option("--timeout", type=float, help="Seconds to wait for the service to become ready")
@click.option("--no-daemon", is_flag=True, help="Stay in the foreground and stream output")
@click.pass_context
def start(
    ctx: click.Context,
    port: int | None,
    pull: bool,
    cached_rebuild: bool,
    full_rebuild: bool,
    timeout: float | None,
    no_daemon: bool,
) -> None:
    """Start the service (no-op if it is already running)."""
    from ..progress import ProgressReporter
    from ..service import StartOptions, start_service

    host = get_host_option(ctx)
    try:
        options = StartOptions.from_cli(
            port=port,
            pull=pull,
            cached_rebuild=cached_rebuild,
            full_rebuild=full_rebuild,
            timeout=timeout,
        )
    except BoxkeeperError as e:
        fail(e)
    config = _load_config()

    context = "Building image" if (cached_rebuild or full_rebuild) else "Pulling image"
    with engine_session(host, lock=True) as conn:
        with ProgressReporter(context) as progress:
            result = start_service(conn, config, options, progress)

    if result.already_running:
        console.print("[dim]Service is already running[/dim]")
        console.print(f"\nURL:        [cyan]{result.url}[/cyan]")
    else:
        console.print("[green]✓ Service started[/green]")
        console.print(f"\nURL:        [cyan]{result.url}[/cyan]")
        if result.container_id:
            console.print(f"Container:  [dim]{result.container_id[:12]}[/dim]")
        console.print(f"Port:       {result.port} -> {CONTAINER_PORT}")
        _print_recreated_users(result.users_recreated)
    _print_security_summary(config)

    if no_daemon:
        _follow_until_stopped(host)


@cli.command()
@click.option("--timeout", "-t", type=int, help="Seconds to wait before killing the service")
@click.option("--remove", is_flag=True, help="Also remove the container (volumes are kept)")
@click.pass_context
def stop(ctx: click.Context, timeout: int | None, remove: bool) -> None:
    """Stop the service (succeeds if it is already stopped)."""
    from ..service import stop_service

    config = _load_config()
    with engine_session(get_host_option(ctx), lock=True) as conn:
        outcome = stop_service(
            conn, timeout if timeout is not None else config.stop_timeout, remove=remove
        )

    if outcome.already_stopped:
        console.print("[dim]Service is already stopped[/dim]")
    elif outcome.forced:
        console.print(
            f"[yellow]Service stopped after {outcome.elapsed:.1f}s "
            "(timeout reached, forcefully killed)[/yellow]"
        )
    else:
        console.print(f"[green]✓ Service stopped ({outcome.elapsed:.1f}s)[/green]")
    if remove:
        console.print("[dim]Container removed[/dim]")


@cli.command()
@click.pass_context
def restart(ctx: click.Context) -> None:
    """Stop the service if it is running, then start it."""
    from ..progress import ProgressReporter
    from ..service import restart_service

    config = _load_config()
    with engine_session(get_host_option(ctx), lock=True) as conn:
        with ProgressReporter("Pulling image") as progress:
            result = restart_service(conn, config, progress)

    console.print("[green]✓ Service restarted[/green]")
    console.print(f"\nURL:        [cyan]{result.url}[/cyan]")
    _print_recreated_users(result.users_recreated)



def _quietly_running(host: str | None) -> bool:
    """Running check for scripts: no output, no health request."""
    from ..config import load_config
    from ..engine import connect
    from ..service import get_status

    try:
        config = load_config()
        with connect(host) as conn:
            return get_status(conn, config, health=None).is_running
    except BoxkeeperError:
        return False


@cli.command()
@click.option("--quiet", "-q", is_flag=True, help="No output; exit 0 if running, 1 otherwise")
@click.pass_context
def status(ctx: click.Context, quiet: bool) -> None:
    """Show service state, image and health."""
    from ..service import get_status

    if quiet:
        sys.exit(0 if _quietly_running(get_host_option(ctx)) else 1)

    config = _load_config()
    with engine_session(get_host_option(ctx)) as conn:
        info = get_status(conn, config)

    table = Table(title=f"boxkeeper ({info.target})", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")

    state_style = "green" if info.is_running else "yellow"
    table.add_row("State", f"[{state_style}]{info.state.value}[/{state_style}]")
    if info.url:
        table.add_row("URL", f"[cyan]{info.url}[/cyan]")
    if info.container_id:
        table.add_row("Container", info.container_id[:12])
    if info.image:
        table.add_row("Image", escape(info.image))
    if info.image_version:
        version = escape(info.image_version)
        if info.version_mismatch:
            version += f" [yellow](boxkeeper is {__version__}; run: boxkeeper update)[/yellow]"
        table.add_row("Image version", version)
    if info.is_running:
        table.add_row("Uptime", format_uptime(info.uptime))
        if info.health is not None:
            healthy = "[green]healthy[/green]" if info.health.healthy else "[red]unhealthy[/red]"
            table.add_row("Health", f"{healthy} (v{escape(info.health.version)})")
        elif info.health_error:
            table.add_row("Health", f"[yellow]{escape(info.health_error)}[/yellow]")
    for container_port, bindings in sorted(info.port_bindings.items()):
        for host_ip, host_port in bindings:
            table.add_row("Port", f"{host_ip or '0.0.0.0'}:{host_port} -> {container_port}")
    if info.provenance is not None:
        table.add_row("Image source", escape(info.provenance.describe()))
    table.add_row(
        "Security",
        "[yellow]network exposed[/yellow]" if info.network_exposed else "local only",
    )
    table.add_row("Users", escape(", ".join(info.users)) if info.users else "[dim]none[/dim]")
    console.print(table)


@cli.command()
@click.option("--lines", "-n", default=50, show_default=True, help="Lines of history to show")
@click.option("--follow/--no-follow", default=True, help="Keep streaming new output")
@click.option("--timestamps", is_flag=True, help="Prefix lines with timestamps")
@click.option("--grep", "pattern", metavar="TEXT", help="Only show lines containing TEXT")
@click.pass_context
def logs(
    ctx: click.Context, lines: int, follow: bool, timestamps: bool, pattern: str | None
) -> None:
    """Show service output."""
    from ..service import iter_log_lines

    with engine_session(get_host_option(ctx)) as conn:
        try:
            for line in iter_log_lines(conn, lines, follow=follow, timestamps=timestamps):
                if pattern is None or pattern in line:
                    console.print(escape(line), highlight=False)
        except KeyboardInterrupt:
            pass


@cli.command()
@click.option("--rollback", is_flag=True, help="Go back to the image used before the last update")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def update(ctx: click.Context, rollback: bool, yes: bool) -> None:
    """Update the service image (or roll back) and recreate the container."""
    from ..progress import ProgressReporter
    from ..service import update_service

    config = _load_config()
    action = "roll back to the previous image" if rollback else "update the service image"
    console.print(f"[yellow]This will briefly stop the service to {action}.[/yellow]")
    if not yes and not click.confirm("Continue?", default=True):
        console.print("[dim]Cancelled.[/dim]")
        return

    context = "Rolling back" if rollback else "Updating image"
    with engine_session(get_host_option(ctx), lock=True) as conn:
        with ProgressReporter(context) as progress:
            result = update_service(conn, config, progress, rollback=rollback)

    verb = "Rollback" if result.rolled_back else "Update"
    console.print(f"[green]✓ {verb} completed successfully[/green]")
    console.print(f"\nURL:        [cyan]{result.url}[/cyan]")
    _print_recreated_users(result.users_recreated)


def _executable_path() -> str:
    import shutil
    from pathlib import Path

    found = shutil.which("boxkeeper")
    return found or str(Path(sys.argv[0]).resolve())


@cli.command()
@click.option("--print", "print_only", is_flag=True, help="Print the unit file instead")
def install(print_only: bool) -> None:
    """Register boxkeeper with systemd or launchd so it starts at login/boot."""
    from ..service_units import ServiceConfig, get_service_manager

    config = _load_config()
    try:
        manager = get_service_manager(config.boot_mode)
        service_config = ServiceConfig.from_config(config, _executable_path())
        if print_only:
            click.echo(manager.render(service_config), nl=False)
            return
        result = manager.install(service_config)
    except BoxkeeperError as e:
        fail(e)

    console.print(f"[green]✓ Installed {result.service_name}[/green]")
    console.print(f"[dim]{result.service_file_path}[/dim]")
    if not result.started:
        console.print("[yellow]The service was installed but did not start yet.[/yellow]")


@cli.command()
def uninstall() -> None:
    """Remove the systemd or launchd registration."""
    from ..service_units import get_service_manager

    config = _load_config()
    try:
        manager = get_service_manager(config.boot_mode)
        if not manager.is_installed():
            console.print("[dim]Service is not installed[/dim]")
            return
        manager.uninstall()
    except BoxkeeperError as e:
        fail(e)
    console.print("[green]✓ Service registration removed[/green]")


from .hosts import host  # noqa: E402
from .mounts import mount  # noqa: E402
from .settings import config  # noqa: E402
from .users import user  # noqa: E402

cli.add_command(user)
cli.add_command(host)
cli.add_command(mount)
cli.add_command(config)


if __name__ == "__main__":  # pragma: no cover
    cli()
