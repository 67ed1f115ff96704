"""CLI utilities for boxkeeper.

Console setup, error reporting, and the engine session every engine-facing
command runs inside.
"""

from __future__ import annotations

import contextlib
import sys
from typing import TYPE_CHECKING, Iterator, NoReturn

import click
from rich.console import Console
from rich.markup import escape

from ..errors import BoxkeeperError

if TYPE_CHECKING:
    from ..engine import EngineConnection

console = Console(force_terminal=True, legacy_windows=False)


def print_error(error: BaseException) -> None:
    """Print an error, its hint and any attached container output."""
    console.print(f"[red]Error: {escape(str(error))}[/red]")
    if isinstance(error, BoxkeeperError):
        if error.log_tail:
            console.print("\n[yellow]Recent container logs:[/yellow]")
            for line in error.log_tail:
                console.print(f"  [dim]{escape(line)}[/dim]", highlight=False)
        if error.hint:
            console.print(f"\n[dim]Hint: {escape(error.hint)}[/dim]")


def fail(error: BaseException) -> NoReturn:
    print_error(error)
    sys.exit(1)


def get_host_option(ctx: click.Context) -> str | None:
    """The --host value given to the root command."""
    root = ctx.find_root()
    return (root.obj or {}).get("host")


@contextlib.contextmanager
def engine_session(host: str | None, *, lock: bool = False) -> Iterator[EngineConnection]:
    """Connect to the target engine, holding the instance lock if asked.

    The lock is taken before connecting and both are released on every exit
    path. Any BoxkeeperError is printed and exits with status 1.
    """
    from ..engine import connect
    from ..lock import InstanceLock
    from ..paths import get_pid_path

    try:
        with contextlib.ExitStack() as stack:
            if lock:
                stack.enter_context(InstanceLock.acquire(get_pid_path()))
            conn = stack.enter_context(connect(host))
            yield conn
    except BoxkeeperError as e:
        fail(e)


def format_uptime(seconds: float | None) -> str:
    if seconds is None:
        return "unknown"
    total = int(seconds)
    days, remainder = divmod(total, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
