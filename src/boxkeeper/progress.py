"""Progress reporting for image pulls and builds.

Pull streams report per-layer byte counts, build streams report one log line
at a time. Build output arrives much faster than a terminal can usefully
redraw, so ordinary spinner text is throttled (at most one update every
150ms) and identical consecutive messages are dropped. Lines starting with
"Step " mark build stage boundaries and always display immediately.
"""

from __future__ import annotations

import time
from typing import Any, Callable

from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    Task,
    TaskID,
    TextColumn,
)
from rich.text import Text

from .constants import SPINNER_THROTTLE

STEP_PREFIX = "Step "


def format_elapsed(seconds: float) -> str:
    """Format a duration as MM:SS, or HH:MM:SS from one hour up."""
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


class _LayerBarColumn(BarColumn):
    """Bar shown only for byte-counting layer tasks."""

    def render(self, task: Task) -> Any:
        if task.fields.get("kind") != "bar":
            return Text("")
        return super().render(task)


class _LayerSizeColumn(DownloadColumn):
    def render(self, task: Task) -> Text:
        if task.fields.get("kind") != "bar":
            return Text("")
        return super().render(task)


class ProgressReporter:
    """Spinners and byte-progress bars keyed by an id (e.g. a layer digest).

    Args:
        context: Optional prefix for step messages (e.g. "Building image").
        console: Rich console to render on (defaults to stderr).
        enabled: When False nothing is rendered, but state is still tracked.
        clock: Monotonic clock (injectable for tests).
    """

    def __init__(
        self,
        context: str | None = None,
        *,
        console: Console | None = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.context = context
        self._clock = clock
        self._start_time = clock()
        self._progress = Progress(
            SpinnerColumn(finished_text=" "),
            TextColumn("{task.description}"),
            _LayerBarColumn(bar_width=30),
            _LayerSizeColumn(),
            console=console or Console(stderr=True),
            disable=not enabled,
        )
        self._tasks: dict[str, TaskID] = {}
        self._last_update: dict[str, float] = {}
        self._last_message: dict[str, str] = {}
        self._started = False

    # --- bookkeeping ---

    def _ensure_started(self) -> None:
        if not self._started:
            self._progress.start()
            self._started = True

    def _format_message(self, message: str) -> str:
        elapsed = format_elapsed(self._clock() - self._start_time)
        message = escape(message)
        if self.context and message.startswith(STEP_PREFIX):
            return f"{self.context} · {message} ({elapsed})"
        return f"{message} ({elapsed})"

    def has_task(self, task_id: str) -> bool:
        return task_id in self._tasks

    def description(self, task_id: str) -> str | None:
        """Current text of a spinner or bar, or None if unknown."""
        handle = self._tasks.get(task_id)
        if handle is None:
            return None
        return self._progress.tasks[handle].description

    # --- tasks ---

    def add_spinner(self, task_id: str, message: str) -> None:
        self._ensure_started()
        self._tasks[task_id] = self._progress.add_task(
            self._format_message(message), total=None, kind="spinner"
        )

    def add_bar(self, task_id: str, total: int) -> None:
        self._ensure_started()
        self._tasks[task_id] = self._progress.add_task(escape(task_id), total=total, kind="bar")

    def update_layer(self, layer_id: str, current: int, total: int, status: str) -> None:
        """Update byte progress for one layer, creating its bar on first sight."""
        if layer_id not in self._tasks:
            self.add_bar(layer_id, total)
        handle = self._tasks[layer_id]
        self._progress.update(
            handle,
            total=total if total > 0 else None,
            completed=current,
            description=escape(f"{layer_id[:12]} {status}"),
            kind="bar",
        )

    def update_spinner(self, task_id: str, message: str) -> None:
        """Set spinner text, subject to throttling for non-step messages."""
        now = self._clock()
        if not message.startswith(STEP_PREFIX):
            last = self._last_update.get(task_id)
            if last is not None and now - last < SPINNER_THROTTLE:
                return
            if self._last_message.get(task_id) == message:
                return

        if task_id in self._tasks:
            self._progress.update(self._tasks[task_id], description=self._format_message(message))
        else:
            self.add_spinner(task_id, message)

        self._last_update[task_id] = now
        self._last_message[task_id] = message

    def _complete(self, handle: TaskID, text: str) -> None:
        task = self._progress.tasks[handle]
        total = task.total if task.total is not None else 1
        self._progress.update(handle, total=total, completed=total, description=text)
        self._progress.stop_task(handle)

    def finish(self, task_id: str, message: str) -> None:
        handle = self._tasks.get(task_id)
        if handle is not None:
            self._complete(handle, f"[green]✓[/green] {escape(message)}")

    def finish_all(self, message: str) -> None:
        for handle in self._tasks.values():
            self._complete(handle, f"[green]✓[/green] {escape(message)}")

    def abandon_all(self, message: str) -> None:
        for handle in self._tasks.values():
            if not self._progress.tasks[handle].finished:
                self._complete(handle, f"[red]✗[/red] {escape(message)}")

    def close(self) -> None:
        """Stop rendering. Safe to call more than once."""
        if self._started:
            self._progress.stop()
            self._started = False

    def __enter__(self) -> ProgressReporter:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
