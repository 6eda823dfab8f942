"""Shared helpers for terminal UI feedback using Rich."""

from __future__ import annotations

from contextlib import contextmanager, nullcontext
from typing import Iterator, Optional

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from .progress import ProgressEvent, ProgressStream


@contextmanager
def status(console: Optional[Console], message: str) -> Iterator[None]:
    """Render a transient spinner when a console is available."""

    if console is None:
        with nullcontext():
            yield
        return

    with console.status(message, spinner="dots", spinner_style="cyan"):
        yield


@contextmanager
def progress_stream(
    console: Optional[Console],
    operation: str,
    *,
    transient: bool = True,
) -> Iterator[ProgressStream]:
    """Yield a :class:`ProgressStream` rendered as a Rich progress bar.

    Events without a percentage only update the description. The terminal
    event is echoed to the console so it survives the transient bar.
    """

    stream = ProgressStream(operation)
    if console is None:
        yield stream
        return

    progress = Progress(
        SpinnerColumn(spinner_name="dots"),
        TextColumn("{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        transient=transient,
        console=console,
    )
    task_id = progress.add_task(operation, total=100)

    def _render(event: ProgressEvent) -> None:
        if event.percentage is not None:
            progress.update(task_id, description=event.message, completed=event.percentage)
        else:
            progress.update(task_id, description=event.message)
        if event.terminal:
            style = "green" if event.percentage == 100 else "red"
            console.print(f"[{style}]{event.operation}:[/{style}] {event.message}")

    stream.subscribe(_render)
    with progress:
        yield stream
