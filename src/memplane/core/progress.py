"""User-facing progress feedback for CLI operations.

Design principles:
- Progress bar for long backfills, plain log lines otherwise
- Single line updates, no spam
- Graceful degradation in non-TTY (CI, pipes)
- Suppress structlog console output while a bar is live

Usage::

    from memplane.core.progress import migration_progress, status

    status("Loading model...")

    with migration_progress("Embedding memories") as on_progress:
        await runner.migrate(on_progress)

    status("Ready", style="success")  # ✓ Ready
"""

from __future__ import annotations

import sys
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TaskProgressColumn, TextColumn

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

# Console for output
_console = Console(stderr=True)

# Style prefixes
_STYLES = {
    "success": "[green]✓[/green] ",
    "error": "[red]✗[/red] ",
    "warning": "[yellow]![/yellow] ",
    "info": "  ",
    "none": "",
}

_suppress_console_logs = threading.local()


def is_console_suppressed() -> bool:
    """Check if console logging is currently suppressed."""
    return getattr(_suppress_console_logs, "active", False)


@contextmanager
def suppress_console_logs() -> Iterator[None]:
    """Suppress structlog console output while a live display is shown.

    Logs are still written to file handlers.
    """
    _suppress_console_logs.active = True
    try:
        yield
    finally:
        _suppress_console_logs.active = False


def _get_logger() -> BoundLogger:
    """Get logger lazily to respect runtime config."""
    from memplane.core.logging import get_logger

    return get_logger("progress")


def _is_tty() -> bool:
    """Check if stderr is a TTY."""
    return hasattr(sys.stderr, "isatty") and sys.stderr.isatty()


def get_console() -> Console:
    """Get the shared Rich console instance."""
    return _console


def status(message: str, *, style: str = "info", indent: int = 0) -> None:
    """Print a styled status message to stderr."""
    prefix = _STYLES.get(style, "")
    padding = " " * indent
    _console.print(f"{padding}{prefix}{message}", highlight=False)

    _get_logger().debug("status", message=message, style=style)


def pluralize(count: int, singular: str, plural: str | None = None) -> str:
    """Return grammatically correct singular/plural form.

    Args:
        count: The number of items
        singular: Singular form (e.g., "embedding")
        plural: Plural form (default: singular + "s")

    Returns:
        Formatted string like "1 embedding" or "3 embeddings"
    """
    if plural is None:
        plural = singular + "s"
    word = singular if count == 1 else plural
    return f"{count} {word}"


@contextmanager
def migration_progress(
    desc: str,
    *,
    unit: str = "entities",
    force: bool = False,
) -> Iterator[Callable[[int, int], None]]:
    """Yield an ``on_progress(processed, total)`` callback backed by a bar.

    The bar is only drawn on a TTY (or with ``force=True``); otherwise the
    callback logs at DEBUG every hundred entities.
    """
    log = _get_logger()
    start = time.perf_counter()

    if not (force or _is_tty()):

        def _log_progress(processed: int, total: int) -> None:
            if processed == total or processed % 100 == 0:
                log.debug("progress", desc=desc, processed=processed, total=total)

        yield _log_progress
        log.debug("progress_done", desc=desc, elapsed_s=round(time.perf_counter() - start, 2))
        return

    with (
        suppress_console_logs(),
        Progress(
            TextColumn("    {task.description}:"),
            BarColumn(bar_width=25, style="cyan", complete_style="cyan"),
            TaskProgressColumn(),
            TextColumn("{task.completed}/{task.total} {task.fields[unit]}"),
            console=_console,
            transient=True,
        ) as pbar,
    ):
        task_id: TaskID = pbar.add_task(desc, total=None, unit=unit)

        def _advance(processed: int, total: int) -> None:
            pbar.update(task_id, completed=processed, total=total)

        yield _advance
