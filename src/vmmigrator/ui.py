"""Terminal UI with Rich Live display for phase progress."""

from __future__ import annotations

import asyncio
import contextlib
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TaskID, TaskProgressColumn, TextColumn
from rich.table import Table
from rich.text import Text

from vmmigrator.events import ConnectionEvent, ProgressEvent
from vmmigrator.models import ProgressUpdate

T = TypeVar("T")

__all__ = ["TerminalUI", "run_blocking"]


async def run_blocking(func: Callable[..., T], *args: Any) -> T:
    """Run a blocking call (a terminal prompt) in a daemon thread and await it.

    The thread is not part of the loop's default executor, so an interrupted
    run neither waits for a pending ``input()`` while the loop shuts down nor
    keeps the interpreter alive afterwards. An answer that arrives after the
    caller was cancelled is dropped.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[T] = loop.create_future()

    def deliver(result: T | None, error: Exception | None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)  # type: ignore[arg-type]

    def worker() -> None:
        try:
            outcome: tuple[T | None, Exception | None] = (func(*args), None)
        except Exception as e:
            outcome = (None, e)
        # Loop already closed: nobody is waiting for the answer
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(deliver, *outcome)

    threading.Thread(target=worker, name=f"prompt-{getattr(func, '__name__', 'call')}", daemon=True).start()
    return await future


class TerminalUI:
    """Rich terminal UI with connection status and per-phase progress bars.

    Log lines are printed through the same console by the logging handler
    and appear above the live area.
    """

    def __init__(self, console: Console, target_hostname: str | None = None) -> None:
        """Initialize the terminal UI.

        Args:
            console: Rich console for rendering
            target_hostname: Shown next to the connection status
        """
        self._console = console
        self._target_hostname = target_hostname

        self._progress = Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TaskProgressColumn(),
            console=console,
            expand=True,
        )
        self._phase_tasks: dict[str, TaskID] = {}

        self._connection_status = "disconnected"
        self._connection_latency: float | None = None

        self._live: Live | None = None

    def _render(self) -> RenderableType:
        status = Table.grid(padding=(0, 2))
        status.add_column(justify="left")

        conn_text = Text()
        conn_text.append("Connection: ", style="dim")
        if self._connection_status == "connected":
            conn_text.append("connected", style="green")
            if self._target_hostname:
                conn_text.append(f" to {self._target_hostname}", style="dim")
            if self._connection_latency is not None:
                conn_text.append(f" ({self._connection_latency:.1f}ms)", style="dim")
        else:
            conn_text.append("disconnected", style="red")
        status.add_row(conn_text)

        return Group(status, self._progress)

    def start(self) -> None:
        """Start the live display."""
        self._live = Live(
            self._render(),
            console=self._console,
            refresh_per_second=10,
            transient=False,
        )
        self._live.start()

    def stop(self) -> None:
        """Stop the live display."""
        if self._live:
            self._live.stop()
            self._live = None

    @contextmanager
    def paused(self) -> Iterator[None]:
        """Suspend the live display while the operator answers a prompt."""
        was_live = self._live is not None
        self.stop()
        try:
            yield
        finally:
            if was_live:
                self.start()

    async def prompt(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking prompt with the live display paused.

        The display is stopped and restarted on the event loop thread; only
        the prompt itself runs in a worker thread.
        """
        with self.paused():
            return await run_blocking(func, *args)

    def update_phase_progress(self, phase: str, update: ProgressUpdate) -> None:
        """Update the progress bar of a phase ("shutdown", "export", "import")."""
        total = update.total or 100
        if phase not in self._phase_tasks:
            self._phase_tasks[phase] = self._progress.add_task(f"[cyan]{phase}[/cyan]", total=total)

        task_id = self._phase_tasks[phase]
        description = f"[cyan]{phase}[/cyan]"
        if update.item:
            description += f": {update.item}"

        if update.current is not None:
            self._progress.update(task_id, completed=update.current, total=total, description=description)
        elif update.percent is not None:
            self._progress.update(task_id, completed=update.percent, total=100, description=description)
        else:
            self._progress.update(task_id, description=description)

        if self._live:
            self._live.update(self._render())

    def set_connection_status(self, status: str, latency: float | None = None) -> None:
        self._connection_status = status
        self._connection_latency = latency
        if self._live:
            self._live.update(self._render())

    async def consume_events(self, queue: asyncio.Queue[Any]) -> None:
        """Consume events from an EventBus queue until the None sentinel."""
        while True:
            event = await queue.get()
            if event is None:  # Shutdown sentinel
                break

            if isinstance(event, ProgressEvent):
                self.update_phase_progress(event.job, event.update)
            elif isinstance(event, ConnectionEvent):
                self.set_connection_status(event.status, event.latency)
