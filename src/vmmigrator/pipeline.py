"""Concurrent per-VM task execution with poll-based completion detection.

A phase launches one asyncio task per VM into a `TaskPool`, then samples the
pool at a fixed interval until every task is terminal. Between polls the
orchestrator does no work; a single slow VM never blocks observation of the
others.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine, Iterator
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from vmmigrator.config import PollingConfig
from vmmigrator.events import EventBus, ProgressEvent
from vmmigrator.jobs import ExportJob, ImportJob, JobContext, VMJob
from vmmigrator.models import (
    ErrorRecord,
    ExportPhaseError,
    Host,
    MigrationTask,
    OperationError,
    ProgressUpdate,
    TaskPhase,
    TaskTimeoutError,
)

__all__ = [
    "PhaseResult",
    "TaskPipeline",
    "TaskPool",
    "error_record",
    "poll_until_complete",
]

logger = logging.getLogger(__name__)

SettledCallback: TypeAlias = Callable[[str, BaseException | None], None]


class TaskPool:
    """The set of in-flight tasks of one phase, keyed by VM name.

    Owned by whoever runs the phase and discarded afterwards; there is no
    process-wide registry.
    """

    def __init__(self, label: str, timeout: float | None = None) -> None:
        """Initialize an empty pool.

        Args:
            label: Phase name used for progress events and task names
            timeout: Seconds after which an unfinished task is cancelled and
                recorded as TaskTimeoutError (None = wait indefinitely)
        """
        self.label = label
        self._timeout = timeout
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._launched_at: dict[str, float] = {}
        self._settled: dict[str, BaseException | None] = {}
        self._timed_out: set[str] = set()

    def launch(self, key: str, coro: Coroutine[Any, Any, None]) -> None:
        """Start a task. Keys must be unique within the pool."""
        if key in self._tasks:
            coro.close()
            raise ValueError(f"Task {key!r} already launched in {self.label} pool")
        self._tasks[key] = asyncio.create_task(coro, name=f"{self.label}:{key}")
        self._launched_at[key] = time.monotonic()

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[str]:
        return iter(self._tasks)

    @property
    def completed(self) -> int:
        """Number of tasks observed in a terminal state."""
        return len(self._settled)

    @property
    def progress(self) -> float:
        """Completed fraction, 1.0 for an empty pool."""
        if not self._tasks:
            return 1.0
        return self.completed / len(self._tasks)

    @property
    def percent(self) -> int:
        """Completed percentage; 100 only once every task is terminal."""
        if not self._tasks:
            return 100
        return self.completed * 100 // len(self._tasks)

    @property
    def all_done(self) -> bool:
        return len(self._settled) == len(self._tasks)

    def settle(self) -> list[tuple[str, BaseException | None]]:
        """Collect tasks that became terminal since the previous call.

        Returns:
            (key, error) pairs; error is None for tasks that succeeded
        """
        self._enforce_timeout()
        newly_settled: list[tuple[str, BaseException | None]] = []
        for key, task in self._tasks.items():
            if key in self._settled or not task.done():
                continue
            error: BaseException | None
            if task.cancelled():
                error = (
                    TaskTimeoutError(key, self._timeout)
                    if key in self._timed_out and self._timeout is not None
                    else asyncio.CancelledError(f"{key} was cancelled")
                )
            else:
                error = task.exception()
            self._settled[key] = error
            newly_settled.append((key, error))
        return newly_settled

    def results(self) -> dict[str, BaseException | None]:
        """Errors by key for every settled task."""
        return dict(self._settled)

    def _enforce_timeout(self) -> None:
        if self._timeout is None:
            return
        now = time.monotonic()
        for key, task in self._tasks.items():
            if task.done() or key in self._timed_out:
                continue
            if now - self._launched_at[key] >= self._timeout:
                logger.warning(
                    "%s exceeded %gs, cancelling",
                    key,
                    self._timeout,
                    extra={"job": self.label, "host": Host.SOURCE},
                )
                self._timed_out.add(key)
                task.cancel()

    async def cancel_all(self) -> None:
        """Cancel unfinished tasks and wait for them to unwind."""
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


async def poll_until_complete(
    pool: TaskPool,
    interval: float,
    event_bus: EventBus,
    on_settled: SettledCallback | None = None,
) -> dict[str, BaseException | None]:
    """Sample the pool every `interval` seconds until all tasks are terminal.

    A progress event is published after each poll. If the caller is
    cancelled (operator interrupt), the pool's tasks are cancelled too.

    Returns:
        Errors by key (None for success)
    """
    if len(pool) == 0:
        return {}

    try:
        while not pool.all_done:
            await asyncio.sleep(interval)
            settled = pool.settle()
            if on_settled is not None:
                for key, error in settled:
                    on_settled(key, error)
            event_bus.publish(
                ProgressEvent(
                    job=pool.label,
                    update=ProgressUpdate(
                        percent=pool.percent,
                        current=pool.completed,
                        total=len(pool),
                        item=settled[-1][0] if settled else None,
                    ),
                )
            )
    except asyncio.CancelledError:
        await pool.cancel_all()
        raise

    return pool.results()


def error_record(vm_name: str, operation: str, error: BaseException) -> ErrorRecord:
    """Convert a captured task exception into an ErrorRecord."""
    if isinstance(error, OperationError):
        return ErrorRecord(
            vm_name=vm_name,
            operation=operation,
            message=error.message,
            detail=error.stderr.strip() or None,
        )
    if isinstance(error, TaskTimeoutError):
        return ErrorRecord(vm_name=vm_name, operation=operation, message=str(error))
    return ErrorRecord(
        vm_name=vm_name,
        operation=operation,
        message=str(error) or type(error).__name__,
        detail=type(error).__name__,
    )


@dataclass
class PhaseResult:
    """Partition of a phase's tasks into successes and failures."""

    succeeded: list[str] = field(default_factory=list)
    failed: list[ErrorRecord] = field(default_factory=list)

    @property
    def launched(self) -> int:
        return len(self.succeeded) + len(self.failed)


class TaskPipeline:
    """Two-phase export-then-import engine.

    Both phases follow the same protocol: one job per VM, launched together,
    polled to completion. They differ only in what a failure means: any
    export failure stops the run before the import phase, while import
    failures are only recorded.
    """

    def __init__(
        self,
        context: JobContext,
        polling: PollingConfig,
        event_bus: EventBus,
    ) -> None:
        self._context = context
        self._polling = polling
        self._event_bus = event_bus

    async def export(self, tasks: dict[str, MigrationTask]) -> PhaseResult:
        """Export every VM in `tasks`.

        Raises:
            ExportPhaseError: If any export failed, after each failure has
                been logged. No import is attempted in that case.
        """
        jobs: dict[str, VMJob] = {name: ExportJob(self._context, name) for name in tasks}
        result = await self._run_phase(
            jobs,
            tasks,
            running=TaskPhase.EXPORTING,
            done=TaskPhase.EXPORTED,
            interval=self._polling.export_interval,
        )

        if result.failed:
            for record in result.failed:
                logger.error(
                    "Export of %s failed: %s",
                    record.vm_name,
                    record.message,
                    extra={"job": "export", "host": Host.SOURCE, "detail": record.detail},
                )
            raise ExportPhaseError(result.failed)

        return result

    async def import_(self, tasks: dict[str, MigrationTask]) -> PhaseResult:
        """Import every exported VM; failures are recorded per VM."""
        eligible = {name: task for name, task in tasks.items() if task.phase == TaskPhase.EXPORTED}
        jobs: dict[str, VMJob] = {name: ImportJob(self._context, name) for name in eligible}
        return await self._run_phase(
            jobs,
            eligible,
            running=TaskPhase.IMPORTING,
            done=TaskPhase.IMPORTED,
            interval=self._polling.import_interval,
        )

    async def _run_phase(
        self,
        jobs: dict[str, VMJob],
        tasks: dict[str, MigrationTask],
        running: TaskPhase,
        done: TaskPhase,
        interval: float,
    ) -> PhaseResult:
        result = PhaseResult()
        if not jobs:
            logger.info("Nothing to %s", running.value.removesuffix("ing"), extra={"job": "pipeline"})
            return result

        label = next(iter(jobs.values())).name
        pool = TaskPool(label, timeout=self._polling.task_timeout)
        for name, job in jobs.items():
            tasks[name].advance(running)
            pool.launch(name, job.execute())

        def on_settled(name: str, error: BaseException | None) -> None:
            task = tasks[name]
            if error is None:
                task.advance(done)
                result.succeeded.append(name)
            else:
                record = error_record(name, label, error)
                task.fail(record)
                result.failed.append(record)

        await poll_until_complete(pool, interval, self._event_bus, on_settled)
        logger.info(
            "%s phase finished: %d succeeded, %d failed",
            label.capitalize(),
            len(result.succeeded),
            len(result.failed),
            extra={"job": label},
        )
        return result
