"""Optional shutdown of running source VMs before export."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from enum import StrEnum

from vmmigrator.decisions import DecisionFunction
from vmmigrator.events import EventBus
from vmmigrator.jobs import JobContext, StopJob
from vmmigrator.models import Decision, ErrorRecord, Gate, GateContext, Host, RunAbortedError, VMRef
from vmmigrator.pipeline import TaskPool, error_record, poll_until_complete
from vmmigrator.ui import run_blocking

__all__ = ["ShutdownCoordinator", "StopState"]

logger = logging.getLogger(__name__)


class StopState(StrEnum):
    """Per-VM shutdown state."""

    RUNNING = "running"
    STOP_REQUESTED = "stop_requested"
    STOPPED = "stopped"
    STOP_FAILED = "stop_failed"


class ShutdownCoordinator:
    """Stops running VMs concurrently after a single run-level confirmation.

    Only VMs observed as running are considered. Failed stops are never
    retried automatically; the operator decides whether to continue, retry
    or abort.
    """

    def __init__(
        self,
        context: JobContext,
        decide: DecisionFunction,
        event_bus: EventBus,
        poll_interval: float = 2.0,
        task_timeout: float | None = None,
        prompt: Callable[[DecisionFunction, GateContext], Awaitable[Decision]] = run_blocking,
    ) -> None:
        """Initialize the coordinator.

        Args:
            context: JobContext for the stop jobs
            decide: Answers both gates; may block on terminal input
            event_bus: Receives shutdown progress
            poll_interval: Seconds between polls of the stop tasks
            task_timeout: Per-stop limit in seconds (None: wait forever)
            prompt: Runs `decide` without blocking the event loop
        """
        self._context = context
        self._decide = decide
        self._event_bus = event_bus
        self._poll_interval = poll_interval
        self._task_timeout = task_timeout
        self._prompt = prompt
        self.states: dict[str, StopState] = {}

    async def _ask(self, context: GateContext) -> Decision:
        return await self._prompt(self._decide, context)

    async def run(self, vms: Sequence[VMRef]) -> list[str]:
        """Offer to shut down the running VMs among `vms`.

        Returns:
            Names of VMs that were stopped

        Raises:
            RunAbortedError: If the operator aborts at either gate
        """
        running = [vm.name for vm in vms if vm.running]
        if not running:
            logger.debug("No running VMs selected", extra={"job": "shutdown", "host": Host.SOURCE})
            return []

        self.states = dict.fromkeys(running, StopState.RUNNING)
        decision = await self._ask(GateContext(gate=Gate.SHUTDOWN_RUNNING_VMS, vm_names=tuple(running)))
        if decision == Decision.ABORT:
            raise RunAbortedError("Run aborted at shutdown confirmation")
        if decision != Decision.PROCEED:
            logger.warning(
                "Exporting %d running VM(s) without shutting them down",
                len(running),
                extra={"job": "shutdown", "host": Host.SOURCE},
            )
            return []

        pending = running
        while True:
            failures = await self._stop(pending)
            if not failures:
                break

            decision = await self._ask(
                GateContext(
                    gate=Gate.STOP_FAILURES,
                    vm_names=tuple(f.vm_name for f in failures),
                    errors=tuple(failures),
                )
            )
            if decision == Decision.RETRY:
                pending = [f.vm_name for f in failures]
                continue
            if decision == Decision.PROCEED:
                logger.warning(
                    "Continuing although %d VM(s) could not be stopped",
                    len(failures),
                    extra={"job": "shutdown", "host": Host.SOURCE},
                )
                break
            raise RunAbortedError(f"Run aborted: {len(failures)} VM(s) could not be stopped")

        return [name for name, state in self.states.items() if state == StopState.STOPPED]

    async def _stop(self, names: list[str]) -> list[ErrorRecord]:
        """Issue stops concurrently and wait until each VM is terminal."""
        pool = TaskPool("shutdown", timeout=self._task_timeout)
        for name in names:
            self.states[name] = StopState.STOP_REQUESTED
            pool.launch(name, StopJob(self._context, name).execute())

        failures: list[ErrorRecord] = []

        def on_settled(name: str, error: BaseException | None) -> None:
            if error is None:
                self.states[name] = StopState.STOPPED
                logger.info("Stopped %s", name, extra={"job": "shutdown", "host": Host.SOURCE})
                return
            self.states[name] = StopState.STOP_FAILED
            record = error_record(name, "stop", error)
            failures.append(record)
            logger.error(
                "Could not stop %s: %s",
                name,
                record.message,
                extra={"job": "shutdown", "host": Host.SOURCE},
            )

        await poll_until_complete(pool, self._poll_interval, self._event_bus, on_settled)
        return failures
