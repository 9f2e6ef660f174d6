"""Core orchestrator coordinating the complete migration workflow."""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Callable
from datetime import UTC, datetime
from logging.handlers import QueueListener
from typing import Any, TypeVar

from rich.console import Console

from vmmigrator.config import Configuration
from vmmigrator.connection import Connection, check_reachability, get_local_hostname
from vmmigrator.decisions import DecisionFunction
from vmmigrator.events import EventBus
from vmmigrator.executor import LocalExecutor, RemoteExecutor
from vmmigrator.hyperv import Hypervisor, HyperVHost
from vmmigrator.jobs import JobContext
from vmmigrator.logger import generate_log_filename, get_logs_directory, setup_logging, shutdown_logging
from vmmigrator.models import (
    Host,
    MigrationRun,
    MigrationTask,
    RunAbortedError,
    RunStatus,
    TargetPath,
    TargetVolume,
    VMRef,
)
from vmmigrator.pipeline import TaskPipeline
from vmmigrator.report import ResultReporter, build_report
from vmmigrator.selection import Selector
from vmmigrator.shutdown import ShutdownCoordinator
from vmmigrator.ui import TerminalUI, run_blocking
from vmmigrator.validation import check_capacity, filter_conflicts

__all__ = ["Orchestrator"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Orchestrator:
    """Main orchestrator coordinating the complete migration workflow.

    Responsibilities:
    - Reachability check and SSH session to the target
    - VM and destination volume selection
    - Capacity and naming-conflict validation
    - Optional shutdown of running VMs
    - Concurrent export, then concurrent import
    - Final per-VM report
    """

    def __init__(
        self,
        target: str,
        config: Configuration,
        selector: Selector,
        decide: DecisionFunction,
        console: Console | None = None,
        hypervisor: Hypervisor | None = None,
    ) -> None:
        """Initialize orchestrator with target and validated configuration.

        Args:
            target: Target hostname or SSH alias
            config: Validated configuration
            selector: Picks VMs and destination volume
            decide: Answers the operator gates
            console: Rich console for UI and log output (default: stderr)
            hypervisor: Hypervisor to use instead of PowerShell over the
                executors created for the session
        """
        self._config = config
        self._selector = selector
        self._decide = decide
        self._console = console or Console(stderr=True)
        self._run_id = secrets.token_hex(4)
        self._source_hostname = get_local_hostname()
        self._target_hostname = target

        # Core components
        self._event_bus = EventBus()
        self._connection: Connection | None = None
        self._local_executor: LocalExecutor | None = None
        self._remote_executor: RemoteExecutor | None = None
        self._hypervisor = hypervisor

        # Logging infrastructure (initialized in run())
        self._listener: QueueListener | None = None
        self._ui: TerminalUI | None = None
        self._ui_task: asyncio.Task[None] | None = None

        self._tasks: dict[str, MigrationTask] = {}

    @property
    def run_id(self) -> str:
        return self._run_id

    def _create_job_context(self, target: TargetPath) -> JobContext:
        """Create JobContext for the per-VM jobs.

        Must only be called after the session is established.
        """
        assert self._hypervisor is not None

        return JobContext(
            hypervisor=self._hypervisor,
            target=target,
            run_id=self._run_id,
            source_hostname=self._source_hostname,
            target_hostname=self._target_hostname,
        )

    async def run(self) -> MigrationRun:
        """Execute the complete migration workflow.

        Returns:
            MigrationRun with report and status. Clean early exits (nothing
            selected, nothing left to export) are returned, not raised.

        Raises:
            MigrationError: For precondition failures, export failures and
                operator aborts
        """
        log_file_path = get_logs_directory() / generate_log_filename(self._run_id)
        run = MigrationRun(
            run_id=self._run_id,
            started_at=datetime.now(UTC),
            source_hostname=self._source_hostname,
            target_hostname=self._target_hostname,
            status=RunStatus.RUNNING,
            log_file=str(log_file_path),
        )

        # Initialize logging infrastructure BEFORE any operations
        self._listener, _ = setup_logging(
            log_file_path,
            self._config.logging,
            console=self._console,
            hostnames={Host.SOURCE: self._source_hostname, Host.TARGET: self._target_hostname},
        )
        self._ui = TerminalUI(console=self._console, target_hostname=self._target_hostname)
        self._ui_task = asyncio.create_task(self._ui.consume_events(self._event_bus.subscribe()))
        self._ui.start()

        try:
            await self._migrate(run)
            return run

        except asyncio.CancelledError:
            run.status = RunStatus.INTERRUPTED
            run.ended_at = datetime.now(UTC)
            run.error_message = "Migration interrupted by user"
            logger.warning("Migration interrupted by user", extra={"host": Host.SOURCE})
            raise

        except RunAbortedError as e:
            run.status = RunStatus.ABORTED
            run.ended_at = datetime.now(UTC)
            run.error_message = str(e)
            logger.warning("%s", e, extra={"host": Host.SOURCE})
            raise

        except Exception as e:
            run.status = RunStatus.FAILED
            run.ended_at = datetime.now(UTC)
            run.error_message = str(e)
            logger.critical("Migration failed: %s", e, extra={"host": Host.SOURCE})
            raise

        finally:
            await self._cleanup()

    async def _migrate(self, run: MigrationRun) -> None:
        # Phase 1: Reachability and session
        await self._check_reachability()
        await self._establish_connection()
        assert self._hypervisor is not None

        # Phase 2: Selection
        vms = await self._select_vms()
        if not vms:
            self._finish_early(run, RunStatus.NO_SELECTION, "No VMs selected, nothing to do")
            return
        run.selected = [vm.name for vm in vms]

        volume = await self._select_volume()
        if volume is None:
            self._finish_early(run, RunStatus.NO_VOLUME_SELECTED, "No destination volume selected, nothing to do")
            return
        target = TargetPath(host=self._target_hostname, drive_letter=volume.drive_letter)

        # Phase 3: Capacity
        check_capacity(vms, volume, self._config.capacity.safety_margin_bytes)

        # Phase 4: Destination root and naming conflicts
        logger.info("Ensuring %s exists", target.local_root, extra={"job": "selection", "host": Host.TARGET})
        await self._hypervisor.ensure_directory(target.local_root)
        survivors, conflicts = await filter_conflicts(vms, target, self._hypervisor.path_exists)
        run.skipped = [vm.name for vm in conflicts]
        if not survivors:
            self._finish_early(run, RunStatus.NOTHING_TO_EXPORT, "Every selected VM already exists on the target")
            return

        context = self._create_job_context(target)

        # Phase 5: Optional shutdown
        coordinator = ShutdownCoordinator(
            context,
            self._decide,
            self._event_bus,
            poll_interval=self._config.polling.shutdown_interval,
            task_timeout=self._config.polling.task_timeout,
            prompt=self._prompt,
        )
        await coordinator.run(survivors)

        # Phase 6: Export, then import
        self._tasks = {vm.name: MigrationTask(vm_name=vm.name) for vm in survivors}
        pipeline = TaskPipeline(context, self._config.polling, self._event_bus)
        logger.info(
            "Exporting %d VM(s) to %s",
            len(self._tasks),
            target.share_root,
            extra={"job": "export", "host": Host.SOURCE},
        )
        await pipeline.export(self._tasks)
        logger.info("Importing %d VM(s)", len(self._tasks), extra={"job": "import", "host": Host.TARGET})
        await pipeline.import_(self._tasks)

        # Phase 7: Report
        report = build_report(self._tasks)
        ResultReporter().emit(report)
        run.report = report
        run.status = RunStatus.COMPLETED_WITH_ERRORS if report.failed else RunStatus.COMPLETED
        run.ended_at = datetime.now(UTC)

    def _finish_early(self, run: MigrationRun, status: RunStatus, message: str) -> None:
        run.status = status
        run.ended_at = datetime.now(UTC)
        logger.info(message, extra={"host": Host.SOURCE})

    async def _prompt(self, func: Callable[..., T], *args: Any) -> T:
        """Ask the operator without blocking the event loop.

        Cancellation (Ctrl+C) returns immediately even while the prompt is
        still waiting for input.
        """
        if self._ui is None:
            return await run_blocking(func, *args)
        return await self._ui.prompt(func, *args)

    async def _check_reachability(self) -> None:
        """Verify the target answers on the file-sharing and management ports."""
        ports = [self._config.connection.file_share_port, self._config.connection.management_port]
        logger.info(
            "Checking %s on port(s) %s",
            self._target_hostname,
            ", ".join(str(p) for p in ports),
            extra={"job": "connection", "host": Host.TARGET},
        )
        await check_reachability(self._target_hostname, ports, self._config.connection.probe_timeout)

    async def _establish_connection(self) -> None:
        """Establish SSH connection to target machine."""
        conn_config = self._config.connection
        self._connection = Connection(
            self._target_hostname,
            event_bus=self._event_bus,
            username=conn_config.username,
            keepalive_interval=conn_config.keepalive_interval,
            keepalive_count_max=conn_config.keepalive_count_max,
        )
        await self._connection.connect()

        # Create executors
        self._local_executor = LocalExecutor()
        self._remote_executor = RemoteExecutor(self._connection)
        if self._hypervisor is None:
            self._hypervisor = HyperVHost(self._local_executor, self._remote_executor)

        logger.info("Connected to %s", self._target_hostname, extra={"job": "connection", "host": Host.TARGET})

    async def _select_vms(self) -> list[VMRef]:
        assert self._hypervisor is not None
        available = await self._hypervisor.list_vms()
        logger.debug(
            "Found %d VM(s) on source",
            len(available),
            extra={"job": "selection", "host": Host.SOURCE},
        )
        chosen = await self._prompt(self._selector.choose_vms, available)
        if chosen:
            logger.info(
                "Selected %s",
                ", ".join(vm.name for vm in chosen),
                extra={"job": "selection", "host": Host.SOURCE},
            )
        return chosen

    async def _select_volume(self) -> TargetVolume | None:
        assert self._hypervisor is not None
        volumes = await self._hypervisor.list_volumes()
        volume = await self._prompt(self._selector.choose_volume, volumes)
        if volume is not None:
            logger.info(
                "Destination volume %s:",
                volume.drive_letter,
                extra={"job": "selection", "host": Host.TARGET},
            )
        return volume

    async def _cleanup(self) -> None:
        """Clean up resources (processes, connection, UI, logging)."""
        # Terminate all processes
        if self._local_executor is not None:
            await self._local_executor.terminate_all_processes()
        if self._remote_executor is not None:
            await self._remote_executor.terminate_all_processes()

        if self._connection is not None:
            await self._connection.disconnect()

        # Close event bus (sends None sentinel to all consumers)
        self._event_bus.close()
        if self._ui_task is not None:
            await self._ui_task
        if self._ui is not None:
            self._ui.stop()

        # Flush queued records to the file and console
        if self._listener is not None:
            shutdown_logging(self._listener)
            self._listener = None
