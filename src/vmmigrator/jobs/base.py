"""Base class for per-VM jobs."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar

from vmmigrator.models import Host

from .context import JobContext


class VMJob(ABC):
    """One long-running operation for a single VM.

    Jobs are launched as independent asyncio tasks and run to their own
    completion or failure. A job signals failure by raising; the pipeline
    captures the exception and attaches it to the VM's record. Jobs never
    look at each other.
    """

    name: ClassVar[str]
    host: ClassVar[Host]  # Machine the operation runs on

    def __init__(self, context: JobContext, vm_name: str) -> None:
        """Initialize job for one VM.

        Args:
            context: JobContext with hypervisor and destination
            vm_name: VM this job operates on
        """
        self._context = context
        self.vm_name = vm_name
        self._logger = logging.getLogger(f"vmmigrator.jobs.{self.name}")

    @abstractmethod
    async def execute(self) -> None:
        """Run the operation.

        Raises:
            OperationError: If the hypervisor reports a failure
            asyncio.CancelledError: When the task is cancelled (timeout or interrupt)
        """
        ...

    def _log(self, level: int, message: str, **extra: Any) -> None:
        """Log a message tagged with this job, its host and VM."""
        self._logger.log(
            level,
            message,
            extra={"job": self.name, "host": self.host, "vm": self.vm_name, **extra},
        )
