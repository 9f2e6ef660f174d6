"""Shutdown of a running source VM."""

from __future__ import annotations

import logging
from typing import ClassVar

from vmmigrator.models import Host

from .base import VMJob


class StopJob(VMJob):
    name: ClassVar[str] = "shutdown"
    host: ClassVar[Host] = Host.SOURCE

    async def execute(self) -> None:
        self._log(logging.INFO, f"Stopping {self.vm_name}")
        await self._context.hypervisor.stop_vm(self.vm_name)
