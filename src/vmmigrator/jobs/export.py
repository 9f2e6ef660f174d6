"""Export of a source VM to the destination share."""

from __future__ import annotations

import logging
from typing import ClassVar

from vmmigrator.hyperv import ExportRequest
from vmmigrator.models import Host

from .base import VMJob


class ExportJob(VMJob):
    """Exports one VM over the target's administrative share."""

    name: ClassVar[str] = "export"
    host: ClassVar[Host] = Host.SOURCE

    def request(self) -> ExportRequest:
        return ExportRequest(vm_name=self.vm_name, destination=self._context.target.share_root)

    async def execute(self) -> None:
        request = self.request()
        self._log(logging.INFO, f"Exporting {self.vm_name} to {request.destination}")
        await self._context.hypervisor.export_vm(request)
        self._log(logging.INFO, f"Exported {self.vm_name}")
