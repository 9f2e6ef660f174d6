"""Import of an exported VM into the target host's registry."""

from __future__ import annotations

import logging
from typing import ClassVar

from vmmigrator.hyperv import ImportRequest
from vmmigrator.logger import FULL
from vmmigrator.models import Host

from .base import VMJob


class ImportJob(VMJob):
    """Registers an exported VM on the target host under a new identity.

    The new identity keeps the imported copy from colliding with the
    source VM, which still exists on the source host.
    """

    name: ClassVar[str] = "import"
    host: ClassVar[Host] = Host.TARGET

    async def execute(self) -> None:
        target = self._context.target
        export_folder = target.local_path(self.vm_name)

        config_path = await self._context.hypervisor.find_vm_config(self.vm_name, export_folder)
        self._log(FULL, f"Found configuration {config_path}")

        request = ImportRequest(
            vm_name=self.vm_name,
            config_path=config_path,
            vm_path=export_folder,
            vhd_path=f"{export_folder}\\Virtual Hard Disks",
            generate_new_id=True,
        )
        self._log(logging.INFO, f"Importing {self.vm_name}")
        await self._context.hypervisor.import_vm(request)
        self._log(logging.INFO, f"Imported {self.vm_name}")
