"""Hyper-V operations on the source and target hosts.

`Hypervisor` is the seam between orchestration and the platform: the
orchestrator, validators and jobs only talk to this protocol. `HyperVHost`
implements it with PowerShell cmdlets, run locally for the source host and
over the SSH session for the target host.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from vmmigrator.executor import Executor
from vmmigrator.logger import FULL
from vmmigrator.models import CommandResult, Host, OperationError, PowerState, TargetVolume, VMRef
from vmmigrator.powershell import parse_json_list, quote, run_script

__all__ = [
    "ExportRequest",
    "HyperVHost",
    "Hypervisor",
    "ImportRequest",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExportRequest:
    """Parameters of one VM export."""

    vm_name: str
    destination: str  # Share root; the hypervisor creates <destination>\<vm_name>


@dataclass(frozen=True)
class ImportRequest:
    """Parameters of one VM import on the target host."""

    vm_name: str
    config_path: str  # Exported registry file (.vmcx)
    vm_path: str  # Destination for configuration, checkpoints and smart paging
    vhd_path: str  # Destination for virtual hard disks
    generate_new_id: bool = True


class Hypervisor(Protocol):
    """Platform operations used by a migration run."""

    async def list_vms(self) -> list[VMRef]:
        """Enumerate VMs on the source host."""
        ...

    async def list_volumes(self) -> list[TargetVolume]:
        """Enumerate target volumes that have a drive letter."""
        ...

    async def path_exists(self, path: str) -> bool:
        """Check whether a path exists on the target host."""
        ...

    async def ensure_directory(self, path: str) -> None:
        """Create a directory on the target host if it is missing."""
        ...

    async def stop_vm(self, vm_name: str) -> None:
        """Shut down a source VM and return once it is off."""
        ...

    async def export_vm(self, request: ExportRequest) -> None:
        """Export a source VM to the target share."""
        ...

    async def find_vm_config(self, vm_name: str, export_folder: str) -> str:
        """Locate the registry file of an exported VM on the target host."""
        ...

    async def import_vm(self, request: ImportRequest) -> None:
        """Register an exported VM on the target host."""
        ...


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _error_message(result: CommandResult) -> str:
    for line in result.stderr.splitlines():
        text = line.strip()
        if text and not text.startswith("#< CLIXML"):
            return text
    return f"exit code {result.exit_code}"


class HyperVHost:
    """Hypervisor implementation backed by Hyper-V PowerShell cmdlets."""

    def __init__(self, source: Executor, target: Executor) -> None:
        """Initialize with executors for both hosts.

        Args:
            source: Executor for the local host (exports, shutdowns)
            target: Executor for the remote host (volumes, folders, imports)
        """
        self._source = source
        self._target = target

    async def _run(
        self,
        host: Host,
        script: str,
        operation: str,
        vm_name: str | None = None,
    ) -> CommandResult:
        executor = self._source if host == Host.SOURCE else self._target
        logger.log(FULL, "Running %s", operation, extra={"job": "hyperv", "host": host, "vm": vm_name})
        result = await run_script(executor, script)
        if not result.success:
            raise OperationError(
                operation,
                vm_name,
                _error_message(result),
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result

    async def list_vms(self) -> list[VMRef]:
        script = (
            "$vms = @(Get-VM | ForEach-Object { "
            "$disks = @(Get-VMHardDiskDrive -VM $_ | Where-Object Path | ForEach-Object { "
            "$item = Get-Item -LiteralPath $_.Path -ErrorAction SilentlyContinue; "
            "[pscustomobject]@{ Path = $_.Path; Size = $(if ($item) { $item.Length } else { 0 }) } }); "
            "[pscustomobject]@{ Name = $_.Name; State = $_.State.ToString(); Disks = $disks } }); "
            "ConvertTo-Json -InputObject $vms -Depth 4 -Compress"
        )
        result = await self._run(Host.SOURCE, script, "list VMs")

        vms: list[VMRef] = []
        for entry in parse_json_list(result.stdout):
            disks = [d for d in _as_list(entry.get("Disks")) if isinstance(d, dict)]
            vms.append(
                VMRef(
                    name=entry["Name"],
                    state=PowerState.from_hyperv(entry.get("State")),
                    disk_paths=tuple(d["Path"] for d in disks),
                    size_bytes=sum(int(d.get("Size") or 0) for d in disks),
                )
            )
        return vms

    async def list_volumes(self) -> list[TargetVolume]:
        script = (
            "$vols = @(Get-Volume | Where-Object { $_.DriveLetter } | ForEach-Object { "
            "[pscustomobject]@{ DriveLetter = [string]$_.DriveLetter; "
            "SizeRemaining = [int64]$_.SizeRemaining; Size = [int64]$_.Size; "
            "Label = $_.FileSystemLabel } }); "
            "ConvertTo-Json -InputObject $vols -Compress"
        )
        result = await self._run(Host.TARGET, script, "list volumes")
        return [
            TargetVolume(
                drive_letter=entry["DriveLetter"],
                free_bytes=int(entry.get("SizeRemaining") or 0),
                size_bytes=int(entry["Size"]) if entry.get("Size") is not None else None,
                label=entry.get("Label") or None,
            )
            for entry in parse_json_list(result.stdout)
            if entry.get("DriveLetter")
        ]

    async def path_exists(self, path: str) -> bool:
        result = await self._run(Host.TARGET, f"Test-Path -LiteralPath {quote(path)}", "check path")
        return result.stdout.strip().lower() == "true"

    async def ensure_directory(self, path: str) -> None:
        await self._run(
            Host.TARGET,
            f"New-Item -ItemType Directory -Force -Path {quote(path)} | Out-Null",
            "create directory",
        )

    async def stop_vm(self, vm_name: str) -> None:
        await self._run(Host.SOURCE, f"Stop-VM -Name {quote(vm_name)} -Force", "stop", vm_name)

    async def export_vm(self, request: ExportRequest) -> None:
        script = f"Export-VM -Name {quote(request.vm_name)} -Path {quote(request.destination)}"
        await self._run(Host.SOURCE, script, "export", request.vm_name)

    async def find_vm_config(self, vm_name: str, export_folder: str) -> str:
        folder = f"{export_folder}\\Virtual Machines"
        script = (
            f"Get-ChildItem -LiteralPath {quote(folder)} -Filter *.vmcx | "
            "Select-Object -First 1 -ExpandProperty FullName"
        )
        result = await self._run(Host.TARGET, script, "import", vm_name)
        config_path = result.stdout.strip()
        if not config_path:
            raise OperationError("import", vm_name, f"No VM configuration file found in {folder}")
        return config_path

    async def import_vm(self, request: ImportRequest) -> None:
        script = (
            f"Import-VM -Path {quote(request.config_path)} -Copy"
            f" -VirtualMachinePath {quote(request.vm_path)}"
            f" -SnapshotFilePath {quote(request.vm_path)}"
            f" -SmartPagingFilePath {quote(request.vm_path)}"
            f" -VhdDestinationPath {quote(request.vhd_path)}"
        )
        if request.generate_new_id:
            script += " -GenerateNewId"
        await self._run(Host.TARGET, script + " | Out-Null", "import", request.vm_name)
