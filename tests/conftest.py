"""Shared test fixtures for vm-migrator tests."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock

import pytest

from vmmigrator.config import Configuration, PollingConfig
from vmmigrator.events import EventBus
from vmmigrator.hyperv import ExportRequest, ImportRequest
from vmmigrator.models import CommandResult, OperationError, PowerState, TargetVolume, VMRef

GiB = 1024**3


class FakeHypervisor:
    """In-memory Hypervisor with a fake destination filesystem.

    Exports create the VM's folder on the destination, so a second run
    against the same fake sees the conflicts a real host would.
    """

    def __init__(
        self,
        vms: list[VMRef] | None = None,
        volumes: list[TargetVolume] | None = None,
        existing: set[str] | None = None,
    ) -> None:
        self.vms = list(vms or [])
        self.volumes = list(volumes or [])
        self.paths: set[str] = set(existing or ())
        self.stop_failures: dict[str, str] = {}
        self.export_failures: dict[str, str] = {}
        self.import_failures: dict[str, str] = {}
        self.delays: dict[str, float] = {}
        self.calls: list[tuple[str, str]] = []
        self.imported: list[ImportRequest] = []

    @staticmethod
    def _share_to_local(share_path: str) -> str:
        # \\host\D$\VMs -> D:\VMs
        parts = share_path.lstrip("\\").split("\\")
        return f"{parts[1][0]}:\\" + "\\".join(parts[2:])

    async def list_vms(self) -> list[VMRef]:
        return list(self.vms)

    async def list_volumes(self) -> list[TargetVolume]:
        return list(self.volumes)

    async def path_exists(self, path: str) -> bool:
        return path in self.paths

    async def ensure_directory(self, path: str) -> None:
        self.calls.append(("mkdir", path))
        self.paths.add(path)

    async def stop_vm(self, vm_name: str) -> None:
        self.calls.append(("stop", vm_name))
        if vm_name in self.stop_failures:
            raise OperationError("stop", vm_name, self.stop_failures[vm_name])

    async def export_vm(self, request: ExportRequest) -> None:
        self.calls.append(("export", request.vm_name))
        await asyncio.sleep(self.delays.get(request.vm_name, 0))
        if request.vm_name in self.export_failures:
            raise OperationError("export", request.vm_name, self.export_failures[request.vm_name], stderr="boom")
        self.paths.add(f"{self._share_to_local(request.destination)}\\{request.vm_name}")

    async def find_vm_config(self, vm_name: str, export_folder: str) -> str:
        return f"{export_folder}\\Virtual Machines\\{vm_name}.vmcx"

    async def import_vm(self, request: ImportRequest) -> None:
        self.calls.append(("import", request.vm_name))
        await asyncio.sleep(self.delays.get(request.vm_name, 0))
        if request.vm_name in self.import_failures:
            raise OperationError("import", request.vm_name, self.import_failures[request.vm_name])
        self.imported.append(request)

    def called(self, operation: str) -> list[str]:
        return [name for op, name in self.calls if op == operation]


@pytest.fixture(scope="session", autouse=True)
def configure_test_logging() -> None:
    """Keep library logs quiet while test module loggers stay verbose."""
    logging.getLogger().setLevel(logging.WARNING)
    logging.getLogger("vmmigrator").setLevel(logging.DEBUG)
    logging.getLogger("tests").setLevel(logging.DEBUG)


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    """Undo handler changes made by setup_logging()."""
    root = logging.getLogger()
    app_logger = logging.getLogger("vmmigrator")
    saved = (list(root.handlers), root.level, list(app_logger.handlers), app_logger.level, app_logger.propagate)
    yield
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])
    app_logger.handlers[:] = saved[2]
    app_logger.setLevel(saved[3])
    app_logger.propagate = saved[4]


@pytest.fixture
def mock_connection() -> MagicMock:
    """Create a mock asyncssh connection."""
    conn = MagicMock()
    conn.run = AsyncMock(
        return_value=MagicMock(
            exit_status=0,
            stdout="output",
            stderr="",
        )
    )
    conn.close = MagicMock()
    conn.wait_closed = AsyncMock()
    return conn


@pytest.fixture
def mock_executor() -> MagicMock:
    """Create a mock executor."""
    executor = MagicMock()
    executor.run_command = AsyncMock(return_value=CommandResult(exit_code=0, stdout="", stderr=""))
    executor.terminate_all_processes = AsyncMock()
    return executor


@pytest.fixture
def mock_event_bus() -> MagicMock:
    """Create a mock EventBus for testing."""
    event_bus = MagicMock(spec=EventBus)
    event_bus.subscribe = MagicMock(return_value=MagicMock())
    event_bus.publish = MagicMock()
    event_bus.close = MagicMock()
    return event_bus


@pytest.fixture
def sample_vms() -> list[VMRef]:
    """Three source VMs, one of them running."""
    return [
        VMRef(name="web01", state=PowerState.RUNNING, disk_paths=("C:\\VMs\\web01\\web01.vhdx",), size_bytes=20 * GiB),
        VMRef(name="db01", state=PowerState.OFF, disk_paths=("C:\\VMs\\db01\\db01.vhdx",), size_bytes=40 * GiB),
        VMRef(name="build", state=PowerState.OFF, disk_paths=(), size_bytes=10 * GiB),
    ]


@pytest.fixture
def sample_volume() -> TargetVolume:
    return TargetVolume(drive_letter="D", free_bytes=500 * GiB, size_bytes=1000 * GiB, label="Data")


@pytest.fixture
def fake_hypervisor(sample_vms: list[VMRef], sample_volume: TargetVolume) -> FakeHypervisor:
    return FakeHypervisor(vms=sample_vms, volumes=[sample_volume])


@pytest.fixture
def fast_config() -> Configuration:
    """Default configuration with zero poll intervals."""
    return Configuration(polling=PollingConfig(shutdown_interval=0, export_interval=0, import_interval=0))


@pytest.fixture
def make_hypervisor() -> type[FakeHypervisor]:
    """The FakeHypervisor class, for tests that need a custom inventory."""
    return FakeHypervisor
