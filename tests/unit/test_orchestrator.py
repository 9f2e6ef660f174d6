"""End-to-end tests of the migration workflow against a fake hypervisor."""

from __future__ import annotations

import asyncio
import io
import json
import logging
import threading
from collections.abc import Iterator
from logging.handlers import QueueHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from rich.console import Console

from vmmigrator.config import Configuration
from vmmigrator.decisions import DecisionFunction, ScriptedDecider
from vmmigrator.models import (
    Decision,
    ExportPhaseError,
    InsufficientCapacityError,
    Outcome,
    PowerState,
    RunAbortedError,
    RunStatus,
    SessionEstablishmentError,
    TargetVolume,
    UnreachableHostError,
    VMRef,
)
from vmmigrator.orchestrator import Orchestrator
from vmmigrator.selection import ScriptedSelector, Selector

if TYPE_CHECKING:
    from conftest import FakeHypervisor

GiB = 1024**3
ALL_VMS = ["web01", "db01", "build"]


@pytest.fixture
def connection() -> MagicMock:
    conn = MagicMock()
    conn.connect = AsyncMock()
    conn.disconnect = AsyncMock()
    conn.run = AsyncMock()
    return conn


@pytest.fixture
def reachability() -> AsyncMock:
    return AsyncMock()


@pytest.fixture(autouse=True)
def environment(tmp_path: Path, connection: MagicMock, reachability: AsyncMock) -> Iterator[None]:
    """Replace network access and keep log files inside tmp_path."""
    with (
        patch("vmmigrator.orchestrator.check_reachability", reachability),
        patch("vmmigrator.orchestrator.Connection", return_value=connection),
        patch("vmmigrator.orchestrator.get_logs_directory", return_value=tmp_path / "logs"),
    ):
        yield


def _orchestrator(
    config: Configuration,
    hypervisor: FakeHypervisor,
    selector: Selector | None = None,
    decide: DecisionFunction | None = None,
) -> Orchestrator:
    return Orchestrator(
        target="hv02",
        config=config,
        selector=selector or ScriptedSelector(vm_names=ALL_VMS, drive_letter="D"),
        decide=decide or ScriptedDecider(shutdown=True, on_stop_failure=Decision.ABORT),
        console=Console(file=io.StringIO(), width=120),
        hypervisor=hypervisor,
    )


def _log_entries(path: str | None) -> list[dict[str, Any]]:
    assert path is not None
    return [json.loads(line) for line in Path(path).read_text().splitlines()]


class TestSuccessfulRun:
    @pytest.mark.asyncio
    async def test_full_migration(
        self, fast_config: Configuration, fake_hypervisor: FakeHypervisor, connection: MagicMock
    ) -> None:
        run = await _orchestrator(fast_config, fake_hypervisor).run()

        assert run.status == RunStatus.COMPLETED
        assert run.selected == ALL_VMS
        assert run.skipped == []
        assert run.report is not None
        assert sorted(run.report.succeeded) == sorted(ALL_VMS)
        assert run.ended_at is not None

        assert fake_hypervisor.called("mkdir") == ["D:\\VMs"]
        assert fake_hypervisor.called("stop") == ["web01"]
        assert sorted(fake_hypervisor.called("export")) == sorted(ALL_VMS)
        assert sorted(fake_hypervisor.called("import")) == sorted(ALL_VMS)
        assert all(r.generate_new_id for r in fake_hypervisor.imported)
        connection.connect.assert_awaited_once()
        connection.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reachability_checks_both_ports(
        self, fast_config: Configuration, fake_hypervisor: FakeHypervisor, reachability: AsyncMock
    ) -> None:
        await _orchestrator(fast_config, fake_hypervisor).run()
        reachability.assert_awaited_once_with("hv02", [445, 22], 5.0)

    @pytest.mark.asyncio
    async def test_all_exports_finish_before_any_import(
        self, fast_config: Configuration, fake_hypervisor: FakeHypervisor
    ) -> None:
        fake_hypervisor.delays = {"build": 0.05}
        await _orchestrator(fast_config, fake_hypervisor).run()

        operations = [op for op, _name in fake_hypervisor.calls if op in ("export", "import")]
        assert operations == ["export"] * 3 + ["import"] * 3

    @pytest.mark.asyncio
    async def test_running_vms_exported_when_shutdown_declined(
        self, fast_config: Configuration, fake_hypervisor: FakeHypervisor
    ) -> None:
        run = await _orchestrator(fast_config, fake_hypervisor, decide=ScriptedDecider(shutdown=False)).run()
        assert run.status == RunStatus.COMPLETED
        assert fake_hypervisor.called("stop") == []
        assert "web01" in fake_hypervisor.called("export")

    @pytest.mark.asyncio
    async def test_log_file_records_the_run(self, fast_config: Configuration, fake_hypervisor: FakeHypervisor) -> None:
        run = await _orchestrator(fast_config, fake_hypervisor).run()

        entries = _log_entries(run.log_file)
        events = [e["event"] for e in entries]
        assert "Migration finished: 3 succeeded, 0 failed" in events
        assert any(e.get("hostname") == "hv02" for e in entries)
        assert run.log_file is not None
        assert run.run_id in Path(run.log_file).name


class TestConflicts:
    @pytest.mark.asyncio
    async def test_existing_folder_excludes_vm(
        self, fast_config: Configuration, fake_hypervisor: FakeHypervisor
    ) -> None:
        fake_hypervisor.paths.add("D:\\VMs\\db01")

        run = await _orchestrator(fast_config, fake_hypervisor).run()

        assert run.skipped == ["db01"]
        assert "db01" not in fake_hypervisor.called("export")
        assert run.report is not None
        assert "db01" not in [o.vm_name for o in run.report.outcomes]
        warnings = [e for e in _log_entries(run.log_file) if e["level"] == "WARNING"]
        assert any("db01" in e["event"] for e in warnings)

    @pytest.mark.asyncio
    async def test_all_conflicting_ends_cleanly(
        self, fast_config: Configuration, fake_hypervisor: FakeHypervisor
    ) -> None:
        fake_hypervisor.paths.update(f"D:\\VMs\\{name}" for name in ALL_VMS)

        run = await _orchestrator(fast_config, fake_hypervisor).run()

        assert run.status == RunStatus.NOTHING_TO_EXPORT
        assert run.report is None
        assert fake_hypervisor.called("stop") == []
        assert fake_hypervisor.called("export") == []

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, fast_config: Configuration, fake_hypervisor: FakeHypervisor) -> None:
        first = await _orchestrator(fast_config, fake_hypervisor).run()
        exports_after_first = len(fake_hypervisor.called("export"))

        second = await _orchestrator(fast_config, fake_hypervisor).run()

        assert first.status == RunStatus.COMPLETED
        assert second.status == RunStatus.NOTHING_TO_EXPORT
        assert second.skipped == ALL_VMS
        assert second.report is None
        assert len(fake_hypervisor.called("export")) == exports_after_first


class TestCapacity:
    @pytest.mark.asyncio
    async def test_insufficient_space_aborts_before_anything_is_created(
        self, fast_config: Configuration, sample_vms: list[VMRef], make_hypervisor: type[FakeHypervisor]
    ) -> None:
        # 70 GiB selected, 75 GiB free, 10 GiB margin
        hypervisor = make_hypervisor(vms=sample_vms, volumes=[TargetVolume(drive_letter="D", free_bytes=75 * GiB)])

        with pytest.raises(InsufficientCapacityError):
            await _orchestrator(fast_config, hypervisor).run()

        assert hypervisor.calls == []


class TestExportGate:
    @pytest.mark.asyncio
    async def test_one_export_failure_prevents_every_import(
        self, fast_config: Configuration, fake_hypervisor: FakeHypervisor, connection: MagicMock
    ) -> None:
        fake_hypervisor.export_failures = {"db01": "The network path was not found"}

        with pytest.raises(ExportPhaseError) as exc_info:
            await _orchestrator(fast_config, fake_hypervisor).run()

        assert [e.vm_name for e in exc_info.value.errors] == ["db01"]
        assert exc_info.value.errors[0].message == "The network path was not found"
        assert fake_hypervisor.called("import") == []
        connection.disconnect.assert_awaited_once()


class TestImportIsolation:
    @pytest.mark.asyncio
    async def test_failed_import_does_not_affect_others(
        self, fast_config: Configuration, fake_hypervisor: FakeHypervisor
    ) -> None:
        fake_hypervisor.import_failures = {"web01": "Incompatible configuration version"}
        fake_hypervisor.delays = {"db01": 0.02}

        run = await _orchestrator(fast_config, fake_hypervisor).run()

        assert run.status == RunStatus.COMPLETED_WITH_ERRORS
        assert run.report is not None
        outcomes = {o.vm_name: o for o in run.report.outcomes}
        assert outcomes["web01"].outcome == Outcome.FAILED
        assert outcomes["web01"].error is not None
        assert outcomes["web01"].error.message == "Incompatible configuration version"
        assert outcomes["db01"].outcome == Outcome.SUCCEEDED
        assert outcomes["build"].outcome == Outcome.SUCCEEDED


class TestEarlyExits:
    @pytest.mark.asyncio
    async def test_no_vms_selected(self, fast_config: Configuration, fake_hypervisor: FakeHypervisor) -> None:
        selector = MagicMock()
        selector.choose_vms.return_value = []

        run = await _orchestrator(fast_config, fake_hypervisor, selector=selector).run()

        assert run.status == RunStatus.NO_SELECTION
        selector.choose_volume.assert_not_called()
        assert fake_hypervisor.calls == []

    @pytest.mark.asyncio
    async def test_no_volume_selected(self, fast_config: Configuration, fake_hypervisor: FakeHypervisor) -> None:
        selector = MagicMock()
        selector.choose_vms.return_value = fake_hypervisor.vms
        selector.choose_volume.return_value = None

        run = await _orchestrator(fast_config, fake_hypervisor, selector=selector).run()

        assert run.status == RunStatus.NO_VOLUME_SELECTED
        assert fake_hypervisor.calls == []

    @pytest.mark.asyncio
    async def test_no_running_vms_skips_shutdown_gate(
        self, fast_config: Configuration, make_hypervisor: type[FakeHypervisor], sample_volume: TargetVolume
    ) -> None:
        hypervisor = make_hypervisor(vms=[VMRef(name="db01", state=PowerState.OFF)], volumes=[sample_volume])
        decide = MagicMock(return_value=Decision.ABORT)

        run = await _orchestrator(
            fast_config, hypervisor, ScriptedSelector(vm_names=["db01"], drive_letter="D"), decide
        ).run()

        assert run.status == RunStatus.COMPLETED
        decide.assert_not_called()


class TestFailures:
    @pytest.mark.asyncio
    async def test_unreachable_target(
        self,
        fast_config: Configuration,
        fake_hypervisor: FakeHypervisor,
        reachability: AsyncMock,
        connection: MagicMock,
    ) -> None:
        reachability.side_effect = UnreachableHostError("hv02", [445])

        with pytest.raises(UnreachableHostError):
            await _orchestrator(fast_config, fake_hypervisor).run()

        connection.connect.assert_not_called()
        assert fake_hypervisor.calls == []

    @pytest.mark.asyncio
    async def test_session_failure(
        self, fast_config: Configuration, fake_hypervisor: FakeHypervisor, connection: MagicMock
    ) -> None:
        connection.connect.side_effect = SessionEstablishmentError("hv02", "Permission denied")

        with pytest.raises(SessionEstablishmentError):
            await _orchestrator(fast_config, fake_hypervisor).run()

        assert fake_hypervisor.calls == []

    @pytest.mark.asyncio
    async def test_abort_at_shutdown_gate(self, fast_config: Configuration, fake_hypervisor: FakeHypervisor) -> None:
        decide = MagicMock(return_value=Decision.ABORT)

        with pytest.raises(RunAbortedError):
            await _orchestrator(fast_config, fake_hypervisor, decide=decide).run()

        assert fake_hypervisor.called("export") == []

    @pytest.mark.asyncio
    async def test_stop_failure_abort(self, fast_config: Configuration, fake_hypervisor: FakeHypervisor) -> None:
        fake_hypervisor.stop_failures = {"web01": "The guest did not respond"}

        with pytest.raises(RunAbortedError):
            await _orchestrator(fast_config, fake_hypervisor).run()

        assert fake_hypervisor.called("export") == []

    @pytest.mark.asyncio
    async def test_interrupt_cancels_and_cleans_up(
        self, fast_config: Configuration, fake_hypervisor: FakeHypervisor, connection: MagicMock
    ) -> None:
        fake_hypervisor.delays = {"db01": 30}
        task = asyncio.create_task(_orchestrator(fast_config, fake_hypervisor).run())
        for _ in range(200):
            if "db01" in fake_hypervisor.called("export"):
                break
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert fake_hypervisor.called("import") == []
        connection.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_interrupt_while_prompt_is_open(
        self, fast_config: Configuration, fake_hypervisor: FakeHypervisor, connection: MagicMock
    ) -> None:
        prompt_open = threading.Event()
        release = threading.Event()
        prompt_threads: list[threading.Thread] = []

        def blocked_choice(vms: list[VMRef]) -> list[VMRef]:
            prompt_threads.append(threading.current_thread())
            prompt_open.set()
            release.wait(5)
            return vms

        selector = MagicMock()
        selector.choose_vms.side_effect = blocked_choice
        orchestrator = _orchestrator(fast_config, fake_hypervisor, selector=selector)
        task = asyncio.create_task(orchestrator.run())
        for _ in range(200):
            if prompt_open.is_set():
                break
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(task, timeout=2)

        connection.disconnect.assert_awaited_once()
        assert [t.daemon for t in prompt_threads] == [True]
        assert orchestrator._ui is not None
        assert orchestrator._ui._live is None

        # A late answer neither restarts the display nor continues the run
        release.set()
        prompt_threads[0].join(1)
        await asyncio.sleep(0.05)
        assert orchestrator._ui._live is None
        selector.choose_volume.assert_not_called()


class TestLoggingLifecycle:
    @pytest.mark.asyncio
    async def test_queue_handlers_removed_after_run(
        self, fast_config: Configuration, fake_hypervisor: FakeHypervisor
    ) -> None:
        await _orchestrator(fast_config, fake_hypervisor).run()

        for name in ("vmmigrator", None):
            assert not [h for h in logging.getLogger(name).handlers if isinstance(h, QueueHandler)]
        assert logging.getLogger("vmmigrator").propagate is True

    @pytest.mark.asyncio
    async def test_queue_handlers_removed_after_failure(
        self, fast_config: Configuration, fake_hypervisor: FakeHypervisor, reachability: AsyncMock
    ) -> None:
        reachability.side_effect = UnreachableHostError("hv02", [22])
        with pytest.raises(UnreachableHostError):
            await _orchestrator(fast_config, fake_hypervisor).run()

        assert not [h for h in logging.getLogger("vmmigrator").handlers if isinstance(h, QueueHandler)]
