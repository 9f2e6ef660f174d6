"""Unit tests for the event bus and the terminal UI."""

from __future__ import annotations

import asyncio
import threading
from io import StringIO

import pytest
from rich.console import Console

from vmmigrator.events import ConnectionEvent, EventBus, ProgressEvent
from vmmigrator.models import ProgressUpdate
from vmmigrator.ui import TerminalUI, run_blocking


@pytest.fixture
def output() -> StringIO:
    return StringIO()


@pytest.fixture
def ui(output: StringIO) -> TerminalUI:
    return TerminalUI(console=Console(file=output, width=120), target_hostname="hv02")


class TestEventBus:
    @pytest.mark.asyncio
    async def test_fan_out_and_close(self) -> None:
        bus = EventBus()
        first, second = bus.subscribe(), bus.subscribe()
        event = ConnectionEvent(status="connected", latency=1.0)

        bus.publish(event)
        bus.close()
        bus.publish(ConnectionEvent(status="disconnected", latency=None))

        for queue in (first, second):
            assert queue.get_nowait() is event
            assert queue.get_nowait() is None
            assert queue.empty()


class TestTerminalUI:
    def test_phase_progress_is_rendered(self, ui: TerminalUI, output: StringIO) -> None:
        ui.start()
        try:
            ui.update_phase_progress("export", ProgressUpdate(percent=50, current=1, total=2, item="web01"))
            ui.update_phase_progress("export", ProgressUpdate(percent=100, current=2, total=2, item="db01"))
        finally:
            ui.stop()

        text = output.getvalue()
        assert "export" in text
        assert "2/2" in text

    def test_connection_status(self, ui: TerminalUI, output: StringIO) -> None:
        ui.start()
        ui.set_connection_status("connected", 12.5)
        ui.stop()
        assert "connected to hv02" in output.getvalue()
        assert "12.5ms" in output.getvalue()

    def test_paused_restarts_live_display(self, ui: TerminalUI) -> None:
        ui.start()
        with ui.paused():
            assert ui._live is None
        assert ui._live is not None
        ui.stop()

    def test_paused_when_not_started(self, ui: TerminalUI) -> None:
        with ui.paused():
            pass
        assert ui._live is None

    @pytest.mark.asyncio
    async def test_consume_events_until_sentinel(self, ui: TerminalUI) -> None:
        bus = EventBus()
        consumer = asyncio.create_task(ui.consume_events(bus.subscribe()))

        bus.publish(ConnectionEvent(status="connected", latency=3.0))
        bus.publish(ProgressEvent(job="import", update=ProgressUpdate(percent=100, current=1, total=1)))
        bus.close()
        await asyncio.wait_for(consumer, timeout=1)

        assert ui._connection_status == "connected"
        assert "import" in ui._phase_tasks


class TestRunBlocking:
    @pytest.mark.asyncio
    async def test_returns_result_from_daemon_thread(self) -> None:
        def answer(value: int) -> tuple[int, bool]:
            return value * 2, threading.current_thread().daemon

        assert await run_blocking(answer, 21) == (42, True)

    @pytest.mark.asyncio
    async def test_propagates_exception(self) -> None:
        def fail() -> None:
            raise EOFError("stdin closed")

        with pytest.raises(EOFError, match="stdin closed"):
            await run_blocking(fail)

    @pytest.mark.asyncio
    async def test_cancel_does_not_wait_for_answer(self) -> None:
        release = threading.Event()
        answered = threading.Event()

        def wait_for_operator() -> str:
            release.wait(5)
            answered.set()
            return "late"

        task = asyncio.create_task(run_blocking(wait_for_operator))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(task, timeout=1)

        assert not answered.is_set()
        release.set()
        assert answered.wait(1)
        await asyncio.sleep(0.05)  # the late answer is dropped without error


class TestPrompt:
    @pytest.mark.asyncio
    async def test_live_display_paused_on_loop_thread(self, ui: TerminalUI) -> None:
        ui.start()
        seen: list[bool] = []

        def ask() -> str:
            seen.append(ui._live is None)
            return "yes"

        try:
            assert await ui.prompt(ask) == "yes"
            assert seen == [True]
            assert ui._live is not None
        finally:
            ui.stop()

    @pytest.mark.asyncio
    async def test_cancelled_prompt_leaves_display_stoppable(self, ui: TerminalUI) -> None:
        ui.start()
        release = threading.Event()
        task = asyncio.create_task(ui.prompt(release.wait, 5))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        ui.stop()

        release.set()
        await asyncio.sleep(0.05)
        assert ui._live is None
