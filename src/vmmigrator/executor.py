"""Shell command runners for the source host and the target host.

PowerShell scripts reach the source host through a local subprocess and
the target host through the SSH session. Both runners return a
CommandResult and leave the interpretation of exit codes to the caller.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Protocol

from vmmigrator.models import CommandResult

if TYPE_CHECKING:
    import asyncssh

    from vmmigrator.connection import Connection

__all__ = [
    "Executor",
    "LocalExecutor",
    "RemoteExecutor",
]


def _text(output: bytes | str | None) -> str:
    if not output:
        return ""
    if isinstance(output, bytes):
        return output.decode(errors="replace")
    return str(output)


class Executor(Protocol):
    """Anything that can run a command line and report its outcome."""

    async def run_command(self, cmd: str, timeout: float | None = None) -> CommandResult: ...

    async def terminate_all_processes(self) -> None: ...


class LocalExecutor:
    """Runs commands on the source host as asyncio subprocesses.

    Exports can run for hours, so every child is remembered until it exits;
    an interrupted run kills whatever is still going.
    """

    def __init__(self) -> None:
        self._processes: list[asyncio.subprocess.Process] = []

    async def run_command(self, cmd: str, timeout: float | None = None) -> CommandResult:
        """Run `cmd` through the shell and collect its output.

        Raises:
            TimeoutError: If `timeout` seconds pass first; the child is killed
        """
        proc = await asyncio.create_subprocess_shell(
            cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._processes.append(proc)
        try:
            async with asyncio.timeout(timeout):
                stdout, stderr = await proc.communicate()
        except BaseException:
            if proc.returncode is None:
                proc.terminate()
                await proc.wait()
            raise
        finally:
            # terminate_all_processes() may already have dropped it
            if proc in self._processes:
                self._processes.remove(proc)

        return CommandResult(exit_code=proc.returncode or 0, stdout=_text(stdout), stderr=_text(stderr))

    async def terminate_all_processes(self) -> None:
        running = [proc for proc in self._processes if proc.returncode is None]
        for proc in running:
            proc.terminate()
        await asyncio.gather(*(proc.wait() for proc in running), return_exceptions=True)
        self._processes.clear()


class RemoteExecutor:
    """Runs commands on the target host over the SSH session."""

    def __init__(self, conn: Connection | asyncssh.SSHClientConnection) -> None:
        self._conn = conn

    async def run_command(self, cmd: str, timeout: float | None = None) -> CommandResult:
        async with asyncio.timeout(timeout):
            result = await self._conn.run(cmd)
        return CommandResult(
            exit_code=result.exit_status or 0,
            stdout=_text(result.stdout),
            stderr=_text(result.stderr),
        )

    async def terminate_all_processes(self) -> None:
        """Remote channels are closed together with the session."""
