"""Helpers for running PowerShell scripts through an Executor."""

from __future__ import annotations

import base64
import json
from typing import Any

from vmmigrator.executor import Executor
from vmmigrator.models import CommandResult

__all__ = [
    "build_command",
    "parse_json_list",
    "quote",
    "run_script",
]

# Stop on the first error; progress records would otherwise be serialized to stderr
_PREAMBLE = "$ErrorActionPreference = 'Stop'; $ProgressPreference = 'SilentlyContinue'; "


def quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string literal."""
    return "'" + value.replace("'", "''") + "'"


def build_command(script: str) -> str:
    """Wrap a script for execution by powershell.exe.

    The script is passed base64-encoded (UTF-16LE) with -EncodedCommand, so it
    survives both cmd.exe on the source host and the SSH server's default
    shell on the target without any further quoting.
    """
    encoded = base64.b64encode((_PREAMBLE + script).encode("utf-16-le")).decode("ascii")
    return f"powershell.exe -NoProfile -NonInteractive -EncodedCommand {encoded}"


async def run_script(executor: Executor, script: str, timeout: float | None = None) -> CommandResult:
    """Run a PowerShell script and return the raw result."""
    return await executor.run_command(build_command(script), timeout=timeout)


def parse_json_list(output: str) -> list[dict[str, Any]]:
    """Parse ConvertTo-Json output into a list of objects.

    ConvertTo-Json emits a bare object for a single result and nothing at
    all for an empty pipeline; both are normalized to a list.

    Raises:
        ValueError: If output is not valid JSON
    """
    text = output.strip()
    if not text:
        return []
    data = json.loads(text)
    if data is None:
        return []
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    raise ValueError(f"Expected JSON object or array, got {type(data).__name__}")
