"""Operator decisions at gate points of a run.

A decision function maps a `GateContext` to a `Decision`. The orchestrator
calls it at two gates; what each answer means is decided there:

- SHUTDOWN_RUNNING_VMS: PROCEED stops all running VMs, SKIP migrates them
  while running, ABORT ends the run.
- STOP_FAILURES: PROCEED continues, RETRY re-issues the failed stops,
  ABORT ends the run.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeAlias

from rich.console import Console
from rich.prompt import Confirm, Prompt

from vmmigrator.models import Decision, Gate, GateContext

__all__ = [
    "DecisionFunction",
    "InteractiveDecider",
    "ScriptedDecider",
]

DecisionFunction: TypeAlias = Callable[[GateContext], Decision]


class InteractiveDecider:
    """Asks the operator in the terminal."""

    def __init__(self, console: Console) -> None:
        self._console = console

    def __call__(self, context: GateContext) -> Decision:
        names = ", ".join(context.vm_names)
        if context.gate == Gate.SHUTDOWN_RUNNING_VMS:
            self._console.print(f"[yellow]Running VMs:[/yellow] {names}")
            shut_down = Confirm.ask("Shut down these VMs before exporting?", console=self._console, default=True)
            return Decision.PROCEED if shut_down else Decision.SKIP

        for error in context.errors:
            self._console.print(f"[red]{error.vm_name}:[/red] {error.message}")
        answer = Prompt.ask(
            f"Could not stop {names}. Continue anyway, retry, or abort?",
            console=self._console,
            choices=["proceed", "retry", "abort"],
            default="abort",
        )
        return Decision(answer)


class ScriptedDecider:
    """Fixed answers from command-line options.

    Gates without a preset answer are delegated to `fallback`; without a
    fallback they abort.
    """

    def __init__(
        self,
        shutdown: bool | None = None,
        on_stop_failure: Decision | None = None,
        fallback: DecisionFunction | None = None,
    ) -> None:
        self._shutdown = shutdown
        self._on_stop_failure = on_stop_failure
        self._fallback = fallback

    def __call__(self, context: GateContext) -> Decision:
        if context.gate == Gate.SHUTDOWN_RUNNING_VMS and self._shutdown is not None:
            return Decision.PROCEED if self._shutdown else Decision.SKIP
        if context.gate == Gate.STOP_FAILURES and self._on_stop_failure is not None:
            return self._on_stop_failure
        if self._fallback is not None:
            return self._fallback(context)
        return Decision.ABORT
