"""Final per-VM report of a migration run."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path

from rich.table import Table

from vmmigrator.models import MigrationTask, Outcome, RunReport, TaskPhase, VMOutcome

__all__ = [
    "ResultReporter",
    "build_report",
    "render_table",
    "write_report",
]

logger = logging.getLogger(__name__)


def build_report(tasks: Mapping[str, MigrationTask]) -> RunReport:
    """Build the report from tasks that reached the import phase.

    Tasks that never got past export are not part of the report.
    """
    outcomes: list[VMOutcome] = []
    for name, task in tasks.items():
        if task.phase == TaskPhase.IMPORTED:
            outcomes.append(VMOutcome(vm_name=name, outcome=Outcome.SUCCEEDED))
        elif task.phase == TaskPhase.FAILED and task.error is not None and task.error.operation == "import":
            outcomes.append(VMOutcome(vm_name=name, outcome=Outcome.FAILED, error=task.error))

    errors = tuple(o.error for o in outcomes if o.error is not None)
    return RunReport(outcomes=tuple(outcomes), errors=errors)


class ResultReporter:
    """Writes the report to the log.

    Failure details come first, the summary of every VM after, so the
    operator reads why something failed before reading what failed.
    """

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def emit(self, report: RunReport) -> None:
        for error in report.errors:
            self._log.error(
                "Import of %s failed: %s",
                error.vm_name,
                error.message,
                extra={"job": "report", "detail": error.detail},
            )

        for outcome in report.outcomes:
            level = logging.INFO if outcome.outcome == Outcome.SUCCEEDED else logging.ERROR
            self._log.log(
                level,
                "%s: %s",
                outcome.vm_name,
                outcome.outcome.value,
                extra={"job": "report"},
            )

        self._log.info(
            "Migration finished: %d succeeded, %d failed",
            len(report.succeeded),
            len(report.failed),
            extra={"job": "report"},
        )


def render_table(report: RunReport) -> Table:
    """Render the report as a Rich table."""
    table = Table(title="Migration results")
    table.add_column("VM")
    table.add_column("Result")
    table.add_column("Error")
    for outcome in report.outcomes:
        style = "green" if outcome.outcome == Outcome.SUCCEEDED else "red"
        table.add_row(
            outcome.vm_name,
            f"[{style}]{outcome.outcome.value}[/{style}]",
            outcome.error.message if outcome.error else "",
        )
    return table


def write_report(report: RunReport, path: Path) -> None:
    """Write the report as JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(report.as_dict(), indent=2) + "\n", encoding="utf-8")
