"""CLI entry point for vm-migrator using Typer."""

from __future__ import annotations

import asyncio
import json
import sys
from enum import StrEnum
from importlib.resources import files
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.text import Text

from vmmigrator import __version__
from vmmigrator.config import Configuration, ConfigurationError
from vmmigrator.decisions import InteractiveDecider, ScriptedDecider
from vmmigrator.logger import get_latest_log_file, get_logs_directory
from vmmigrator.models import (
    Decision,
    ExportPhaseError,
    MigrationRun,
    RunAbortedError,
    RunStatus,
)
from vmmigrator.orchestrator import Orchestrator
from vmmigrator.report import render_table, write_report
from vmmigrator.selection import InteractiveSelector, ScriptedSelector

# Exit codes
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ABORTED = 2
EXIT_IMPORT_FAILURES = 3
EXIT_INTERRUPTED = 130

app = typer.Typer(
    name="vm-migrator",
    help="Move Hyper-V virtual machines from this host to another Hyper-V host",
    no_args_is_help=True,
)

console = Console()


class StopFailureAction(StrEnum):
    """Preset answer when some running VMs could not be stopped."""

    PROCEED = "proceed"
    ABORT = "abort"


def _version_callback(value: bool) -> None:
    """Print version and exit if --version flag is provided."""
    if value:
        console.print(f"vm-migrator {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version_flag: Annotated[
        bool,
        typer.Option("--version", "-v", callback=_version_callback, is_eager=True, help="Show version and exit"),
    ] = False,
) -> None:
    """Hyper-V VM migration tool."""


def _load_config(path: Path | None) -> Configuration:
    """Load the given config file, or the default one if it exists."""
    try:
        if path is not None:
            return Configuration.from_yaml(path)
        return Configuration.load_or_default(Configuration.get_default_config_path())
    except ConfigurationError as e:
        console.print("[bold red]Configuration error:[/bold red]")
        for error in e.errors:
            console.print(f"  {error.path}: {error.message}")
        sys.exit(EXIT_FAILED)


def _exit_code_for(run: MigrationRun) -> int:
    if run.status == RunStatus.COMPLETED_WITH_ERRORS:
        return EXIT_IMPORT_FAILURES
    return EXIT_OK


def _display_log_file(log_file: Path) -> None:
    """Display log file content with Rich formatting."""
    level_colors = {
        "DEBUG": "dim",
        "FULL": "cyan",
        "INFO": "green",
        "WARNING": "yellow",
        "ERROR": "red",
        "CRITICAL": "bold red",
    }

    console.print(f"\n[bold]Log file:[/bold] {log_file}\n")

    try:
        with log_file.open("r", encoding="utf-8") as f:
            for line_num, raw_line in enumerate(f, start=1):
                line = raw_line.strip()
                if not line:
                    continue

                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    console.print(f"[dim]Line {line_num}:[/dim] {line}")
                    continue

                timestamp = entry.get("timestamp", "")
                level = entry.get("level", "INFO")
                time_part = timestamp.split("T")[1].split(".")[0].split("+")[0] if "T" in timestamp else timestamp

                text = Text()
                text.append(f"{time_part} ", style="dim")
                text.append(f"{level:8}", style=level_colors.get(level, "white"))
                if entry.get("job"):
                    text.append(f" [{entry['job']}]", style="blue")
                if entry.get("host"):
                    text.append(f" ({entry.get('hostname', entry['host'])})", style="magenta")
                text.append(f" {entry.get('event', '')}")

                context_fields = {
                    k: v
                    for k, v in entry.items()
                    if k not in {"timestamp", "level", "job", "host", "hostname", "event"}
                }
                if context_fields:
                    text.append(" " + " ".join(f"{k}={v}" for k, v in context_fields.items()), style="dim")

                console.print(text)

    except OSError as e:
        console.print(f"[bold red]Error reading log file:[/bold red] {e}")
        sys.exit(EXIT_FAILED)


@app.command()
def migrate(
    target: Annotated[str, typer.Argument(help="Target Hyper-V host (hostname or SSH alias)")],
    vm: Annotated[
        list[str] | None,
        typer.Option("--vm", help="VM to migrate (repeatable; default: choose interactively)"),
    ] = None,
    volume: Annotated[
        str | None,
        typer.Option("--volume", help="Destination drive letter, e.g. D (default: choose interactively)"),
    ] = None,
    shutdown: Annotated[
        bool | None,
        typer.Option(
            "--shutdown/--no-shutdown",
            help="Shut down running VMs before export, or export them while running (default: ask)",
            show_default=False,
        ),
    ] = None,
    on_stop_failure: Annotated[
        StopFailureAction | None,
        typer.Option("--on-stop-failure", help="What to do if a VM cannot be stopped (default: ask)"),
    ] = None,
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Path to config file (default: ~/.config/vm-migrator/config.yaml)",
        ),
    ] = None,
    report: Annotated[
        Path | None,
        typer.Option("--report", help="Write the per-VM results as JSON to this file"),
    ] = None,
) -> None:
    """Migrate VMs from this host to TARGET.

    Exit codes: 0 success or nothing to do, 1 failure, 2 aborted by the
    operator, 3 some imports failed, 130 interrupted.
    """
    cfg = _load_config(config)

    selector = ScriptedSelector(vm_names=vm, drive_letter=volume, fallback=InteractiveSelector(console))
    decide = ScriptedDecider(
        shutdown=shutdown,
        on_stop_failure=Decision(on_stop_failure.value) if on_stop_failure else None,
        fallback=InteractiveDecider(console),
    )
    orchestrator = Orchestrator(target=target, config=cfg, selector=selector, decide=decide, console=console)

    sys.exit(_run_migration(orchestrator, report))


def _run_migration(orchestrator: Orchestrator, report_path: Path | None) -> int:
    """Run the migration and map its outcome to an exit code.

    Ctrl+C cancels the running task; the orchestrator cleans up before the
    interrupt reaches this point.
    """
    try:
        run = asyncio.run(orchestrator.run())
    except KeyboardInterrupt:
        console.print("[yellow]Migration interrupted by user[/yellow]")
        return EXIT_INTERRUPTED
    except RunAbortedError as e:
        console.print(f"\n[yellow]Aborted:[/yellow] {e}")
        return EXIT_ABORTED
    except ExportPhaseError as e:
        console.print(f"\n[bold red]Export failed, nothing was imported:[/bold red] {e}")
        for error in e.errors:
            console.print(f"  [red]{error.vm_name}[/red]: {error.message}")
        return EXIT_FAILED
    except Exception as e:
        console.print(f"\n[bold red]Migration failed:[/bold red] {e}")
        return EXIT_FAILED

    if run.report is not None:
        console.print(render_table(run.report))
        if report_path is not None:
            write_report(run.report, report_path)
            console.print(f"Report written to {report_path}")
    elif run.status != RunStatus.COMPLETED:
        console.print(f"[yellow]Nothing migrated ({run.status.value})[/yellow]")

    if run.skipped:
        console.print(f"[yellow]Skipped (already on target):[/yellow] {', '.join(run.skipped)}")
    if run.log_file:
        console.print(f"[dim]Log file: {run.log_file}[/dim]")
    return _exit_code_for(run)


@app.command()
def logs(
    last: Annotated[
        bool,
        typer.Option("--last", "-l", help="Display the most recent log file"),
    ] = False,
) -> None:
    """View log files.

    By default, shows the logs directory. Use --last to display the most recent log file.
    """
    if last:
        log_file = get_latest_log_file()
        if log_file is None:
            console.print("[yellow]No log files found[/yellow]")
            console.print(f"Logs directory: {get_logs_directory()}")
            sys.exit(EXIT_FAILED)
        _display_log_file(log_file)
        return

    logs_dir = get_logs_directory()
    console.print(f"Logs directory: {logs_dir}")

    if not logs_dir.exists():
        console.print("\n[yellow]Logs directory does not exist yet[/yellow]")
        return

    log_files = sorted(logs_dir.glob("migrate-*.log"), reverse=True)
    if not log_files:
        console.print("\n[yellow]No log files found[/yellow]")
        return

    console.print(f"\nFound {len(log_files)} log file(s):")
    for log_file in log_files[:10]:
        console.print(f"  {log_file.name}")
    if len(log_files) > 10:
        console.print(f"  ... and {len(log_files) - 10} more")


@app.command()
def init(
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Overwrite existing configuration file"),
    ] = False,
) -> None:
    """Initialize default configuration file.

    Creates ~/.config/vm-migrator/config.yaml with default settings.
    Use --force to overwrite an existing configuration.
    """
    config_path = Configuration.get_default_config_path()

    if config_path.exists() and not force:
        console.print(f"[yellow]Configuration file already exists:[/yellow] {config_path}")
        console.print("Use --force to overwrite")
        raise typer.Exit(1)

    config_path.parent.mkdir(parents=True, exist_ok=True)
    default_config = files("vmmigrator").joinpath("default-config.yaml").read_text()
    config_path.write_text(default_config)

    console.print(f"[green]Created configuration file:[/green] {config_path}")
    console.print("\n[dim]Review capacity.safety_margin and the connection settings before the first run.[/dim]")


if __name__ == "__main__":
    app()
