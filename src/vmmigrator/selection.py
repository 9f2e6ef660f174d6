"""Choosing which VMs to migrate and where to put them."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from vmmigrator.models import SelectionError, TargetVolume, VMRef
from vmmigrator.validation import format_bytes

__all__ = [
    "InteractiveSelector",
    "ScriptedSelector",
    "Selector",
    "parse_selection",
]


class Selector(Protocol):
    """Picks source VMs and the destination volume.

    Returning an empty list or None means the operator chose nothing, which
    ends the run cleanly.
    """

    def choose_vms(self, vms: Sequence[VMRef]) -> list[VMRef]: ...

    def choose_volume(self, volumes: Sequence[TargetVolume]) -> TargetVolume | None: ...


def parse_selection(text: str, count: int) -> list[int]:
    """Parse a selection like "1,3-5" or "all" into zero-based indices.

    Args:
        text: Operator input; numbers are 1-based
        count: Number of listed items

    Returns:
        Sorted unique indices; empty for blank input

    Raises:
        ValueError: If a token is not a number or range within 1..count
    """
    text = text.strip().lower()
    if not text:
        return []
    if text in ("all", "*"):
        return list(range(count))

    indices: set[int] = set()
    for token in text.replace(" ", "").split(","):
        if not token:
            continue
        start_text, sep, end_text = token.partition("-")
        if not start_text.isdigit() or (sep and not end_text.isdigit()):
            raise ValueError(f"Not a number or range: {token!r}")
        start = int(start_text)
        end = int(end_text) if sep else start
        if start > end or start < 1 or end > count:
            raise ValueError(f"Out of range 1-{count}: {token!r}")
        indices.update(range(start - 1, end))
    return sorted(indices)


class InteractiveSelector:
    """Selection through terminal prompts."""

    def __init__(self, console: Console) -> None:
        self._console = console

    def choose_vms(self, vms: Sequence[VMRef]) -> list[VMRef]:
        if not vms:
            self._console.print("[yellow]No virtual machines found on this host[/yellow]")
            return []

        table = Table(title="Virtual machines")
        table.add_column("#", justify="right")
        table.add_column("Name")
        table.add_column("State")
        table.add_column("Disks", justify="right")
        table.add_column("Size", justify="right")
        for number, vm in enumerate(vms, start=1):
            table.add_row(str(number), vm.name, vm.state.value, str(len(vm.disk_paths)), format_bytes(vm.size_bytes))
        self._console.print(table)

        while True:
            answer = Prompt.ask(
                "Select VMs to migrate (e.g. [cyan]1,3-4[/cyan] or [cyan]all[/cyan], empty to cancel)",
                console=self._console,
                default="",
                show_default=False,
            )
            try:
                return [vms[i] for i in parse_selection(answer, len(vms))]
            except ValueError as e:
                self._console.print(f"[red]{e}[/red]")

    def choose_volume(self, volumes: Sequence[TargetVolume]) -> TargetVolume | None:
        if not volumes:
            self._console.print("[yellow]No volumes with a drive letter on the target[/yellow]")
            return None

        table = Table(title="Destination volumes")
        table.add_column("#", justify="right")
        table.add_column("Drive")
        table.add_column("Label")
        table.add_column("Free", justify="right")
        for number, volume in enumerate(volumes, start=1):
            table.add_row(str(number), f"{volume.drive_letter}:", volume.label or "", format_bytes(volume.free_bytes))
        self._console.print(table)

        while True:
            answer = Prompt.ask(
                "Select destination volume (number, empty to cancel)",
                console=self._console,
                default="",
                show_default=False,
            )
            try:
                indices = parse_selection(answer, len(volumes))
            except ValueError as e:
                self._console.print(f"[red]{e}[/red]")
                continue
            if len(indices) > 1:
                self._console.print("[red]Select a single volume[/red]")
                continue
            return volumes[indices[0]] if indices else None


class ScriptedSelector:
    """Selection from command-line options.

    Anything not given on the command line is delegated to `fallback`.
    """

    def __init__(
        self,
        vm_names: Sequence[str] | None = None,
        drive_letter: str | None = None,
        fallback: Selector | None = None,
    ) -> None:
        self._vm_names = list(vm_names) if vm_names else None
        self._drive_letter = drive_letter.strip().rstrip(":").upper() if drive_letter else None
        self._fallback = fallback

    def choose_vms(self, vms: Sequence[VMRef]) -> list[VMRef]:
        if self._vm_names is None:
            if self._fallback is None:
                raise SelectionError("No VMs given")
            return self._fallback.choose_vms(vms)

        by_name = {vm.name.casefold(): vm for vm in vms}
        unknown = [name for name in self._vm_names if name.casefold() not in by_name]
        if unknown:
            raise SelectionError(f"Unknown VM(s): {', '.join(unknown)}")

        chosen: list[VMRef] = []
        for name in self._vm_names:
            vm = by_name[name.casefold()]
            if vm not in chosen:
                chosen.append(vm)
        return chosen

    def choose_volume(self, volumes: Sequence[TargetVolume]) -> TargetVolume | None:
        if self._drive_letter is None:
            if self._fallback is None:
                raise SelectionError("No destination volume given")
            return self._fallback.choose_volume(volumes)

        for volume in volumes:
            if volume.drive_letter == self._drive_letter:
                return volume
        raise SelectionError(f"Volume {self._drive_letter}: not found on target")
