"""Capacity and naming-conflict checks on the destination."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from vmmigrator.models import Host, InsufficientCapacityError, TargetPath, TargetVolume, VMRef

__all__ = [
    "check_capacity",
    "filter_conflicts",
    "format_bytes",
]

logger = logging.getLogger(__name__)


def format_bytes(bytes_value: int) -> str:
    """Format bytes in human-readable form, e.g. "45.2GiB"."""
    value = float(bytes_value)
    for unit in ["B", "KiB", "MiB", "GiB", "TiB"]:
        if abs(value) < 1024:
            return f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}PiB"


def check_capacity(vms: Sequence[VMRef], volume: TargetVolume, safety_margin: int) -> int:
    """Verify the selected VMs fit on the destination volume.

    Capacity is checked once for the whole run. The check fails when the
    total is greater than or equal to the free space minus the margin, so the
    destination never ends up below `safety_margin` free bytes.

    Returns:
        Total bytes to be exported

    Raises:
        InsufficientCapacityError: If the VMs do not fit
    """
    total = sum(vm.size_bytes for vm in vms)
    available = volume.free_bytes - safety_margin

    if total >= available:
        logger.critical(
            "Need %s but only %s free on %s: (%s reserved)",
            format_bytes(total),
            format_bytes(volume.free_bytes),
            volume.drive_letter,
            format_bytes(safety_margin),
            extra={"job": "capacity", "host": Host.TARGET},
        )
        raise InsufficientCapacityError(total, volume.free_bytes, safety_margin)

    logger.info(
        "Capacity check passed: %s to export, %s free on %s:",
        format_bytes(total),
        format_bytes(volume.free_bytes),
        volume.drive_letter,
        extra={"job": "capacity", "host": Host.TARGET},
    )
    return total


async def filter_conflicts(
    vms: Sequence[VMRef],
    target: TargetPath,
    exists: Callable[[str], Awaitable[bool]],
) -> tuple[list[VMRef], list[VMRef]]:
    """Drop VMs whose destination folder already exists.

    Existing folders are never overwritten or merged into; the VM is
    excluded with a warning and the rest of the run continues.

    Args:
        vms: Selected VMs
        target: Destination root
        exists: Existence check for a path on the target host

    Returns:
        (survivors, conflicts), both in selection order
    """
    checks = await asyncio.gather(*(exists(target.local_path(vm.name)) for vm in vms))

    survivors: list[VMRef] = []
    conflicts: list[VMRef] = []
    for vm, found in zip(vms, checks, strict=True):
        if found:
            logger.warning(
                "Skipping %s: %s already exists",
                vm.name,
                target.local_path(vm.name),
                extra={"job": "conflicts", "host": Host.TARGET},
            )
            conflicts.append(vm)
        else:
            survivors.append(vm)
    return survivors, conflicts
