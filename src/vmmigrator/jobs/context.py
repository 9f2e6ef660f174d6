"""Job execution context."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from vmmigrator.hyperv import Hypervisor
    from vmmigrator.models import TargetPath


@dataclass(frozen=True)
class JobContext:
    """Context shared by every per-VM job of a run."""

    hypervisor: Hypervisor
    target: TargetPath
    run_id: str
    source_hostname: str
    target_hostname: str
