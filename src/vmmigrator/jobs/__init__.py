"""Per-VM jobs launched concurrently by the task pipeline."""

from __future__ import annotations

from .base import VMJob
from .context import JobContext
from .export import ExportJob
from .import_vm import ImportJob
from .stop import StopJob

__all__ = [
    "ExportJob",
    "ImportJob",
    "JobContext",
    "StopJob",
    "VMJob",
]
