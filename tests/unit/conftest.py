"""Shared unit test fixtures for vm-migrator tests.

Provides:
- JobContext fixtures backed by the fake hypervisor
- Time-freezing fixtures for deterministic timestamp tests
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

import pytest
from freezegun import freeze_time

from vmmigrator.jobs import JobContext
from vmmigrator.models import TargetPath

if TYPE_CHECKING:
    from conftest import FakeHypervisor


@pytest.fixture
def target_path() -> TargetPath:
    return TargetPath(host="hv02", drive_letter="D")


@pytest.fixture
def job_context(fake_hypervisor: FakeHypervisor, target_path: TargetPath) -> JobContext:
    """JobContext whose hypervisor is the shared FakeHypervisor."""
    return JobContext(
        hypervisor=fake_hypervisor,
        target=target_path,
        run_id="abcd1234",
        source_hostname="hv01",
        target_hostname="hv02",
    )


@pytest.fixture
def frozen_time():
    """Returns a context manager that freezes time to 2025-01-15T10:30:00Z."""
    return freeze_time("2025-01-15T10:30:00Z")


@pytest.fixture
def frozen_datetime() -> datetime:
    """The datetime value used by the frozen_time fixture."""
    return datetime.fromisoformat("2025-01-15T10:30:00+00:00")
