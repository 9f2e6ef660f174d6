"""Core types and dataclasses for vm-migrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import Any

__all__ = [
    "CommandResult",
    "ConfigError",
    "Decision",
    "ErrorRecord",
    "ExportPhaseError",
    "Gate",
    "GateContext",
    "Host",
    "InsufficientCapacityError",
    "MigrationError",
    "MigrationRun",
    "MigrationTask",
    "OperationError",
    "Outcome",
    "PowerState",
    "ProgressUpdate",
    "RunAbortedError",
    "RunReport",
    "RunStatus",
    "SelectionError",
    "SessionEstablishmentError",
    "TargetPath",
    "TargetVolume",
    "TaskPhase",
    "TaskTimeoutError",
    "UnreachableHostError",
    "VMOutcome",
    "VMRef",
]

# Fixed folder at the destination volume root that receives exported VMs
TARGET_FOLDER = "VMs"


class Host(StrEnum):
    """Logical role of a machine in the migration."""

    SOURCE = "source"
    TARGET = "target"


@dataclass(frozen=True)
class CommandResult:
    """Result of executing a command via LocalExecutor or RemoteExecutor."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class ProgressUpdate:
    """Progress information emitted while polling a task pool.

    Rendering Logic:
    - percent set → progress bar with percentage
    - current + total set → "3/5 VMs"
    - heartbeat=True → spinner/activity indicator
    """

    percent: int | None = None  # 0-100 if known
    current: int | None = None  # Terminal task count
    total: int | None = None  # Tasks in the pool
    item: str | None = None  # Most recently settled VM
    heartbeat: bool = False

    def __post_init__(self) -> None:
        if self.percent is not None and not 0 <= self.percent <= 100:
            raise ValueError(f"percent must be 0-100, got {self.percent}")


@dataclass(frozen=True)
class ConfigError:
    """Error from configuration schema or semantic validation."""

    path: str  # JSON path to invalid value
    message: str


class PowerState(StrEnum):
    """Lifecycle state of a source VM as reported by the hypervisor."""

    RUNNING = "running"
    OFF = "off"
    OTHER = "other"

    @classmethod
    def from_hyperv(cls, value: str | int | None) -> PowerState:
        """Map a Hyper-V VMState (name or numeric value) to a PowerState."""
        if isinstance(value, int):
            # Microsoft.HyperV.PowerShell.VMState: Running=2, Off=3
            return {2: cls.RUNNING, 3: cls.OFF}.get(value, cls.OTHER)
        normalized = (value or "").strip().lower()
        if normalized == "running":
            return cls.RUNNING
        if normalized == "off":
            return cls.OFF
        return cls.OTHER


@dataclass(frozen=True)
class VMRef:
    """A source VM selected for migration. Immutable for the run."""

    name: str  # Unique per host; also the job key and destination folder name
    state: PowerState
    disk_paths: tuple[str, ...] = ()
    size_bytes: int = 0  # Sum of backing disk file sizes

    @property
    def running(self) -> bool:
        return self.state == PowerState.RUNNING


@dataclass(frozen=True)
class TargetVolume:
    """Destination volume on the remote host."""

    drive_letter: str
    free_bytes: int
    size_bytes: int | None = None
    label: str | None = None

    def __post_init__(self) -> None:
        letter = self.drive_letter.strip().rstrip(":").upper()
        if len(letter) != 1 or not letter.isalpha():
            raise ValueError(f"Invalid drive letter: {self.drive_letter!r}")
        object.__setattr__(self, "drive_letter", letter)


@dataclass(frozen=True)
class TargetPath:
    """Destination location derived from the target host and volume.

    Two views of the same folder are needed: the remote host sees it as a
    local path (``D:\\VMs``), the source host reaches it over the
    administrative share (``\\\\host\\D$\\VMs``).
    """

    host: str
    drive_letter: str

    @property
    def local_root(self) -> str:
        return f"{self.drive_letter}:\\{TARGET_FOLDER}"

    @property
    def share_root(self) -> str:
        return f"\\\\{self.host}\\{self.drive_letter}$\\{TARGET_FOLDER}"

    def local_path(self, vm_name: str) -> str:
        return f"{self.local_root}\\{vm_name}"

    def share_path(self, vm_name: str) -> str:
        return f"{self.share_root}\\{vm_name}"


class TaskPhase(StrEnum):
    """Phase of a single VM's journey through the pipeline."""

    PENDING = "pending"
    EXPORTING = "exporting"
    EXPORTED = "exported"
    IMPORTING = "importing"
    IMPORTED = "imported"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskPhase.IMPORTED, TaskPhase.FAILED)


_PHASE_ORDER: tuple[TaskPhase, ...] = (
    TaskPhase.PENDING,
    TaskPhase.EXPORTING,
    TaskPhase.EXPORTED,
    TaskPhase.IMPORTING,
    TaskPhase.IMPORTED,
)


@dataclass(frozen=True)
class ErrorRecord:
    """Captured failure of one VM operation."""

    vm_name: str
    operation: str  # "export", "import", "stop"
    message: str
    detail: str | None = None  # stderr or other diagnostic output


@dataclass
class MigrationTask:
    """One VM's journey through the pipeline.

    Owned by the orchestrator for the duration of the run. Phases only move
    forward; FAILED can be entered from any non-terminal phase.
    """

    vm_name: str
    phase: TaskPhase = TaskPhase.PENDING
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error: ErrorRecord | None = None

    def advance(self, phase: TaskPhase) -> None:
        """Move to a later phase, refusing any regression."""
        if self.phase.terminal:
            raise ValueError(f"{self.vm_name}: task already terminal ({self.phase})")
        if phase != TaskPhase.FAILED and _PHASE_ORDER.index(phase) <= _PHASE_ORDER.index(self.phase):
            raise ValueError(f"{self.vm_name}: cannot move from {self.phase} to {phase}")

        now = datetime.now(UTC)
        if self.started_at is None:
            self.started_at = now
        if phase.terminal:
            self.ended_at = now
        self.phase = phase

    def fail(self, error: ErrorRecord) -> None:
        self.advance(TaskPhase.FAILED)
        self.error = error


class Outcome(StrEnum):
    """Terminal outcome of one VM in the final report."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class VMOutcome:
    vm_name: str
    outcome: Outcome
    error: ErrorRecord | None = None


@dataclass(frozen=True)
class RunReport:
    """Final per-VM outcomes. Built once at the end of the run."""

    outcomes: tuple[VMOutcome, ...] = ()
    errors: tuple[ErrorRecord, ...] = ()

    @property
    def succeeded(self) -> list[str]:
        return [o.vm_name for o in self.outcomes if o.outcome == Outcome.SUCCEEDED]

    @property
    def failed(self) -> list[str]:
        return [o.vm_name for o in self.outcomes if o.outcome == Outcome.FAILED]

    def __len__(self) -> int:
        return len(self.outcomes)

    def as_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "outcomes": {
                o.vm_name: {
                    "outcome": o.outcome.value,
                    "error": o.error.message if o.error else None,
                    "detail": o.error.detail if o.error else None,
                }
                for o in self.outcomes
            },
        }


class RunStatus(StrEnum):
    """Status of a migration run."""

    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    NO_SELECTION = "no_selection"
    NO_VOLUME_SELECTED = "no_volume_selected"
    NOTHING_TO_EXPORT = "nothing_to_export"
    ABORTED = "aborted"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass
class MigrationRun:
    """Complete migration run state and results."""

    run_id: str
    started_at: datetime
    source_hostname: str
    target_hostname: str
    status: RunStatus
    ended_at: datetime | None = None
    selected: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)  # Excluded by conflict check
    report: RunReport | None = None
    error_message: str | None = None
    log_file: str | None = None


class Gate(StrEnum):
    """Operator decision points in the run."""

    SHUTDOWN_RUNNING_VMS = "shutdown_running_vms"
    STOP_FAILURES = "stop_failures"


class Decision(Enum):
    """Answer given at a gate."""

    PROCEED = "proceed"
    SKIP = "skip"
    ABORT = "abort"
    RETRY = "retry"


@dataclass(frozen=True)
class GateContext:
    """What a decision function gets to look at."""

    gate: Gate
    vm_names: tuple[str, ...]
    errors: tuple[ErrorRecord, ...] = ()


class MigrationError(Exception):
    """Base class for errors that end a migration run."""


class UnreachableHostError(MigrationError):
    """A required port on the target host did not accept connections."""

    def __init__(self, host: str, ports: list[int]) -> None:
        self.host = host
        self.ports = ports
        port_list = ", ".join(str(p) for p in ports)
        super().__init__(f"{host} is unreachable on port(s) {port_list}")


class SessionEstablishmentError(MigrationError):
    """Host is reachable but the remote session could not be negotiated."""

    def __init__(self, host: str, reason: str) -> None:
        self.host = host
        self.reason = reason
        super().__init__(f"Could not establish session with {host}: {reason}")


class InsufficientCapacityError(MigrationError):
    """Selected VMs do not fit on the destination volume."""

    def __init__(self, required_bytes: int, free_bytes: int, margin_bytes: int) -> None:
        self.required_bytes = required_bytes
        self.free_bytes = free_bytes
        self.margin_bytes = margin_bytes
        super().__init__(
            f"Insufficient space on destination: need {required_bytes} bytes, "
            f"{free_bytes} free with {margin_bytes} bytes reserved"
        )


class SelectionError(MigrationError):
    """Scripted selection referenced VMs or volumes that do not exist."""


class ExportPhaseError(MigrationError):
    """At least one export failed; nothing is imported."""

    def __init__(self, errors: list[ErrorRecord]) -> None:
        self.errors = errors
        names = ", ".join(e.vm_name for e in errors)
        super().__init__(f"Export failed for {len(errors)} VM(s): {names}")


class RunAbortedError(MigrationError):
    """Operator chose to abort at a gate."""


class OperationError(Exception):
    """A hypervisor operation for one VM failed."""

    def __init__(
        self,
        operation: str,
        vm_name: str | None,
        message: str,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        self.operation = operation
        self.vm_name = vm_name
        self.message = message
        self.exit_code = exit_code
        self.stderr = stderr
        subject = f" {vm_name}" if vm_name else ""
        super().__init__(f"{operation}{subject} failed: {message}")


class TaskTimeoutError(Exception):
    """A pooled task exceeded the configured task timeout and was cancelled."""

    def __init__(self, key: str, timeout: float) -> None:
        self.key = key
        self.timeout = timeout
        super().__init__(f"{key} did not finish within {timeout:g}s")
