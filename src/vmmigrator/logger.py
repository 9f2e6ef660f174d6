"""Logging infrastructure for vm-migrator.

All modules log through the standard library under the ``vmmigrator``
logger hierarchy, passing ``job`` and ``host`` as extras::

    logger = logging.getLogger(__name__)
    logger.info("Export started", extra={"job": "export", "host": Host.SOURCE})

Records are handed to a QueueListener thread which writes JSON lines to the
run's log file and Rich-formatted lines to the terminal.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path
from queue import Queue
from typing import TYPE_CHECKING, Any, ClassVar

from rich.console import Console
from rich.markup import escape

if TYPE_CHECKING:
    from vmmigrator.config import LogConfig

__all__ = [
    "FULL",
    "JsonFormatter",
    "RichConsoleHandler",
    "RichFormatter",
    "generate_log_filename",
    "get_latest_log_file",
    "get_logs_directory",
    "setup_logging",
    "shutdown_logging",
]

# Operational detail level between DEBUG and INFO
FULL = 15
logging.addLevelName(FULL, "FULL")

# Attributes present on every LogRecord; anything else came in via `extra`
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys() | {"message", "asctime", "taskName"}
)
_OWN_FIELDS = frozenset({"job", "host"})


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS and k not in _OWN_FIELDS}


class JsonFormatter(logging.Formatter):
    """Formats records as one JSON object per line.

    Context passed via ``extra`` becomes top-level fields, never nested.
    """

    def __init__(self, hostnames: dict[str, str] | None = None) -> None:
        super().__init__()
        self._hostnames = hostnames or {}

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
        }
        job = getattr(record, "job", None)
        if job is not None:
            data["job"] = job
        host = getattr(record, "host", None)
        if host is not None:
            data["host"] = str(host)
            if str(host) in self._hostnames:
                data["hostname"] = self._hostnames[str(host)]
        data["event"] = record.getMessage()
        data.update(_extra_fields(record))
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


class RichFormatter(logging.Formatter):
    """Formats records with Rich markup for terminal display."""

    LEVEL_COLORS: ClassVar[dict[str, str]] = {
        "DEBUG": "dim",
        "FULL": "cyan",
        "INFO": "green",
        "WARNING": "yellow",
        "ERROR": "red",
        "CRITICAL": "bold red",
    }

    def __init__(self, hostnames: dict[str, str] | None = None) -> None:
        super().__init__()
        self._hostnames = hostnames or {}

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        color = self.LEVEL_COLORS.get(record.levelname, "white")

        parts = [
            f"[dim]{timestamp}[/dim]",
            f"[{color}]{record.levelname:8}[/{color}]",
        ]
        job = getattr(record, "job", None)
        if job is not None:
            parts.append(f"[blue]\\[{escape(str(job))}][/blue]")
        host = getattr(record, "host", None)
        if host is not None:
            hostname = self._hostnames.get(str(host), str(host))
            parts.append(f"[magenta]({escape(hostname)})[/magenta]")
        parts.append(escape(record.getMessage()))

        context = _extra_fields(record)
        if context:
            ctx = " ".join(f"{k}={v}" for k, v in context.items())
            parts.append(f"[dim]{escape(ctx)}[/dim]")

        return " ".join(parts)


class RichConsoleHandler(logging.Handler):
    """Prints formatted records through a Rich console.

    Output printed while a Live display is active appears above it.
    """

    def __init__(self, console: Console) -> None:
        super().__init__()
        self._console = console

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._console.print(self.format(record), highlight=False)
        except Exception:
            self.handleError(record)


def _replace_queue_handlers(logger: logging.Logger, handler: QueueHandler) -> None:
    for existing in [h for h in logger.handlers if isinstance(h, QueueHandler)]:
        logger.removeHandler(existing)
    logger.addHandler(handler)


def setup_logging(
    log_file: Path,
    config: LogConfig,
    console: Console | None = None,
    hostnames: dict[str, str] | None = None,
) -> tuple[QueueListener, Queue[logging.LogRecord]]:
    """Configure the logging pipeline for one run.

    The ``vmmigrator`` logger gets its own handler and does not propagate,
    so its records are only filtered by the file and tui levels. The root
    logger is set to the ``external`` level to keep library output quiet.

    Args:
        log_file: Path of the JSON-lines log file (parent dirs are created)
        config: Per-destination log levels
        console: Rich console for terminal output (default: stderr)
        hostnames: Mapping from host role ("source"/"target") to hostname

    Returns:
        The started QueueListener (hand it to shutdown_logging()) and its queue
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    log_queue: Queue[logging.LogRecord] = Queue()

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(config.file)
    file_handler.setFormatter(JsonFormatter(hostnames))

    tui_handler = RichConsoleHandler(console or Console(stderr=True))
    tui_handler.setLevel(config.tui)
    tui_handler.setFormatter(RichFormatter(hostnames))

    listener = QueueListener(log_queue, file_handler, tui_handler, respect_handler_level=True)

    app_logger = logging.getLogger("vmmigrator")
    _replace_queue_handlers(app_logger, QueueHandler(log_queue))
    app_logger.setLevel(min(config.file, config.tui))
    app_logger.propagate = False

    root = logging.getLogger()
    _replace_queue_handlers(root, QueueHandler(log_queue))
    root.setLevel(config.external)

    listener.start()
    return listener, log_queue


def shutdown_logging(listener: QueueListener) -> None:
    """Undo setup_logging(): flush pending records and detach the queue handlers.

    Records logged afterwards reach whatever handlers the application had
    before the run instead of a queue nobody drains.
    """
    listener.stop()
    for handler in listener.handlers:
        handler.close()

    for logger in (logging.getLogger("vmmigrator"), logging.getLogger()):
        for handler in [h for h in logger.handlers if isinstance(h, QueueHandler) and h.queue is listener.queue]:
            logger.removeHandler(handler)
    logging.getLogger("vmmigrator").propagate = True


def generate_log_filename(run_id: str) -> str:
    """Generate log filename for a migration run.

    Format: migrate-<timestamp>-<run_id>.log
    """
    timestamp = datetime.now().strftime("%Y%m%dT%H%M%S")
    return f"migrate-{timestamp}-{run_id}.log"


def get_logs_directory() -> Path:
    """Get the logs directory path."""
    return Path.home() / ".local" / "share" / "vm-migrator" / "logs"


def get_latest_log_file() -> Path | None:
    """Get the most recent log file, or None if no logs exist."""
    logs_dir = get_logs_directory()
    if not logs_dir.exists():
        return None

    log_files = sorted(logs_dir.glob("migrate-*.log"), reverse=True)
    return log_files[0] if log_files else None
