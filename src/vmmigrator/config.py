"""Configuration loading and validation for vm-migrator."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from vmmigrator.logger import FULL
from vmmigrator.models import ConfigError

__all__ = [
    "CapacityConfig",
    "Configuration",
    "ConfigurationError",
    "ConnectionConfig",
    "LogConfig",
    "PollingConfig",
    "parse_size",
]

_SIZE_MULTIPLIERS = {
    "TiB": 2**40,
    "GiB": 2**30,
    "MiB": 2**20,
    "TB": 10**12,
    "GB": 10**9,
    "MB": 10**6,
}

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "FULL": FULL,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


@dataclass
class LogConfig:
    """Log levels per destination, as stdlib logging level numbers."""

    file: int = logging.DEBUG
    tui: int = logging.INFO
    external: int = logging.WARNING  # Third-party libraries (asyncssh)


@dataclass
class ConnectionConfig:
    """Target host connection settings."""

    file_share_port: int = 445
    management_port: int = 22
    probe_timeout: float = 5.0
    username: str | None = None
    keepalive_interval: int = 15
    keepalive_count_max: int = 3


@dataclass
class CapacityConfig:
    """Destination capacity settings."""

    safety_margin: str = "10GiB"

    @property
    def safety_margin_bytes(self) -> int:
        return parse_size(self.safety_margin)


@dataclass
class PollingConfig:
    """Poll intervals (seconds) for each concurrent phase."""

    shutdown_interval: float = 2.0
    export_interval: float = 5.0
    import_interval: float = 2.0
    task_timeout: float | None = None  # None = wait for tasks indefinitely


@dataclass
class Configuration:
    """Parsed and validated configuration from YAML file."""

    logging: LogConfig = field(default_factory=LogConfig)
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    capacity: CapacityConfig = field(default_factory=CapacityConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> Configuration:
        """Load and validate configuration from YAML file.

        Args:
            path: Path to config.yaml

        Returns:
            Validated Configuration instance

        Raises:
            ConfigurationError: If YAML is invalid or schema validation fails
        """
        errors: list[ConfigError] = []

        try:
            with path.open() as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            errors.append(ConfigError(path=str(path), message=f"Configuration file not found: {path}"))
            raise ConfigurationError(errors) from None
        except yaml.YAMLError as e:
            error_msg = str(e)
            mark = getattr(e, "problem_mark", None)
            problem = getattr(e, "problem", None)
            if mark is not None and problem is not None:
                error_msg = f"YAML syntax error at line {mark.line + 1}, column {mark.column + 1}: {problem}"
            errors.append(ConfigError(path=str(path), message=error_msg))
            raise ConfigurationError(errors) from e

        if data is None:
            data = {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Configuration:
        """Validate an already-parsed configuration mapping."""
        errors: list[ConfigError] = []

        validator = jsonschema.Draft7Validator(_load_schema())
        for error in validator.iter_errors(data):
            path_parts = list(error.absolute_path)
            path_str = ".".join(str(p) for p in path_parts) if path_parts else "root"
            errors.append(ConfigError(path=path_str, message=error.message))

        if errors:
            raise ConfigurationError(errors)

        log_data = data.get("logging", {})
        log_config = LogConfig(
            file=_LOG_LEVELS[log_data.get("file", "DEBUG")],
            tui=_LOG_LEVELS[log_data.get("tui", "INFO")],
            external=_LOG_LEVELS[log_data.get("external", "WARNING")],
        )

        conn_data = data.get("connection", {})
        connection = ConnectionConfig(
            file_share_port=conn_data.get("file_share_port", 445),
            management_port=conn_data.get("management_port", 22),
            probe_timeout=conn_data.get("probe_timeout", 5.0),
            username=conn_data.get("username"),
            keepalive_interval=conn_data.get("keepalive_interval", 15),
            keepalive_count_max=conn_data.get("keepalive_count_max", 3),
        )

        capacity = CapacityConfig(safety_margin=data.get("capacity", {}).get("safety_margin", "10GiB"))
        try:
            capacity.safety_margin_bytes  # noqa: B018
        except ValueError as e:
            errors.append(ConfigError(path="capacity.safety_margin", message=str(e)))

        poll_data = data.get("polling", {})
        polling = PollingConfig(
            shutdown_interval=poll_data.get("shutdown_interval", 2.0),
            export_interval=poll_data.get("export_interval", 5.0),
            import_interval=poll_data.get("import_interval", 2.0),
            task_timeout=poll_data.get("task_timeout"),
        )

        if errors:
            raise ConfigurationError(errors)

        return cls(logging=log_config, connection=connection, capacity=capacity, polling=polling)

    @classmethod
    def load_or_default(cls, path: Path) -> Configuration:
        """Load config from path, falling back to defaults if the file is absent."""
        if not path.exists():
            return cls()
        return cls.from_yaml(path)

    @classmethod
    def get_default_config_path(cls) -> Path:
        """Get the default config file path."""
        return Path.home() / ".config" / "vm-migrator" / "config.yaml"


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""

    def __init__(self, errors: list[ConfigError]) -> None:
        self.errors = errors
        messages = [f"{e.path}: {e.message}" for e in errors]
        super().__init__("Configuration validation failed:\n" + "\n".join(messages))


def parse_size(value: str) -> int:
    """Parse a size string such as "10GiB" or "500MB" to bytes.

    A bare "0" is accepted and means no headroom.

    Raises:
        ValueError: If the format is invalid
    """
    text = value.strip()
    if text == "0":
        return 0
    match = re.fullmatch(r"(\d+)\s*(TiB|GiB|MiB|TB|GB|MB)", text)
    if match is None:
        units = ", ".join(_SIZE_MULTIPLIERS)
        raise ValueError(f"Invalid size format: {value!r} (expected a number with unit: {units})")
    amount, unit = match.groups()
    return int(amount) * _SIZE_MULTIPLIERS[unit]


def _load_schema() -> dict[str, Any]:
    """Load the config schema from package resources."""
    schema_path = Path(__file__).parent / "schemas" / "config-schema.yaml"
    with schema_path.open() as f:
        return yaml.safe_load(f)
