"""
Configuration management and loading.

Handles the YAML settings for the ledger, job store, dispatcher, poller and
scenario cache.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from tryon_core.storage.db import DEFAULT_DB_PATH


@dataclass(frozen=True)
class DatabaseConfig:
    """Location of the SQLite database."""
    path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class LedgerConfig:
    """Credit reservation settings.

    ``sandbox_passthrough`` lets stores without billing configuration
    generate for free. Turn it off in production to surface missing
    provisioning instead of masking it.
    """
    sandbox_passthrough: bool = True
    reservation_ttl_hours: float = 24.0

    def __post_init__(self):
        if self.reservation_ttl_hours <= 0:
            raise ValueError("reservation_ttl_hours must be > 0")


@dataclass(frozen=True)
class JobsConfig:
    """Generation job defaults."""
    max_retries: int = 3

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")


@dataclass(frozen=True)
class DispatcherConfig:
    """Worker trigger endpoints and recovery sweep thresholds."""
    process_url: Optional[str] = None
    sweep_url: Optional[str] = None
    timeout_seconds: float = 10.0
    max_workers: int = 4
    stale_pending_seconds: float = 120.0
    stale_processing_seconds: float = 600.0

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.stale_pending_seconds <= 0:
            raise ValueError("stale_pending_seconds must be > 0")
        if self.stale_processing_seconds <= 0:
            raise ValueError("stale_processing_seconds must be > 0")


@dataclass(frozen=True)
class PollerConfig:
    """Client polling cadence, deadline and transport error policy."""
    interval_seconds: float = 2.0
    deadline_seconds: float = 180.0
    max_consecutive_errors: int = 5
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 16.0

    def __post_init__(self):
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if not 120 <= self.deadline_seconds <= 300:
            raise ValueError("deadline_seconds must be between 120 and 300")
        if self.max_consecutive_errors < 1:
            raise ValueError("max_consecutive_errors must be >= 1")
        if self.backoff_base_seconds <= 0:
            raise ValueError("backoff_base_seconds must be > 0")
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_cap_seconds must be >= backoff_base_seconds")


@dataclass(frozen=True)
class ScenariosConfig:
    """Scenario cache settings."""
    ttl_seconds: float = 300.0

    def __post_init__(self):
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")


@dataclass(frozen=True)
class AppConfig:
    """Complete tryon_core configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    poller: PollerConfig = field(default_factory=PollerConfig)
    scenarios: ScenariosConfig = field(default_factory=ScenariosConfig)


_SECTIONS = {
    "database": DatabaseConfig,
    "ledger": LedgerConfig,
    "jobs": JobsConfig,
    "dispatcher": DispatcherConfig,
    "poller": PollerConfig,
    "scenarios": ScenariosConfig,
}

_FIELD_TYPES = {
    "path": str,
    "sandbox_passthrough": bool,
    "reservation_ttl_hours": float,
    "max_retries": int,
    "process_url": str,
    "sweep_url": str,
    "timeout_seconds": float,
    "max_workers": int,
    "stale_pending_seconds": float,
    "stale_processing_seconds": float,
    "interval_seconds": float,
    "deadline_seconds": float,
    "max_consecutive_errors": int,
    "backoff_base_seconds": float,
    "backoff_cap_seconds": float,
    "ttl_seconds": float,
}

# Keys that may be set to null to mean "not configured".
_NULLABLE_FIELDS = {"process_url", "sweep_url"}


def default_config() -> AppConfig:
    """Configuration used when no file is given."""
    return AppConfig()


def load_config(path: str) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Every section is optional; omitted keys take their defaults. Unknown
    sections or keys are rejected so typos never silently fall back.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return default_config()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {}
    for name, section_cls in _SECTIONS.items():
        data = raw_config.get(name) or {}
        if not isinstance(data, dict):
            raise ValueError(f"'{name}' must be a dictionary")
        sections[name] = _parse_section(section_cls, data, name)

    return AppConfig(**sections)


def _parse_section(section_cls, data: Dict[str, Any], path: str):
    """Parse and validate one configuration section.

    Args:
        section_cls: Dataclass describing the section
        data: Raw section data
        path: Path for error messages

    Returns:
        Validated section instance

    Raises:
        ValueError: If the section is invalid
    """
    allowed_keys = set(section_cls.__dataclass_fields__)
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    values = {}
    for key, raw in data.items():
        values[key] = _coerce(
            raw, _FIELD_TYPES[key], f"{path}.{key}", nullable=key in _NULLABLE_FIELDS
        )

    try:
        return section_cls(**values)
    except ValueError as e:
        raise ValueError(f"Invalid {path}: {e}")


def _coerce(value: Any, expected: type, path: str, nullable: bool = False) -> Any:
    if value is None:
        if nullable:
            return None
        raise ValueError(f"'{path}' must not be empty")
    if expected is bool:
        if not isinstance(value, bool):
            raise ValueError(f"'{path}' must be true or false")
        return value
    if expected in (int, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"'{path}' must be a number")
        if expected is int and not float(value).is_integer():
            raise ValueError(f"'{path}' must be an integer")
        return expected(value)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{path}' must be a non-empty string")
    return value
