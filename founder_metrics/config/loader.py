"""
Configuration management and loading.

Handles application settings and environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

DEFAULT_MAIN_DB = "founder_main.db"
DEFAULT_FOUNDER_DB = "founder_platform.db"

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class DatabaseConfig:
    """Locations of the main system and founder platform databases."""
    main: str = DEFAULT_MAIN_DB
    founder: str = DEFAULT_FOUNDER_DB
    timeout_seconds: float = 5.0

    def __post_init__(self):
        """Validate database settings."""
        if not self.main or not self.main.strip():
            raise ValueError("database.main must not be empty")
        if not self.founder or not self.founder.strip():
            raise ValueError("database.founder must not be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("database.timeout_seconds must be > 0")


@dataclass(frozen=True)
class MetricsConfig:
    """Metrics engine settings."""
    cost_window_days: int = 30
    read_timeout_seconds: float = 10.0

    def __post_init__(self):
        """Validate metrics settings are positive."""
        if self.cost_window_days <= 0:
            raise ValueError("metrics.cost_window_days must be > 0")
        if self.read_timeout_seconds <= 0:
            raise ValueError("metrics.read_timeout_seconds must be > 0")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "WARNING"

    def __post_init__(self):
        if self.level not in LOG_LEVELS:
            raise ValueError(f"logging.level must be one of: {sorted(LOG_LEVELS)}")


@dataclass(frozen=True)
class Settings:
    """Complete application configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_SECTION_KEYS = {
    "database": {"main", "founder", "timeout_seconds"},
    "metrics": {"cost_window_days", "read_timeout_seconds"},
    "logging": {"level"},
}


def load_settings(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load and validate settings from an optional YAML file and the environment.

    Database paths resolve in this order: ``MAIN_DATABASE_PATH`` /
    ``FOUNDER_DATABASE_PATH``, then ``DATABASE_PATH``, then the file, then
    the built-in defaults. ``FOUNDER_METRICS_LOG_LEVEL`` overrides the log
    level.

    Args:
        path: Path to YAML configuration file, or None for defaults only
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    env = os.environ if environ is None else environ
    raw_config: Dict[str, Any] = {}
    if path is not None:
        raw_config = _read_yaml(path)

    database = _section(raw_config, "database")
    metrics = _section(raw_config, "metrics")
    logging_section = _section(raw_config, "logging")

    shared_db = env.get("DATABASE_PATH")
    main_db = env.get("MAIN_DATABASE_PATH") or shared_db or database.get("main", DEFAULT_MAIN_DB)
    founder_db = env.get("FOUNDER_DATABASE_PATH") or shared_db or database.get("founder", DEFAULT_FOUNDER_DB)

    return Settings(
        database=DatabaseConfig(
            main=str(main_db),
            founder=str(founder_db),
            timeout_seconds=_number(database, "timeout_seconds", 5.0, "database"),
        ),
        metrics=MetricsConfig(
            cost_window_days=_integer(metrics, "cost_window_days", 30, "metrics"),
            read_timeout_seconds=_number(metrics, "read_timeout_seconds", 10.0, "metrics"),
        ),
        logging=LoggingConfig(
            level=str(env.get("FOUNDER_METRICS_LOG_LEVEL") or logging_section.get("level", "WARNING")).upper(),
        ),
    )


def _read_yaml(path: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")
    return raw_config


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Get one top-level section, rejecting unknown keys inside it."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _number(data: Dict[str, Any], key: str, default: float, path: str) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _integer(data: Dict[str, Any], key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value
