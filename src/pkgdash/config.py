"""Dashboard configuration: defaults and YAML loading."""

import logging
from typing import Any

import yaml

from .parser import MERGE, STRICT
from .types import DashboardConfig

logger = logging.getLogger("pkgdash")

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------

DEFAULT_CSV_URL = (
    "https://raw.githubusercontent.com/sgoldenlab/simba/"
    "download_stats/misc/bigquery_download_stats.csv"
)

# Refresh every 5 minutes
DEFAULT_REFRESH_INTERVAL = 300.0

# Each feed gets 3 attempts, 2 seconds apart, before the cycle is failed
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 2.0

# Per-attempt HTTP timeout in seconds
DEFAULT_REQUEST_TIMEOUT = 30.0

PARSE_POLICIES = (STRICT, MERGE)
DEFAULT_PARSE_POLICY = STRICT

DEFAULT_TITLE = "Package Download Statistics"

_FIELD_TYPES: dict[str, type | tuple[type, ...]] = {
    "csv_url": str,
    "github_url": str,
    "gitter_url": str,
    "refresh_interval": (int, float),
    "retry_attempts": int,
    "retry_delay": (int, float),
    "request_timeout": (int, float),
    "parse_policy": str,
    "title": str,
}


class ConfigError(ValueError):
    """Raised when a configuration file holds invalid values."""


def default_config() -> DashboardConfig:
    """Return a fresh configuration populated with defaults."""
    return {
        "csv_url": DEFAULT_CSV_URL,
        "github_url": "",
        "gitter_url": "",
        "refresh_interval": DEFAULT_REFRESH_INTERVAL,
        "retry_attempts": DEFAULT_RETRY_ATTEMPTS,
        "retry_delay": DEFAULT_RETRY_DELAY,
        "request_timeout": DEFAULT_REQUEST_TIMEOUT,
        "parse_policy": DEFAULT_PARSE_POLICY,
        "title": DEFAULT_TITLE,
    }


def validate_config(config: DashboardConfig) -> None:
    """Check value ranges that the type checks alone can't catch."""
    if config["refresh_interval"] <= 0:
        raise ConfigError("refresh_interval must be positive")
    if config["retry_attempts"] < 1:
        raise ConfigError("retry_attempts must be at least 1")
    if config["retry_delay"] < 0:
        raise ConfigError("retry_delay cannot be negative")
    if config["request_timeout"] <= 0:
        raise ConfigError("request_timeout must be positive")
    if config["parse_policy"] not in PARSE_POLICIES:
        raise ConfigError(
            f"parse_policy must be one of {', '.join(PARSE_POLICIES)}, "
            f"got {config['parse_policy']!r}"
        )
    if not config["csv_url"]:
        raise ConfigError("csv_url cannot be empty")


def merge_config(
    base: DashboardConfig, overrides: dict[str, Any]
) -> DashboardConfig:
    """Apply overrides on top of a base config, type-checking each value.

    Unknown keys are logged and ignored. ``None`` values leave the base
    value untouched, so a YAML key left blank means "use the default".
    """
    merged = base.copy()
    for key, value in overrides.items():
        if key not in _FIELD_TYPES:
            logger.warning("Ignoring unknown config key: %s", key)
            continue
        if value is None:
            continue
        expected = _FIELD_TYPES[key]
        # bool is an int subclass, but "retry_attempts: yes" is a mistake
        if isinstance(value, bool) or not isinstance(value, expected):
            raise ConfigError(
                f"{key} has invalid type {type(value).__name__}"
            )
        merged[key] = value  # type: ignore[literal-required]

    validate_config(merged)
    return merged


def load_config(config_file: str | None = None) -> DashboardConfig:
    """Load configuration from a YAML file, falling back to defaults.

    Raises:
        FileNotFoundError: If ``config_file`` does not exist.
        ConfigError: If the file is not a mapping or holds invalid values.
    """
    config = default_config()
    if config_file is None:
        return config

    with open(config_file) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_file}: {e}") from e

    if data is None:
        return config
    if not isinstance(data, dict):
        raise ConfigError(f"{config_file} must contain a mapping of settings")

    logger.debug("Loaded config from %s", config_file)
    return merge_config(config, data)
