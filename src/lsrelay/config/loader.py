"""Configuration loading from TOML files and environment variables."""

import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from lsrelay.config.models import ConfigError, RelayConfig
from lsrelay.config.paths import get_config_path

LANGUAGE_SERVER_PATH_ENV = "LSRELAY_LANGUAGE_SERVER_PATH"
SERVICE_SOCKET_ENV = "LSRELAY_SERVICE_SOCKET"


def _get_default_config_paths() -> list[Path]:
    """Get ordered list of default config file locations."""
    return [
        Path("lsrelay.toml"),  # Current directory
        get_config_path(),  # ~/.lsrelay/config.toml (or LSRELAY_HOME)
    ]


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Let environment variables override file values."""
    overrides = [
        ("language_server", "path", LANGUAGE_SERVER_PATH_ENV),
        ("service", "socket_path", SERVICE_SOCKET_ENV),
    ]
    for section_key, key, env_var in overrides:
        value = os.environ.get(env_var)
        if value:
            section = config.setdefault(section_key, {})
            if not isinstance(section, dict):
                raise ConfigError(f"[{section_key}] must be a table")
            section[key] = value
    return config


def load_config(path: Path | None = None) -> RelayConfig:
    """Load configuration from TOML file.

    Args:
        path: Explicit path to config file. If None, searches default
            locations and falls back to defaults when none exists.

    Returns:
        Validated RelayConfig instance.

    Raises:
        FileNotFoundError: If an explicit path does not exist.
        ConfigError: If the config file is invalid.
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        for default_path in _get_default_config_paths():
            expanded = default_path.expanduser()
            if expanded.exists():
                config_path = expanded
                break

    raw_config: dict[str, Any] = {}
    if config_path is not None:
        try:
            with config_path.open("rb") as f:
                raw_config = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {config_path}: {e}") from e

    raw_config = _apply_env_overrides(raw_config)

    try:
        return RelayConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
