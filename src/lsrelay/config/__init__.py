"""Configuration module."""

from lsrelay.config.loader import load_config
from lsrelay.config.models import (
    ConfigError,
    LanguageServerConfig,
    RelayConfig,
    ServiceConfig,
)
from lsrelay.config.paths import (
    get_config_path,
    get_lsrelay_home,
    get_pid_path,
    get_socket_path,
)

__all__ = [
    "ConfigError",
    "LanguageServerConfig",
    "RelayConfig",
    "ServiceConfig",
    "get_config_path",
    "get_lsrelay_home",
    "get_pid_path",
    "get_socket_path",
    "load_config",
]
