"""Centralized path management for lsrelay.

All state (config, service socket, PID file, logs) lives under one base
directory, overridable with the LSRELAY_HOME environment variable.

Default locations:
- Linux/macOS: ~/.lsrelay
"""

import os
from functools import lru_cache
from pathlib import Path

ENV_VAR = "LSRELAY_HOME"


@lru_cache(maxsize=1)
def get_lsrelay_home() -> Path:
    """Get the base directory for all lsrelay data.

    Resolution order:
    1. LSRELAY_HOME environment variable (if set)
    2. ~/.lsrelay
    """
    if env_home := os.environ.get(ENV_VAR):
        return Path(env_home).expanduser().resolve()
    return Path.home() / ".lsrelay"


def get_config_path() -> Path:
    """Get the default config file path."""
    return get_lsrelay_home() / "config.toml"


def get_run_path() -> Path:
    """Get the runtime directory path (PID file, socket)."""
    return get_lsrelay_home() / "run"


def get_socket_path() -> Path:
    """Get the extension service socket path."""
    return get_run_path() / "service.sock"


def get_pid_path() -> Path:
    """Get the extension service PID file path."""
    return get_run_path() / "service.pid"


def get_logs_path() -> Path:
    """Get the logs directory path."""
    return get_lsrelay_home() / "logs"


def get_service_log_path() -> Path:
    """Get the log file the launched service writes to."""
    return get_logs_path() / "service.log"
