"""Configuration models using Pydantic."""

import re
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from lsrelay.config.paths import get_socket_path


class LanguageServerConfig(BaseModel):
    """How to launch the language server child process.

    Arguments and environment are passed through untouched. An unset
    environment means the child inherits the service's environment.
    """

    path: str | None = None
    arguments: list[str] = []
    environment: dict[str, str] | None = None
    log_messages: bool = False


class ServiceConfig(BaseModel):
    """Extension service endpoint and launch settings."""

    socket_path: Path = Field(default_factory=get_socket_path)
    # Command that runs the service in the foreground; None = `lsrelay serve`
    command: list[str] | None = None
    launch_timeout: float = 10.0
    poll_interval: float = 0.1

    @field_validator("launch_timeout", "poll_interval")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value


class ConfigError(Exception):
    """Configuration error."""

    pass


class RelayConfig(BaseModel):
    """Root configuration model."""

    language_server: LanguageServerConfig = Field(default_factory=LanguageServerConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    # Mask tokens in logged language server payloads
    redact_secrets: bool = True
    redact_patterns: list[str] = []

    @field_validator("redact_patterns")
    @classmethod
    def _compile(cls, value: list[str]) -> list[str]:
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid pattern {pattern!r}: {e}") from None
        return value

    def require_language_server_path(self) -> str:
        """Get the language server executable or raise ConfigError."""
        if not self.language_server.path:
            raise ConfigError(
                "No language server configured. Set [language_server] path "
                "or LSRELAY_LANGUAGE_SERVER_PATH."
            )
        return self.language_server.path
