"""Centralized logging configuration for lsrelay.

All entry points (CLI, service) should call configure_logging() early.

Logging Levels:
- DEBUG: Raw JSON-RPC traffic (when enabled), language server stderr
- INFO: Process and connection lifecycle, server log messages
- WARNING: Dropped or malformed messages, forced kills
- ERROR: Failures that affect a call

Language server log messages and request params are logged verbatim and can
echo credentials, so they pass through redact() first.
"""

import logging
import os
import re
from dataclasses import dataclass, field

# Default patterns for secret detection and redaction
DEFAULT_REDACT_PATTERNS: list[str] = [
    r"\b(ghp_[A-Za-z0-9]{20,})\b",
    r"\b(gho_[A-Za-z0-9]{20,})\b",
    r"\b(ghu_[A-Za-z0-9]{20,})\b",
    r"\b(github_pat_[A-Za-z0-9_]{20,})\b",
    r"\b(sk-[A-Za-z0-9_-]{20,})\b",
    # JSON fields: "token": "value", "accessToken": "value"
    r"\"[A-Za-z_]*(?:[Tt]oken|[Ss]ecret|[Pp]assword)\"\s*:\s*\"([^\"]{8,})\"",
    # ENV-style assignments: API_KEY=secret
    r"\b[A-Z0-9_]+(?:KEY|TOKEN|SECRET|PASSWORD)\s*[=:]\s*([^\s\"']{8,})",
    r"\bBearer\s+([A-Za-z0-9._\-+=]{20,})\b",
]

# workDoneToken values identify workflows, not credentials.
_NOT_SECRET_FIELDS = ('"workDoneToken"',)


@dataclass
class SecretRedactor:
    """Redacts sensitive values, keeping the first and last 4 characters."""

    patterns: list[re.Pattern[str]] = field(default_factory=list)
    enabled: bool = True

    def __post_init__(self) -> None:
        if not self.patterns:
            self.patterns = [re.compile(p) for p in DEFAULT_REDACT_PATTERNS]

    def redact(self, text: str) -> str:
        if not self.enabled or not text:
            return text
        result = text
        for pattern in self.patterns:
            result = pattern.sub(self._mask_match, result)
        return result

    def _mask_match(self, match: re.Match[str]) -> str:
        full = match.group(0)
        if full.startswith(_NOT_SECRET_FIELDS):
            return full

        token = match.group(1) if match.lastindex else full
        if len(token) < 12:
            return full.replace(token, "***") if token != full else "***"

        masked = f"{token[:4]}...{token[-4:]}"
        return full.replace(token, masked) if token != full else masked


_redactor = SecretRedactor()


def configure_redaction(
    enabled: bool = True, extra_patterns: list[str] | None = None
) -> None:
    """Configure secret redaction for logged payloads."""
    global _redactor
    patterns = [re.compile(p) for p in DEFAULT_REDACT_PATTERNS]
    if extra_patterns:
        patterns.extend(re.compile(p) for p in extra_patterns)
    _redactor = SecretRedactor(patterns=patterns, enabled=enabled)


def redact(text: str) -> str:
    """Redact secrets using the configured redactor."""
    return _redactor.redact(text)


class ComponentFormatter(logging.Formatter):
    """Formatter that extracts component name from logger path.

    - lsrelay.languageserver.router -> languageserver
    - lsrelay.service.client -> service
    """

    def format(self, record: logging.LogRecord) -> str:
        parts = record.name.split(".")
        if len(parts) >= 2 and parts[0] == "lsrelay":
            record.component = parts[1]
        else:
            record.component = parts[0]
        return super().format(record)


def resolve_level(level: str | None) -> int:
    """Resolve a level name, falling back to LSRELAY_LOG_LEVEL then INFO."""
    if level is None:
        level = os.environ.get("LSRELAY_LOG_LEVEL", "INFO")
    level = level.upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        level = "INFO"
    return getattr(logging, level)


def configure_logging(
    level: str | None = None,
    use_rich: bool = False,
    *,
    redact_secrets: bool = True,
    redact_patterns: list[str] | None = None,
) -> None:
    """Configure logging for lsrelay.

    Call this once at application startup.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
            If None, uses LSRELAY_LOG_LEVEL env var or INFO.
        use_rich: Use Rich handler for colorful output (service mode).
        redact_secrets: Mask tokens in logged payloads.
        redact_patterns: Extra regexes whose first group is masked.
    """
    log_level = resolve_level(level)
    configure_redaction(enabled=redact_secrets, extra_patterns=redact_patterns)

    if use_rich:
        from rich.logging import RichHandler

        handler: logging.Handler = RichHandler(
            rich_tracebacks=False,
            show_path=False,
            show_time=True,
            markup=False,
        )
        handler.setFormatter(ComponentFormatter("%(component)s | %(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(
            ComponentFormatter(
                "%(asctime)s | %(levelname)-8s | %(component)s | %(message)s",
                datefmt="%H:%M:%S",
            )
        )

    logging.basicConfig(level=log_level, handlers=[handler], force=True)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
