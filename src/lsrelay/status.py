"""Shared language server status.

A StatusStore is created by whoever builds the relay and passed explicitly to
the components that update or observe it. It is closed together with the
owning process client.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from lsrelay.publisher import Publisher

logger = logging.getLogger(__name__)


class StatusKind(Enum):
    """Language server status kind as reported by the server."""

    NORMAL = "Normal"
    ERROR = "Error"
    WARNING = "Warning"
    INACTIVE = "Inactive"


@dataclass(frozen=True)
class LanguageServerStatus:
    kind: StatusKind = StatusKind.NORMAL
    busy: bool = False
    message: str = ""


class StatusStore:
    """Status sink with change notifications."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._language_server = LanguageServerStatus()
        self.changes: Publisher[LanguageServerStatus] = Publisher("status")
        self._closed = False

    @property
    def language_server(self) -> LanguageServerStatus:
        return self._language_server

    async def update_language_server_status(
        self, kind: StatusKind, busy: bool, message: str
    ) -> None:
        async with self._lock:
            if self._closed:
                return
            status = LanguageServerStatus(kind=kind, busy=busy, message=message)
            if status == self._language_server:
                return
            self._language_server = status
        logger.debug(
            "Language server status changed",
            extra={"kind": kind.value, "busy": busy},
        )
        self.changes.send(status)

    def close(self) -> None:
        self._closed = True
        self.changes.close()
