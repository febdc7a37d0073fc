"""Launch-or-attach for the extension service.

The client only needs an endpoint to connect to. CommunicationBridge returns
the service socket once something listens there, starting a detached service
process first when none is running.
"""

import asyncio
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Protocol

from lsrelay.config.models import ServiceConfig
from lsrelay.config.paths import get_pid_path, get_service_log_path
from lsrelay.service.pid import read_pid_file

logger = logging.getLogger(__name__)

SOCKET_ENV = "LSRELAY_SERVICE_SOCKET"


class ServiceLauncher(Protocol):
    """Produces an endpoint for the extension service, launching it if needed."""

    async def launch_if_needed(self) -> str | None:
        """Return the endpoint, or None if the service could not be reached.

        Must be idempotent: calling it while the service runs only returns the
        endpoint.
        """
        ...


def _get_lsrelay_command() -> list[str]:
    """Get the command to run lsrelay."""
    lsrelay_path = shutil.which("lsrelay")
    if lsrelay_path:
        return [lsrelay_path]
    # Fall back to running as module
    return [sys.executable, "-m", "lsrelay"]


async def is_listening(socket_path: Path) -> bool:
    """Check whether something accepts connections on the socket."""
    try:
        _, writer = await asyncio.open_unix_connection(str(socket_path))
    except OSError:
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


class CommunicationBridge:
    """Attach to a running service or start one in the background."""

    def __init__(
        self,
        config: ServiceConfig,
        *,
        pid_path: Path | None = None,
        log_path: Path | None = None,
    ) -> None:
        self._config = config
        self._pid_path = pid_path or get_pid_path()
        self._log_path = log_path or get_service_log_path()
        self._lock = asyncio.Lock()
        self._process: asyncio.subprocess.Process | None = None

    @property
    def socket_path(self) -> Path:
        return self._config.socket_path

    async def launch_if_needed(self) -> str | None:
        async with self._lock:
            socket_path = self._config.socket_path
            if await is_listening(socket_path):
                return str(socket_path)

            record = read_pid_file(self._pid_path)
            if record is not None and record.serves(socket_path):
                self._process = None
                logger.debug(
                    "Service process running, waiting for socket",
                    extra={"pid": record.pid},
                )
            elif not await self._spawn():
                return None

            if await self._wait_for_socket():
                return str(socket_path)
            logger.warning(
                "Extension service did not come up",
                extra={
                    "socket": str(socket_path),
                    "timeout": self._config.launch_timeout,
                },
            )
            return None

    async def _spawn(self) -> bool:
        """Start the service as a background process."""
        cmd = self._config.command or (_get_lsrelay_command() + ["serve"])
        env = dict(os.environ)
        env[SOCKET_ENV] = str(self._config.socket_path)

        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Launching extension service", extra={"command": " ".join(cmd)})
        try:
            with self._log_path.open("a") as log_file:  # noqa: ASYNC230
                self._process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=log_file,
                    stderr=log_file,
                    stdin=asyncio.subprocess.DEVNULL,
                    env=env,
                    start_new_session=True,
                )
        except OSError as e:
            logger.error("Failed to launch extension service: %s", e)
            return False
        return True

    async def _wait_for_socket(self) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.launch_timeout
        while loop.time() < deadline:
            if await is_listening(self._config.socket_path):
                return True
            process = self._process
            if process is not None and process.returncode is not None:
                logger.error(
                    "Extension service exited during startup",
                    extra={"returncode": process.returncode},
                )
                return False
            await asyncio.sleep(self._config.poll_interval)
        return False
