"""PID file for the running extension service.

The file holds three lines: the service PID, its start time and the socket
it serves. Launchers read it to tell a service that is still starting up
from a stale file left by one that died.
"""

import os
import time
from dataclasses import dataclass
from pathlib import Path


@dataclass
class ServiceRecord:
    """What a PID file says about a service process."""

    pid: int
    started_at: float
    socket_path: Path | None
    alive: bool

    def serves(self, socket_path: Path) -> bool:
        """True if the process is alive and bound to ``socket_path``.

        Files without a socket line match any socket.
        """
        if not self.alive:
            return False
        return self.socket_path is None or self.socket_path == socket_path


def write_pid_file(
    pid_path: Path, socket_path: Path | None = None, pid: int | None = None
) -> None:
    """Record a service process (default: the current one)."""
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    lines = [str(pid or os.getpid()), str(time.time())]
    if socket_path is not None:
        lines.append(str(socket_path))
    pid_path.write_text("\n".join(lines) + "\n")


def read_pid_file(pid_path: Path) -> ServiceRecord | None:
    """Read the service record, or None if the file is missing or unreadable."""
    try:
        lines = pid_path.read_text().strip().split("\n")
        pid = int(lines[0])
        started_at = float(lines[1]) if len(lines) > 1 else 0.0
    except (ValueError, IndexError, OSError):
        return None
    socket_path = Path(lines[2]) if len(lines) > 2 and lines[2] else None
    return ServiceRecord(
        pid=pid,
        started_at=started_at,
        socket_path=socket_path,
        alive=is_process_alive(pid),
    )


def remove_pid_file(pid_path: Path, pid: int | None = None) -> None:
    """Remove the PID file.

    With ``pid`` set, only remove it while it still names that process so a
    newer service's file is left alone.
    """
    if pid is not None:
        record = read_pid_file(pid_path)
        if record is not None and record.pid != pid:
            return
    pid_path.unlink(missing_ok=True)


def is_process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except OSError:
        return False
