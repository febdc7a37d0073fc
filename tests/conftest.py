"""Shared test fixtures and fakes."""

from __future__ import annotations

import asyncio
import json
import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any, ClassVar

import pytest
from pydantic import BaseModel

from lsrelay.config.paths import get_lsrelay_home
from lsrelay.service.client import ExtensionServiceRequest

# =============================================================================
# Language server child process
# =============================================================================


def frame(message: dict[str, Any]) -> bytes:
    """Encode one message with Content-Length framing."""
    body = json.dumps(message).encode()
    return f"Content-Length: {len(body)}\r\n\r\n".encode() + body


def parse_frames(data: bytes) -> list[dict[str, Any]]:
    """Decode every Content-Length framed message in ``data``."""
    messages = []
    while data:
        header, _, rest = data.partition(b"\r\n\r\n")
        length = int(header.split(b":", 1)[1])
        messages.append(json.loads(rest[:length]))
        data = rest[length:]
    return messages


class FakeStdin:
    """Writer side of the child's stdin."""

    def __init__(self) -> None:
        self.buffer = bytearray()
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("stdin closed")
        self.buffer.extend(data)

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    def is_closing(self) -> bool:
        return self.closed


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process speaking over fake pipes."""

    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.stdin = FakeStdin()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self._exited = asyncio.Event()

    @property
    def sent(self) -> list[dict[str, Any]]:
        return parse_frames(bytes(self.stdin.buffer))

    def send(self, message: dict[str, Any]) -> None:
        """Write a message to the client as the language server."""
        self.stdout.feed_data(frame(message))

    def respond(self, request_id: int | str, result: Any) -> None:
        self.send({"jsonrpc": "2.0", "id": request_id, "result": result})

    def exit(self, returncode: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = returncode
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    def terminate(self) -> None:
        self.exit(-15)

    def kill(self) -> None:
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    async def wait_for_sent(self, count: int) -> list[dict[str, Any]]:
        """Yield to the loop until ``count`` messages were written."""
        for _ in range(200):
            sent = self.sent
            if len(sent) >= count:
                return sent
            await asyncio.sleep(0)
        raise AssertionError(f"expected {count} messages, got {self.sent}")


class FakeProcessFactory:
    """Replacement for asyncio.create_subprocess_exec."""

    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.calls: list[tuple[tuple[Any, ...], dict[str, Any]]] = []

    async def __call__(self, *args: Any, **kwargs: Any) -> FakeProcess:
        self.calls.append((args, kwargs))
        process = FakeProcess(pid=4242 + len(self.processes))
        self.processes.append(process)
        return process

    @property
    def process(self) -> FakeProcess:
        return self.processes[-1]


@pytest.fixture
def fake_exec(monkeypatch) -> FakeProcessFactory:
    """Make LocalProcessServer spawn FakeProcess instances."""
    factory = FakeProcessFactory()
    monkeypatch.setattr(
        "lsrelay.languageserver.process.asyncio.create_subprocess_exec", factory
    )
    return factory


async def settle(rounds: int = 20) -> None:
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def eventually(predicate, timeout: float = 1.0) -> None:
    """Poll until ``predicate()`` is true; for events that cross a socket."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


# =============================================================================
# Paths
# =============================================================================


@pytest.fixture(autouse=True)
def lsrelay_home(tmp_path: Path, monkeypatch) -> Iterator[Path]:
    """Point LSRELAY_HOME at a temporary directory."""
    home = tmp_path / "lsrelay-home"
    monkeypatch.setenv("LSRELAY_HOME", str(home))
    monkeypatch.delenv("LSRELAY_LANGUAGE_SERVER_PATH", raising=False)
    monkeypatch.delenv("LSRELAY_SERVICE_SOCKET", raising=False)
    monkeypatch.delenv("LSRELAY_LOG_LEVEL", raising=False)
    get_lsrelay_home.cache_clear()
    yield home
    get_lsrelay_home.cache_clear()


@pytest.fixture
def socket_dir() -> Iterator[Path]:
    """Short directory for Unix sockets (tmp_path can exceed the path limit)."""
    path = Path(tempfile.mkdtemp(prefix="lsr"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def cli_runner():
    """Create a Typer CLI test runner with colors disabled."""
    from typer.testing import CliRunner

    return CliRunner(env={"NO_COLOR": "1"})


# =============================================================================
# Extension service
# =============================================================================


class FakeLauncher:
    """Launcher that hands out a fixed endpoint and counts launches."""

    def __init__(self, endpoint: str | None, delay: float = 0.0) -> None:
        self.endpoint = endpoint
        self.delay = delay
        self.calls = 0

    async def launch_if_needed(self) -> str | None:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.endpoint


class ModelInfo(BaseModel):
    id: str


class ModelList(BaseModel):
    models: list[ModelInfo]


class ListModels(ExtensionServiceRequest):
    """Typed request used to exercise the generic send operation."""

    endpoint: ClassVar[str] = "models/list"
    response_model: ClassVar[type[BaseModel]] = ModelList

    scope: str = "chat"
