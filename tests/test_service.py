"""Tests for the PID file helpers and the service launcher."""

import os
import sys
import time
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from lsrelay.config import ServiceConfig
from lsrelay.service.launcher import (
    SOCKET_ENV,
    CommunicationBridge,
    _get_lsrelay_command,
    is_listening,
)
from lsrelay.service.pid import (
    is_process_alive,
    read_pid_file,
    remove_pid_file,
    write_pid_file,
)
from lsrelay.service.server import ExtensionServiceServer

# =============================================================================
# PID Utilities Tests
# =============================================================================


class TestPidUtilities:
    """Tests for PID file management."""

    def test_write_pid_file(self, tmp_path: Path):
        pid_path = tmp_path / "run" / "service.pid"
        write_pid_file(pid_path)

        content = pid_path.read_text().strip().split("\n")
        assert int(content[0]) == os.getpid()
        assert float(content[1]) > 0

    def test_write_pid_file_custom_pid(self, tmp_path: Path):
        pid_path = tmp_path / "service.pid"
        write_pid_file(pid_path, pid=12345)

        assert pid_path.read_text().split("\n")[0] == "12345"

    def test_read_pid_file_exists(self, tmp_path: Path):
        pid_path = tmp_path / "service.pid"
        start_time = time.time()
        pid_path.write_text(f"{os.getpid()}\n{start_time}\n")

        proc_info = read_pid_file(pid_path)

        assert proc_info is not None
        assert proc_info.pid == os.getpid()
        assert proc_info.started_at == start_time
        assert proc_info.socket_path is None
        assert proc_info.alive is True

    def test_socket_path_round_trip(self, tmp_path: Path):
        pid_path = tmp_path / "service.pid"
        socket_path = tmp_path / "service.sock"
        write_pid_file(pid_path, socket_path)

        record = read_pid_file(pid_path)

        assert record.socket_path == socket_path
        assert record.serves(socket_path)
        assert not record.serves(tmp_path / "other.sock")

    def test_dead_process_serves_nothing(self, tmp_path: Path):
        pid_path = tmp_path / "service.pid"
        pid_path.write_text(f"999999\n0\n{tmp_path / 'service.sock'}\n")

        assert not read_pid_file(pid_path).serves(tmp_path / "service.sock")

    def test_read_pid_file_not_exists(self, tmp_path: Path):
        assert read_pid_file(tmp_path / "missing.pid") is None

    def test_read_pid_file_garbage(self, tmp_path: Path):
        pid_path = tmp_path / "service.pid"
        pid_path.write_text("not-a-pid\n")
        assert read_pid_file(pid_path) is None

    def test_read_pid_file_dead_process(self, tmp_path: Path):
        pid_path = tmp_path / "service.pid"
        # A PID that's unlikely to be running
        pid_path.write_text("999999\n0\n")

        proc_info = read_pid_file(pid_path)

        assert proc_info is not None
        assert proc_info.alive is False

    def test_remove_pid_file(self, tmp_path: Path):
        pid_path = tmp_path / "service.pid"
        write_pid_file(pid_path)

        remove_pid_file(pid_path)
        remove_pid_file(pid_path)

        assert not pid_path.exists()

    def test_remove_pid_file_keeps_other_process_file(self, tmp_path: Path):
        """A newer service's PID file is left alone."""
        pid_path = tmp_path / "service.pid"
        write_pid_file(pid_path, pid=os.getpid() + 1)

        remove_pid_file(pid_path, pid=os.getpid())

        assert pid_path.exists()

    def test_remove_pid_file_own_pid(self, tmp_path: Path):
        pid_path = tmp_path / "service.pid"
        write_pid_file(pid_path)

        remove_pid_file(pid_path, pid=os.getpid())

        assert not pid_path.exists()

    def test_is_process_alive(self):
        assert is_process_alive(os.getpid()) is True
        assert is_process_alive(999999) is False


# =============================================================================
# Launcher Tests
# =============================================================================


def _service_config(socket_dir: Path, **kwargs) -> ServiceConfig:
    kwargs.setdefault("launch_timeout", 1.0)
    kwargs.setdefault("poll_interval", 0.01)
    return ServiceConfig(socket_path=socket_dir / "service.sock", **kwargs)


def _process(returncode=None) -> MagicMock:
    process = MagicMock()
    process.returncode = returncode
    return process


@pytest.fixture
def bridge_paths(tmp_path: Path) -> dict[str, Path]:
    return {
        "pid_path": tmp_path / "run" / "service.pid",
        "log_path": tmp_path / "logs" / "service.log",
    }


@pytest.fixture
def spawn(monkeypatch) -> AsyncMock:
    """Replace process creation in the launcher."""
    mock = AsyncMock(return_value=_process())
    monkeypatch.setattr(
        "lsrelay.service.launcher.asyncio.create_subprocess_exec", mock
    )
    return mock


class TestIsListening:
    @pytest.mark.asyncio
    async def test_missing_socket(self, socket_dir):
        assert await is_listening(socket_dir / "none.sock") is False

    @pytest.mark.asyncio
    async def test_running_server(self, socket_dir):
        server = ExtensionServiceServer(socket_dir / "service.sock")
        await server.start()
        try:
            assert await is_listening(server.socket_path) is True
        finally:
            await server.stop()


class TestCommunicationBridge:
    @pytest.mark.asyncio
    async def test_attaches_to_running_service(self, socket_dir, bridge_paths, spawn):
        server = ExtensionServiceServer(socket_dir / "service.sock")
        await server.start()
        bridge = CommunicationBridge(_service_config(socket_dir), **bridge_paths)
        try:
            assert await bridge.launch_if_needed() == str(server.socket_path)
            assert await bridge.launch_if_needed() == str(server.socket_path)
        finally:
            await server.stop()
        spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_spawns_and_waits_for_socket(
        self, socket_dir, bridge_paths, monkeypatch
    ):
        config = _service_config(socket_dir, command=["/opt/lsrelay", "serve"])
        servers = []
        calls = []

        async def fake_exec(*cmd, **kwargs):
            calls.append((cmd, kwargs))
            server = ExtensionServiceServer(config.socket_path)
            await server.start()
            servers.append(server)
            return _process()

        monkeypatch.setattr(
            "lsrelay.service.launcher.asyncio.create_subprocess_exec", fake_exec
        )
        bridge = CommunicationBridge(config, **bridge_paths)

        try:
            assert await bridge.launch_if_needed() == str(config.socket_path)
        finally:
            for server in servers:
                await server.stop()

        cmd, kwargs = calls[0]
        assert cmd == ("/opt/lsrelay", "serve")
        assert kwargs["env"][SOCKET_ENV] == str(config.socket_path)
        assert kwargs["start_new_session"] is True
        assert bridge_paths["log_path"].exists()

    @pytest.mark.asyncio
    async def test_default_command_is_serve(self, socket_dir, bridge_paths, spawn):
        config = _service_config(socket_dir, launch_timeout=0.05)
        bridge = CommunicationBridge(config, **bridge_paths)

        await bridge.launch_if_needed()

        cmd = spawn.call_args.args
        assert cmd[-1] == "serve"
        assert list(cmd[:-1]) == _get_lsrelay_command()

    @pytest.mark.asyncio
    async def test_process_exiting_during_startup(
        self, socket_dir, bridge_paths, spawn
    ):
        spawn.return_value = _process(returncode=1)
        config = _service_config(socket_dir, launch_timeout=30.0)
        bridge = CommunicationBridge(config, **bridge_paths)

        start = time.monotonic()
        assert await bridge.launch_if_needed() is None
        assert time.monotonic() - start < 5

    @pytest.mark.asyncio
    async def test_socket_never_appears(self, socket_dir, bridge_paths, spawn):
        config = _service_config(socket_dir, launch_timeout=0.05)
        bridge = CommunicationBridge(config, **bridge_paths)

        assert await bridge.launch_if_needed() is None
        spawn.assert_called_once()

    @pytest.mark.asyncio
    async def test_spawn_failure(self, socket_dir, bridge_paths, spawn):
        spawn.side_effect = PermissionError("denied")
        bridge = CommunicationBridge(_service_config(socket_dir), **bridge_paths)

        assert await bridge.launch_if_needed() is None

    @pytest.mark.asyncio
    async def test_live_pid_waits_instead_of_spawning(
        self, socket_dir, bridge_paths, spawn
    ):
        write_pid_file(bridge_paths["pid_path"])
        config = _service_config(socket_dir, launch_timeout=0.05)
        bridge = CommunicationBridge(config, **bridge_paths)

        assert await bridge.launch_if_needed() is None
        spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_live_pid_for_other_socket_spawns(
        self, socket_dir, bridge_paths, spawn
    ):
        write_pid_file(bridge_paths["pid_path"], socket_dir / "elsewhere.sock")
        config = _service_config(socket_dir, launch_timeout=0.05)
        bridge = CommunicationBridge(config, **bridge_paths)

        await bridge.launch_if_needed()

        spawn.assert_called_once()

    @pytest.mark.asyncio
    async def test_stale_pid_spawns(self, socket_dir, bridge_paths, spawn):
        bridge_paths["pid_path"].parent.mkdir(parents=True)
        bridge_paths["pid_path"].write_text("999999\n0\n")
        config = _service_config(socket_dir, launch_timeout=0.05)
        bridge = CommunicationBridge(config, **bridge_paths)

        await bridge.launch_if_needed()

        spawn.assert_called_once()


class TestLsrelayCommand:
    def test_prefers_installed_script(self, monkeypatch):
        monkeypatch.setattr(
            "lsrelay.service.launcher.shutil.which", lambda name: "/usr/bin/lsrelay"
        )
        assert _get_lsrelay_command() == ["/usr/bin/lsrelay"]

    def test_falls_back_to_module(self, monkeypatch):
        monkeypatch.setattr("lsrelay.service.launcher.shutil.which", lambda name: None)
        assert _get_lsrelay_command() == [sys.executable, "-m", "lsrelay"]
