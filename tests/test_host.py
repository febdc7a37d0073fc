"""End-to-end tests: client -> service host -> language server child."""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any

import pytest

from lsrelay import __build__, __version__
from lsrelay.config import LanguageServerConfig, RelayConfig, ServiceConfig
from lsrelay.errors import ExtensionServiceCallError, RemoteError
from lsrelay.protocol import ErrorCode
from lsrelay.service import ExtensionServiceClient
from lsrelay.service.host import ServiceHost
from lsrelay.service.launcher import is_listening
from lsrelay.service.pid import read_pid_file
from lsrelay.status import LanguageServerStatus, StatusKind

from tests.conftest import (
    FakeLauncher,
    ListModels,
    ModelInfo,
    ModelList,
    settle,
)


def _config(socket_dir, language_server_path: str | None = "/opt/ls/bin"):
    return RelayConfig(
        language_server=LanguageServerConfig(
            path=language_server_path, arguments=["--stdio"]
        ),
        service=ServiceConfig(socket_path=socket_dir / "service.sock"),
    )


async def _wait_for_process(fake_exec, count: int = 1):
    for _ in range(200):
        if len(fake_exec.processes) >= count:
            return fake_exec.processes[count - 1]
        await asyncio.sleep(0.01)
    raise AssertionError("language server was not started")


@pytest.fixture
async def host(socket_dir, tmp_path, fake_exec):
    host = ServiceHost(_config(socket_dir), pid_path=tmp_path / "service.pid")
    await host.start()
    yield host
    await host.stop()


@pytest.fixture
async def client(host):
    client = ExtensionServiceClient(FakeLauncher(str(host.server.socket_path)))
    yield client
    await client.close()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_writes_pid_and_stop_cleans_up(self, socket_dir, tmp_path):
        pid_path = tmp_path / "service.pid"
        host = ServiceHost(_config(socket_dir), pid_path=pid_path)

        await host.start()
        record = read_pid_file(pid_path)
        assert record.pid == os.getpid()
        assert record.socket_path == host.server.socket_path
        assert await is_listening(host.server.socket_path)

        await host.stop()
        assert not pid_path.exists()
        assert not host.server.socket_path.exists()

    @pytest.mark.asyncio
    async def test_quit_ends_serve_forever(self, socket_dir, tmp_path):
        host = ServiceHost(_config(socket_dir), pid_path=tmp_path / "service.pid")
        serving = asyncio.create_task(host.serve_forever())
        for _ in range(100):
            if await is_listening(host.server.socket_path):
                break
            await asyncio.sleep(0.01)

        client = ExtensionServiceClient(FakeLauncher(str(host.server.socket_path)))
        await client.get_service_version()
        await client.quit_service()

        await asyncio.wait_for(serving, timeout=2)
        assert not host.server.is_running
        await client.close()

    @pytest.mark.asyncio
    async def test_stop_terminates_language_server(self, host, fake_exec):
        await host.language_server()
        process = fake_exec.process

        await host.stop()

        assert process.returncode is not None
        assert host.current_language_server is None


class TestServiceOperations:
    @pytest.mark.asyncio
    async def test_service_version(self, client):
        assert await client.get_service_version() == (__version__, __build__)

    @pytest.mark.asyncio
    async def test_post_notification_is_published(self, host, client):
        names = []
        host.notifications.subscribe(names.append)

        await client.post_notification("chatOpened")

        assert names == ["chatOpened"]

    @pytest.mark.asyncio
    async def test_unregistered_operations_are_method_not_found(self, client):
        with pytest.raises(ExtensionServiceCallError) as exc_info:
            await client.get_suggested_code({"uri": "file:///a.py"})

        assert isinstance(exc_info.value.error, RemoteError)
        assert exc_info.value.error.error_code == ErrorCode.METHOD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_registered_method_is_served(self, host, client):
        async def permission(params: dict[str, Any]) -> dict[str, Any]:
            return {"status": "granted"}

        host.register_method("getExtensionPermission", permission)

        assert await client.get_extension_permission() == "granted"


class TestEndpoints:
    @pytest.mark.asyncio
    async def test_send_reaches_endpoint_handler(self, host, client):
        bodies = []

        async def list_models(body: bytes) -> bytes:
            bodies.append(json.loads(body))
            return b'{"models": [{"id": "gpt"}]}'

        host.register_endpoint("models/list", list_models)

        response = await client.send(ListModels())

        assert response == ModelList(models=[ModelInfo(id="gpt")])
        assert bodies == [{"scope": "chat"}]

    @pytest.mark.asyncio
    async def test_unknown_endpoint(self, client):
        with pytest.raises(ExtensionServiceCallError) as exc_info:
            await client.send(ListModels())

        assert exc_info.value.error.error_code == ErrorCode.METHOD_NOT_FOUND
        assert "models/list" in str(exc_info.value)


class TestLanguageServerForwarding:
    @pytest.mark.asyncio
    async def test_version_starts_language_server(self, client, fake_exec):
        task = asyncio.create_task(client.get_language_server_version())
        process = await _wait_for_process(fake_exec)

        sent = await process.wait_for_sent(1)
        assert sent[0]["method"] == "getVersion"
        process.respond(sent[0]["id"], {"version": "1.300.0"})

        assert await task == "1.300.0"
        args, _ = fake_exec.calls[0]
        assert args == ("/opt/ls/bin", "--stdio")

    @pytest.mark.asyncio
    async def test_version_without_language_server(self, socket_dir, tmp_path):
        host = ServiceHost(
            _config(socket_dir, language_server_path=None),
            pid_path=tmp_path / "service.pid",
        )
        await host.start()
        client = ExtensionServiceClient(FakeLauncher(str(host.server.socket_path)))
        try:
            assert await client.get_language_server_version() is None
        finally:
            await client.close()
            await host.stop()

    @pytest.mark.asyncio
    async def test_language_server_restarts_after_exit(self, host, fake_exec):
        first = await host.language_server()
        fake_exec.process.exit(1)
        await settle()
        assert not first.is_running

        second = await host.language_server()

        assert second is not first
        assert second.is_running
        assert len(fake_exec.processes) == 2

    @pytest.mark.asyncio
    async def test_auth_status(self, client, fake_exec):
        task = asyncio.create_task(client.get_auth_status())
        process = await _wait_for_process(fake_exec)

        sent = await process.wait_for_sent(1)
        assert sent[0]["method"] == "checkStatus"
        process.respond(sent[0]["id"], {"status": "OK", "user": "octocat"})

        assert await task == {"status": "OK", "user": "octocat"}

    @pytest.mark.asyncio
    async def test_sign_out_all_forwards_sign_out(self, client, fake_exec):
        await client.sign_out_all()
        process = await _wait_for_process(fake_exec)

        sent = await process.wait_for_sent(1)
        assert sent[0]["method"] == "signOut"

    @pytest.mark.asyncio
    async def test_status_updates_reach_host_store(self, host, fake_exec):
        await host.language_server()
        changes = []
        host.status.changes.subscribe(changes.append)

        fake_exec.process.send(
            {
                "jsonrpc": "2.0",
                "method": "didChangeStatus",
                "params": {"kind": "Warning", "busy": True, "message": "Quota"},
            }
        )
        await settle()
        await host.current_language_server.router.wait_idle()

        expected = LanguageServerStatus(StatusKind.WARNING, True, "Quota")
        assert host.status.language_server == expected
        assert changes == [expected]
