"""Extension service process.

ServiceHost serves the extension service interface on a Unix socket and owns
the language server child. The child is started on first use and started
again on the next use after it exits.
"""

import asyncio
import json
import logging
import os
import signal
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from lsrelay import __build__, __version__
from lsrelay.config.models import ConfigError, RelayConfig
from lsrelay.config.paths import get_pid_path
from lsrelay.errors import RemoteError, ServerUnavailableError
from lsrelay.languageserver import LocalProcessServer, messages
from lsrelay.protocol import ErrorCode, decode_data, encode_data
from lsrelay.publisher import Publisher
from lsrelay.service.interface import Method
from lsrelay.service.pid import remove_pid_file, write_pid_file
from lsrelay.service.server import ExtensionServiceServer, RPCHandler
from lsrelay.status import StatusStore

logger = logging.getLogger(__name__)

# Handler for a generic ``send`` endpoint: request body in, response body out.
EndpointHandler = Callable[[bytes], Awaitable[bytes | None]]

# Delay between answering ``quit`` and shutting down, so the reply is flushed.
_QUIT_DELAY_SECONDS = 0.05


def _json_bytes(value: Any) -> bytes | None:
    return json.dumps(value).encode() if value is not None else None


class ServiceHost:
    """Runs the extension service side of the relay."""

    def __init__(self, config: RelayConfig, *, pid_path: Path | None = None) -> None:
        self._config = config
        self._pid_path = pid_path or get_pid_path()
        self._server = ExtensionServiceServer(config.service.socket_path)
        self.status = StatusStore()
        self.notifications: Publisher[str] = Publisher("service_notifications")
        self._endpoints: dict[str, EndpointHandler] = {}
        self._language_server: LocalProcessServer | None = None
        self._language_server_lock = asyncio.Lock()
        self._stop_requested = asyncio.Event()
        self._register_methods()

    @property
    def server(self) -> ExtensionServiceServer:
        return self._server

    @property
    def current_language_server(self) -> LocalProcessServer | None:
        return self._language_server

    def register_method(self, method: str, handler: RPCHandler) -> None:
        """Serve an additional interface operation (e.g. the suggestion calls)."""
        self._server.register(method, handler)

    def register_endpoint(self, endpoint: str, handler: EndpointHandler) -> None:
        """Serve one endpoint of the generic ``send`` operation."""
        self._endpoints[endpoint] = handler

    async def language_server(self) -> LocalProcessServer:
        """Get the running language server, starting it if needed.

        Raises:
            ServerUnavailableError: If no server is configured or it fails
                to start.
        """
        async with self._language_server_lock:
            current = self._language_server
            if current is not None and current.is_running:
                return current

            settings = self._config.language_server
            try:
                path = self._config.require_language_server_path()
            except ConfigError as e:
                raise ServerUnavailableError(str(e)) from None

            server = LocalProcessServer(
                path,
                settings.arguments,
                settings.environment,
                status=self.status,
                log_messages=settings.log_messages,
            )
            server.termination_handler = self._language_server_terminated
            await server.start()
            self._language_server = server
            return server

    async def start(self) -> None:
        await self._server.start()
        write_pid_file(self._pid_path, self._server.socket_path)
        logger.info(
            "Extension service started",
            extra={"socket": str(self._server.socket_path), "version": __version__},
        )

    async def stop(self) -> None:
        await self._server.stop()
        async with self._language_server_lock:
            server, self._language_server = self._language_server, None
        if server is not None:
            await server.terminate()
        self.status.close()
        self.notifications.close()
        remove_pid_file(self._pid_path, pid=os.getpid())
        logger.info("Extension service stopped")

    def request_stop(self) -> None:
        self._stop_requested.set()

    async def serve_forever(self) -> None:
        """Serve until ``quit`` or SIGTERM/SIGINT, then clean up."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_stop)

        await self.start()
        try:
            await self._stop_requested.wait()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            await self.stop()

    def _language_server_terminated(self) -> None:
        logger.warning("Language server exited")

    def _register_methods(self) -> None:
        register = self._server.register
        register(Method.GET_SERVICE_VERSION, self._get_service_version)
        register(Method.GET_LANGUAGE_SERVER_VERSION, self._get_language_server_version)
        register(Method.POST_NOTIFICATION, self._post_notification)
        register(Method.QUIT, self._quit)
        register(Method.SEND, self._send)
        register(Method.GET_AUTH_STATUS, self._get_auth_status)
        register(Method.SIGN_OUT_ALL, self._sign_out_all)

    async def _get_service_version(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"version": __version__, "build": __build__}

    async def _get_language_server_version(
        self, params: dict[str, Any]
    ) -> dict[str, Any]:
        try:
            server = await self.language_server()
        except ServerUnavailableError as e:
            logger.info("Language server version unavailable: %s", e)
            return {"version": None}
        result = await server.send_request(messages.GET_VERSION, {})
        version = result.get("version") if isinstance(result, dict) else None
        return {"version": version}

    async def _post_notification(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        if not isinstance(name, str):
            raise ValueError("name must be a string")
        self.notifications.send(name)
        return {}

    async def _quit(self, params: dict[str, Any]) -> dict[str, Any]:
        asyncio.get_running_loop().call_later(_QUIT_DELAY_SECONDS, self.request_stop)
        return {}

    async def _send(self, params: dict[str, Any]) -> dict[str, Any]:
        endpoint = params.get("endpoint")
        handler = self._endpoints.get(endpoint) if isinstance(endpoint, str) else None
        if handler is None:
            raise RemoteError(
                ErrorCode.METHOD_NOT_FOUND, f"Endpoint not found: {endpoint}"
            )
        body = decode_data(params.get("requestBody")) or b""
        return {"data": encode_data(await handler(body))}

    async def _get_auth_status(self, params: dict[str, Any]) -> dict[str, Any]:
        server = await self.language_server()
        result = await server.send_request(messages.CHECK_STATUS, {})
        return {"data": encode_data(_json_bytes(result))}

    async def _sign_out_all(self, params: dict[str, Any]) -> None:
        server = await self.language_server()
        await server.send_request(messages.SIGN_OUT, {})

