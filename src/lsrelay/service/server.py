"""Unix domain socket JSON-RPC server for the extension service."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from lsrelay.errors import RemoteError, ServerUnavailableError
from lsrelay.protocol import (
    ErrorCode,
    RPCNotification,
    RPCRequest,
    RPCResponse,
    parse_message,
    read_message,
)

logger = logging.getLogger(__name__)

# Type for RPC method handlers
RPCHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class ExtensionServiceServer:
    """Unix domain socket RPC server using JSON-RPC 2.0.

    Requests on one connection are handled concurrently; responses go out as
    each handler finishes, matched to requests by id.
    """

    def __init__(self, socket_path: Path):
        """Initialize RPC server.

        Args:
            socket_path: Path to the Unix domain socket.
        """
        self._socket_path = socket_path
        self._server: asyncio.Server | None = None
        self._methods: dict[str, RPCHandler] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._writers: set[asyncio.StreamWriter] = set()
        self._running = False

    def register(self, method: str, handler: RPCHandler) -> None:
        """Register an RPC method handler.

        Args:
            method: Method name (e.g., "getServiceVersion").
            handler: Async function that takes params dict and returns result.
        """
        self._methods[method] = handler

    async def start(self) -> None:
        """Start the RPC server."""
        self._socket_path.parent.mkdir(parents=True, exist_ok=True)

        # Remove stale socket
        self._socket_path.unlink(missing_ok=True)

        self._server = await asyncio.start_unix_server(
            self._handle_connection,
            path=str(self._socket_path),
        )

        # Owner only
        self._socket_path.chmod(0o600)

        self._running = True
        logger.info("RPC server started", extra={"socket": str(self._socket_path)})

    async def stop(self) -> None:
        """Stop the RPC server."""
        self._running = False

        if self._server:
            self._server.close()
            # wait_closed also waits for open client connections
            for writer in list(self._writers):
                writer.close()
            await self._server.wait_closed()
            self._server = None

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._socket_path.unlink(missing_ok=True)

        logger.info("RPC server stopped")

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle a client connection."""
        write_lock = asyncio.Lock()
        self._writers.add(writer)
        connection_tasks: set[asyncio.Task[None]] = set()

        async def respond(data: bytes) -> None:
            response = await self._process_message(data)
            if response is None:
                return
            async with write_lock:
                try:
                    writer.write(response.to_bytes())
                    await writer.drain()
                except (ConnectionError, OSError):
                    logger.debug(
                        "Client went away before response", extra={"id": response.id}
                    )

        try:
            while self._running:
                data = await read_message(reader)
                if data is None:
                    break
                task = asyncio.create_task(respond(data))
                connection_tasks.add(task)
                self._tasks.add(task)
                task.add_done_callback(connection_tasks.discard)
                task.add_done_callback(self._tasks.discard)

        except (ConnectionError, ValueError) as e:
            logger.warning("RPC connection error", extra={"error": str(e)})
        except Exception:
            logger.exception("Error handling RPC connection")
        finally:
            for task in connection_tasks:
                task.cancel()
            self._writers.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _process_message(self, data: bytes) -> RPCResponse | None:
        """Process a single RPC message. Notifications get no response."""
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            return RPCResponse.error_response(
                None, ErrorCode.PARSE_ERROR, f"Parse error: {e}"
            )

        try:
            message = parse_message(payload)
        except ValueError as e:
            return RPCResponse.error_response(
                payload.get("id") if isinstance(payload, dict) else None,
                ErrorCode.INVALID_REQUEST,
                str(e),
            )

        if isinstance(message, RPCResponse):
            logger.debug("Ignoring response sent to server", extra={"id": message.id})
            return None

        if isinstance(message, RPCNotification):
            try:
                await self._invoke(message.method, message.params)
            except Exception:
                logger.exception(
                    "RPC notification error", extra={"method": message.method}
                )
            return None

        return await self._process_request(message)

    async def _process_request(self, request: RPCRequest) -> RPCResponse:
        request_id = request.id

        if request.jsonrpc != "2.0":
            return RPCResponse.error_response(
                request_id, ErrorCode.INVALID_REQUEST, "Invalid JSON-RPC version"
            )

        if not request.method:
            return RPCResponse.error_response(
                request_id, ErrorCode.INVALID_REQUEST, "Missing method"
            )

        if request.method not in self._methods:
            return RPCResponse.error_response(
                request_id,
                ErrorCode.METHOD_NOT_FOUND,
                f"Method not found: {request.method}",
            )

        try:
            result = await self._invoke(request.method, request.params)
            return RPCResponse.success(request_id, result)
        except RemoteError as e:
            return RPCResponse.error_response(
                request_id, e.error_code, e.message, e.data
            )
        except ServerUnavailableError as e:
            return RPCResponse.error_response(
                request_id, ErrorCode.SERVER_NOT_INITIALIZED, str(e)
            )
        except (TypeError, ValueError) as e:
            return RPCResponse.error_response(
                request_id, ErrorCode.INVALID_PARAMS, f"Invalid params: {e}"
            )
        except Exception as e:
            logger.exception("RPC method error", extra={"method": request.method})
            return RPCResponse.error_response(
                request_id, ErrorCode.INTERNAL_ERROR, str(e)
            )

    async def _invoke(self, method: str, params: Any) -> Any:
        handler = self._methods.get(method)
        if handler is None:
            logger.debug("No handler for notification", extra={"method": method})
            return None
        if not isinstance(params, dict):
            raise TypeError("params must be an object")
        return await handler(params)

    @property
    def socket_path(self) -> Path:
        """Get the socket path."""
        return self._socket_path

    @property
    def is_running(self) -> bool:
        """Check if server is running."""
        return self._running
