"""Live connection to the extension service and its remote proxy.

A ServiceConnection owns one Unix socket to the service. Requests are
length-prefixed JSON-RPC frames; replies are matched by id and delivered to
the callback registered for the request. When the socket goes away every
outstanding callback and every tracked continuation fails with
ConnectionInvalidatedError, and the delegate is told so it can drop the
connection.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

from lsrelay.errors import (
    ConnectionInvalidatedError,
    ContinuationAlreadyResolvedError,
    DecodeError,
    RemoteError,
)
from lsrelay.protocol import (
    RPCNotification,
    RPCRequest,
    RPCResponse,
    decode_data,
    encode_data,
    encode_frame,
    parse_message,
    read_message,
)
from lsrelay.service.interface import (
    SUGGESTION_METHODS,
    DataReply,
    ErrorReply,
    Method,
    StringReply,
    VersionReply,
)

if TYPE_CHECKING:
    from lsrelay.continuation import Continuation

logger = logging.getLogger(__name__)

# Called with (result, None) on success or (None, error) on failure.
ResponseCallback = Callable[[Any, BaseException | None], None]


class ConnectionDelegate(Protocol):
    """Receives connection lifecycle events."""

    def connection_did_interrupt(self, connection: ServiceConnection) -> None:
        """The service side went away."""
        ...

    def connection_did_invalidate(self, connection: ServiceConnection) -> None:
        """The connection was closed locally or hit a protocol error."""
        ...


class ServiceConnection:
    """One socket connection to the extension service."""

    def __init__(
        self,
        endpoint: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        delegate: ConnectionDelegate | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._reader = reader
        self._writer = writer
        self.delegate = delegate
        self._ids = itertools.count(1)
        self._pending: dict[int, tuple[str, ResponseCallback]] = {}
        self._tracked: set[Continuation[Any]] = set()
        self._valid = True
        self._reader_task: asyncio.Task[None] | None = None
        self._remote_service = RemoteExtensionService(self)

    @classmethod
    async def open(
        cls, endpoint: str, delegate: ConnectionDelegate | None = None
    ) -> ServiceConnection | None:
        """Connect to the service listening on ``endpoint``.

        Returns None if nothing accepts connections there.
        """
        try:
            reader, writer = await asyncio.open_unix_connection(endpoint)
        except OSError as e:
            logger.warning(
                "Failed to connect to extension service",
                extra={"endpoint": endpoint, "error": str(e)},
            )
            return None
        connection = cls(endpoint, reader, writer, delegate)
        connection.start()
        logger.debug("Connected to extension service", extra={"endpoint": endpoint})
        return connection

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def is_valid(self) -> bool:
        return self._valid

    @property
    def remote_service(self) -> RemoteExtensionService:
        return self._remote_service

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop())

    def track(self, continuation: Continuation[Any]) -> None:
        self._tracked.add(continuation)

    def untrack(self, continuation: Continuation[Any]) -> None:
        self._tracked.discard(continuation)

    def invoke(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        callback: ResponseCallback | None = None,
    ) -> None:
        """Send one call. Without a callback it goes out as a notification."""
        if not self._valid:
            error = ConnectionInvalidatedError()
            if callback is not None:
                callback(None, error)
            self._reject_tracked(error)
            return

        if callback is None:
            message = RPCNotification(method=method, params=params or {}).to_dict()
        else:
            request_id = next(self._ids)
            self._pending[request_id] = (method, callback)
            message = RPCRequest(
                method=method, params=params or {}, id=request_id
            ).to_dict()

        try:
            self._writer.write(encode_frame(message))
        except (ConnectionError, RuntimeError) as e:
            logger.warning("Write to extension service failed", extra={"error": str(e)})
            self._invalidate(interrupted=True)

    async def close(self) -> None:
        """Close the socket, failing everything outstanding."""
        self._invalidate(interrupted=False)
        task = self._reader_task
        current = asyncio.current_task()
        if task is not None and not task.done() and task is not current:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    async def _read_loop(self) -> None:
        try:
            while self._valid:
                data = await read_message(self._reader)
                if data is None:
                    break
                try:
                    message = parse_message(json.loads(data))
                except ValueError as e:
                    logger.warning("Dropping invalid message from service: %s", e)
                    continue
                if isinstance(message, RPCResponse):
                    self._deliver(message)
                else:
                    logger.debug(
                        "Ignoring unsolicited %s from service",
                        type(message).__name__,
                    )
        except (ConnectionError, OSError, ValueError) as e:
            logger.warning(
                "Extension service connection error", extra={"error": str(e)}
            )
        finally:
            self._invalidate(interrupted=True)

    def _deliver(self, response: RPCResponse) -> None:
        entry = None
        if isinstance(response.id, int):
            entry = self._pending.pop(response.id, None)
        if entry is None:
            logger.warning("Response for unknown request", extra={"id": response.id})
            return
        method, callback = entry
        if response.error is not None:
            error = RemoteError(
                response.error.code, response.error.message, response.error.data
            )
            self._run_callback(method, callback, None, error)
        else:
            self._run_callback(method, callback, response.result, None)

    def _invalidate(self, *, interrupted: bool) -> None:
        if not self._valid:
            return
        self._valid = False
        self._writer.close()

        error = ConnectionInvalidatedError()
        pending, self._pending = self._pending, {}
        for method, callback in pending.values():
            self._run_callback(method, callback, None, error)
        self._reject_tracked(error)

        logger.info(
            "Extension service connection %s",
            "interrupted" if interrupted else "invalidated",
            extra={"endpoint": self._endpoint},
        )
        delegate = self.delegate
        if delegate is None:
            return
        if interrupted:
            delegate.connection_did_interrupt(self)
        else:
            delegate.connection_did_invalidate(self)

    def _reject_tracked(self, error: BaseException) -> None:
        for continuation in list(self._tracked):
            continuation.reject_if_pending(error)

    @staticmethod
    def _run_callback(
        method: str,
        callback: ResponseCallback,
        result: Any,
        error: BaseException | None,
    ) -> None:
        try:
            callback(result, error)
        except ContinuationAlreadyResolvedError:
            raise
        except Exception:
            logger.exception("Reply handler failed", extra={"method": method})


def _result_field(result: Any, key: str) -> Any:
    return result.get(key) if isinstance(result, dict) else None


def _data_callback(reply: DataReply) -> ResponseCallback:
    def handle(result: Any, error: BaseException | None) -> None:
        if error is not None:
            reply(None, error)
            return
        try:
            data = decode_data(_result_field(result, "data"))
        except ValueError as e:
            reply(None, DecodeError(str(e)))
            return
        reply(data, None)

    return handle


def _error_callback(reply: ErrorReply) -> ResponseCallback:
    def handle(result: Any, error: BaseException | None) -> None:
        reply(error)

    return handle


def _string_callback(reply: StringReply, key: str) -> ResponseCallback:
    def handle(result: Any, error: BaseException | None) -> None:
        if error is not None:
            reply(None, error)
            return
        value = _result_field(result, key)
        if value is not None and not isinstance(value, str):
            reply(None, DecodeError(f"{key} must be a string"))
            return
        reply(value, None)

    return handle


class RemoteExtensionService:
    """Proxy implementing ExtensionServiceProtocol over a ServiceConnection."""

    def __init__(self, connection: ServiceConnection) -> None:
        self._connection = connection

    @property
    def connection(self) -> ServiceConnection:
        return self._connection

    def get_service_version(self, reply: VersionReply) -> None:
        def handle(result: Any, error: BaseException | None) -> None:
            if error is not None:
                reply(None, error)
                return
            version = _result_field(result, "version")
            build = _result_field(result, "build")
            if not isinstance(version, str) or not isinstance(build, str):
                reply(None, DecodeError("version and build must be strings"))
                return
            reply((version, build), None)

        self._connection.invoke(Method.GET_SERVICE_VERSION, {}, handle)

    def get_language_server_version(self, reply: StringReply) -> None:
        self._connection.invoke(
            Method.GET_LANGUAGE_SERVER_VERSION, {}, _string_callback(reply, "version")
        )

    def get_extension_permission(self, reply: StringReply) -> None:
        self._connection.invoke(
            Method.GET_EXTENSION_PERMISSION, {}, _string_callback(reply, "status")
        )

    def suggestion_request(
        self, method: str, editor_content: bytes, reply: DataReply
    ) -> None:
        if method not in SUGGESTION_METHODS:
            raise ValueError(f"Not a suggestion method: {method}")
        self._connection.invoke(
            method,
            {"editorContent": encode_data(editor_content)},
            _data_callback(reply),
        )

    def custom_command(
        self, command_id: str, editor_content: bytes, reply: DataReply
    ) -> None:
        self._connection.invoke(
            Method.CUSTOM_COMMAND,
            {"id": command_id, "editorContent": encode_data(editor_content)},
            _data_callback(reply),
        )

    def toggle_realtime_suggestion(self, reply: ErrorReply) -> None:
        self._connection.invoke(
            Method.TOGGLE_REALTIME_SUGGESTION, {}, _error_callback(reply)
        )

    def prefetch_realtime_suggestions(
        self, editor_content: bytes, reply: ErrorReply
    ) -> None:
        self._connection.invoke(
            Method.PREFETCH_REALTIME_SUGGESTIONS,
            {"editorContent": encode_data(editor_content)},
            _error_callback(reply),
        )

    def open_chat(self, reply: ErrorReply) -> None:
        self._connection.invoke(Method.OPEN_CHAT, {}, _error_callback(reply))

    def quit(self, reply: ErrorReply) -> None:
        self._connection.invoke(Method.QUIT, {}, _error_callback(reply))

    def post_notification(self, name: str, reply: ErrorReply) -> None:
        self._connection.invoke(
            Method.POST_NOTIFICATION, {"name": name}, _error_callback(reply)
        )

    def send(self, endpoint: str, request_body: bytes, reply: DataReply) -> None:
        self._connection.invoke(
            Method.SEND,
            {"endpoint": endpoint, "requestBody": encode_data(request_body)},
            _data_callback(reply),
        )

    def get_inspector_data(self, reply: DataReply) -> None:
        self._connection.invoke(Method.GET_INSPECTOR_DATA, {}, _data_callback(reply))

    def get_mcp_tools_collections(self, reply: DataReply) -> None:
        self._connection.invoke(
            Method.GET_MCP_TOOLS_COLLECTIONS, {}, _data_callback(reply)
        )

    def update_mcp_tools_status(self, tools: bytes) -> None:
        self._connection.invoke(
            Method.UPDATE_MCP_TOOLS_STATUS, {"tools": encode_data(tools)}
        )

    def sign_out_all(self) -> None:
        self._connection.invoke(Method.SIGN_OUT_ALL, {})

    def get_auth_status(self, reply: DataReply) -> None:
        self._connection.invoke(Method.GET_AUTH_STATUS, {}, _data_callback(reply))

