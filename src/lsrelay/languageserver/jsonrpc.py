"""JSON-RPC 2.0 engine over a message transport.

Assigns request ids, correlates responses by id and dispatches inbound
requests and notifications to installable handlers.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from lsrelay.errors import (
    ContinuationAlreadyResolvedError,
    RemoteError,
    ServerUnavailableError,
)
from lsrelay.languageserver.transport import MessageTransport
from lsrelay.protocol import (
    ErrorCode,
    RequestId,
    RPCNotification,
    RPCRequest,
    RPCResponse,
    parse_message,
)

logger = logging.getLogger(__name__)

# Reply callback handed to inbound request handlers; callable once.
Reply = Callable[[RPCResponse], None]
RequestHandler = Callable[[RPCRequest, Reply], Awaitable[bool]]
NotificationHandler = Callable[[RPCNotification], Awaitable[bool]]


class JSONRPCEngine:
    """Request/response correlation over one transport.

    Handlers return True when they claimed the message. An unclaimed request
    is answered with MethodNotFound; an unclaimed notification is dropped.
    """

    def __init__(self, transport: MessageTransport, *, log_messages: bool = False):
        self._transport = transport
        self._ids = itertools.count(1)
        self._pending: dict[RequestId, asyncio.Future[RPCResponse]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._reader_task: asyncio.Task[None] | None = None
        self._closed = False
        self.request_handler: RequestHandler | None = None
        self.notification_handler: NotificationHandler | None = None
        self.log_messages = log_messages

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def pending_request_ids(self) -> list[RequestId]:
        return list(self._pending)

    def start(self) -> None:
        """Start reading inbound messages."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop())

    async def send_request(self, method: str, params: Any = None) -> Any:
        """Send a request and wait for its response.

        Raises:
            RemoteError: If the server answered with an error object.
            ServerUnavailableError: If the engine closed before a response.
        """
        if self._closed:
            raise ServerUnavailableError()

        request_id = next(self._ids)
        future: asyncio.Future[RPCResponse] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[request_id] = future
        request = RPCRequest(
            method=method,
            params=params if params is not None else {},
            id=request_id,
        )
        try:
            await self._write(request.to_dict())
            response = await future
        finally:
            self._pending.pop(request_id, None)

        if response.error is not None:
            raise RemoteError(
                response.error.code, response.error.message, response.error.data
            )
        return response.result

    async def send_notification(self, method: str, params: Any = None) -> None:
        if self._closed:
            raise ServerUnavailableError()
        await self._write(RPCNotification(method=method, params=params).to_dict())

    def close(self, error: BaseException | None = None) -> None:
        """Stop reading and fail every pending request.

        Idempotent. Pending futures are failed before this returns.
        """
        if self._closed:
            return
        self._closed = True
        error = error or ServerUnavailableError()
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(error)
        self._pending.clear()
        if self._reader_task is not None and self._reader_task is not _current_task():
            self._reader_task.cancel()
        self._transport.close()

    async def _write(self, message: dict[str, Any]) -> None:
        if self.log_messages:
            logger.debug("--> %s", message)
        try:
            await self._transport.write_message(message)
        except (ConnectionError, OSError) as e:
            raise ServerUnavailableError(f"Language server is not running: {e}") from e

    async def _read_loop(self) -> None:
        try:
            while not self._closed:
                message = await self._transport.read_message()
                if message is None:
                    break
                if self.log_messages:
                    logger.debug("<-- %s", message)
                await self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Language server read loop failed")
        finally:
            self.close(ServerUnavailableError("Language server closed the connection"))

    async def _dispatch(self, payload: dict[str, Any]) -> None:
        try:
            message = parse_message(payload)
        except ValueError as e:
            logger.warning("Dropping malformed message: %s", e)
            return

        if isinstance(message, RPCResponse):
            future = self._pending.get(message.id) if message.id is not None else None
            if future is None or future.done():
                logger.debug("Response for unknown request", extra={"id": message.id})
                return
            future.set_result(message)
        elif isinstance(message, RPCNotification):
            await self._handle_notification(message)
        else:
            task = asyncio.create_task(self._handle_request(message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _handle_notification(self, notification: RPCNotification) -> None:
        handler = self.notification_handler
        if handler is None:
            return
        try:
            handled = await handler(notification)
        except Exception:
            logger.exception(
                "Notification handler failed", extra={"method": notification.method}
            )
            return
        if not handled:
            logger.debug(
                "Unhandled notification", extra={"method": notification.method}
            )

    async def _handle_request(self, request: RPCRequest) -> None:
        reply = self._make_reply(request)
        handler = self.request_handler
        try:
            handled = await handler(request, reply) if handler is not None else False
        except Exception as e:
            logger.exception("Request handler failed", extra={"method": request.method})
            if not reply.sent:
                reply(
                    RPCResponse.error_response(
                        request.id, ErrorCode.INTERNAL_ERROR, str(e)
                    )
                )
            return
        if not handled and not reply.sent:
            reply(
                RPCResponse.error_response(
                    request.id,
                    ErrorCode.METHOD_NOT_FOUND,
                    f"Method not found: {request.method}",
                )
            )

    def _make_reply(self, request: RPCRequest) -> _ReplyOnce:
        return _ReplyOnce(self, request.id)

    def _schedule_write(self, message: dict[str, Any]) -> None:
        if self._closed:
            logger.debug(
                "Dropping reply, engine closed", extra={"id": message.get("id")}
            )
            return
        task = asyncio.create_task(self._write_reply(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _write_reply(self, message: dict[str, Any]) -> None:
        try:
            await self._write(message)
        except ServerUnavailableError:
            logger.debug("Reply not delivered", extra={"id": message.get("id")})


class _ReplyOnce:
    """Reply callback for one inbound request."""

    def __init__(self, engine: JSONRPCEngine, request_id: RequestId) -> None:
        self._engine = engine
        self._request_id = request_id
        self.sent = False

    def __call__(self, response: RPCResponse) -> None:
        if self.sent:
            raise ContinuationAlreadyResolvedError(
                f"request {self._request_id!r} answered more than once"
            )
        self.sent = True
        response.id = self._request_id
        self._engine._schedule_write(response.to_dict())


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
