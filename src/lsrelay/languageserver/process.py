"""Language server running as a child process.

Owns the child's lifetime, speaks JSON-RPC over its stdio, intercepts a fixed
set of inbound messages (see MessageRouter) and tracks outgoing request ids so
conversation turns and completion cycling can be cancelled later.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

from pydantic import ValidationError

from lsrelay.errors import ServerUnavailableError
from lsrelay.languageserver import messages
from lsrelay.languageserver.jsonrpc import (
    JSONRPCEngine,
    NotificationHandler,
    Reply,
    RequestHandler,
)
from lsrelay.languageserver.router import MessageRouter, ServerRequest
from lsrelay.languageserver.transport import (
    InspectingTransport,
    MessageFraming,
    StdioTransport,
)
from lsrelay.protocol import RequestId, RPCNotification, RPCRequest
from lsrelay.publisher import Publisher
from lsrelay.status import StatusStore

logger = logging.getLogger(__name__)

_TERMINATE_TIMEOUT_SECONDS = 5.0


class RequestTracker:
    """Correlation of outgoing requests for later cancellation.

    Conversation requests are keyed by their workDoneToken. Completion cycling
    requests accumulate in an ordered group that is only cancelled as a whole.
    Each collection has its own lock, never held across an await.
    """

    def __init__(self) -> None:
        self._conversation_lock = asyncio.Lock()
        self._completion_lock = asyncio.Lock()
        self._conversation_ids: dict[str, RequestId] = {}
        self._completion_ids: list[RequestId] = []

    @property
    def conversation_request_ids(self) -> dict[str, RequestId]:
        return dict(self._conversation_ids)

    @property
    def completion_request_ids(self) -> list[RequestId]:
        return list(self._completion_ids)

    async def record(self, request: RPCRequest) -> None:
        if request.method == messages.GET_COMPLETIONS_CYCLING:
            async with self._completion_lock:
                self._completion_ids.append(request.id)
        elif request.method in messages.WORK_DONE_TOKEN_METHODS:
            try:
                params = messages.WorkDoneParams.model_validate(request.params)
            except ValidationError as e:
                logger.error(
                    "Error decoding %s params: %s",
                    request.method,
                    e.errors(include_url=False),
                )
                return
            async with self._conversation_lock:
                self._conversation_ids[params.work_done_token] = request.id

    async def forget(self, request_id: RequestId) -> None:
        """Drop token entries for a request that received its response."""
        async with self._conversation_lock:
            for token in [
                token
                for token, tracked_id in self._conversation_ids.items()
                if tracked_id == request_id
            ]:
                del self._conversation_ids[token]

    async def cancel_completions(
        self, cancel: Callable[[RequestId], Awaitable[None]]
    ) -> None:
        """Run ``cancel`` for every completion id in order and clear the group.

        The group is taken under the lock and cancelled after releasing it,
        so recording a new request never waits behind the cancel sends.
        """
        async with self._completion_lock:
            request_ids, self._completion_ids = self._completion_ids, []
        for request_id in request_ids:
            await cancel(request_id)

    async def lookup(self, work_done_token: str) -> RequestId | None:
        async with self._conversation_lock:
            return self._conversation_ids.get(work_done_token)


class LocalProcessServer:
    """JSON-RPC client bound to one language server child process.

    Example:
        server = LocalProcessServer("/usr/bin/language-server", ["--stdio"])
        await server.start()
        version = await server.send_request("getVersion")
        await server.terminate()
    """

    def __init__(
        self,
        path: str,
        arguments: Sequence[str] = (),
        environment: Mapping[str, str] | None = None,
        *,
        status: StatusStore | None = None,
        framing: MessageFraming | None = None,
        log_messages: bool = False,
    ) -> None:
        self._path = path
        self._arguments = list(arguments)
        self._environment = dict(environment) if environment is not None else None
        self._framing = framing
        self._owns_status = status is None
        self.status = status or StatusStore()
        self.notification_publisher: Publisher[RPCNotification] = Publisher(
            "notifications"
        )
        self.server_request_publisher: Publisher[ServerRequest] = Publisher(
            "server_requests"
        )
        self.router = MessageRouter(
            self.status,
            notification_publisher=self.notification_publisher,
            server_request_publisher=self.server_request_publisher,
        )
        self.tracker = RequestTracker()
        self.request_handler: RequestHandler | None = None
        self.notification_handler: NotificationHandler | None = None
        self.termination_handler: Callable[[], None] | None = None
        self._log_messages = log_messages
        self._process: asyncio.subprocess.Process | None = None
        self._transport: InspectingTransport | None = None
        self._engine: JSONRPCEngine | None = None
        self._watchers: list[asyncio.Task[None]] = []
        self._terminated = False

    @property
    def is_running(self) -> bool:
        return (
            self._process is not None
            and self._process.returncode is None
            and not self._terminated
        )

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def engine(self) -> JSONRPCEngine | None:
        return self._engine

    @property
    def log_messages(self) -> bool:
        return self._engine.log_messages if self._engine is not None else False

    @log_messages.setter
    def log_messages(self, value: bool) -> None:
        self._log_messages = value
        if self._engine is not None:
            self._engine.log_messages = value

    @property
    def ongoing_completion_request_ids(self) -> list[RequestId]:
        return self.tracker.completion_request_ids

    @property
    def ongoing_conversation_request_ids(self) -> dict[str, RequestId]:
        return self.tracker.conversation_request_ids

    async def start(self) -> None:
        """Launch the child process and start reading its output.

        Raises:
            ServerUnavailableError: If the executable cannot be started.
        """
        if self._process is not None:
            raise RuntimeError("Language server already started")

        logger.info("Starting language server", extra={"path": self._path})
        try:
            self._process = await asyncio.create_subprocess_exec(
                self._path,
                *self._arguments,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._environment,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ServerUnavailableError(
                f"Language server could not be started: {e}"
            ) from None

        assert self._process.stdout is not None
        assert self._process.stdin is not None
        transport = InspectingTransport(
            StdioTransport(self._process.stdout, self._process.stdin, self._framing)
        )
        # Ids are only visible here, right before the request hits the wire.
        transport.on_write_request = self.tracker.record
        transport.on_read_response = self.tracker.forget
        self._transport = transport

        engine = JSONRPCEngine(transport, log_messages=self._log_messages)
        engine.request_handler = self._handle_request
        engine.notification_handler = self._handle_notification
        self._engine = engine
        engine.start()

        self._watchers.append(asyncio.create_task(self._watch_process()))
        if self._process.stderr is not None:
            self._watchers.append(
                asyncio.create_task(self._log_stderr(self._process.stderr))
            )

    async def send_request(self, method: str, params: Any = None) -> Any:
        """Send a request and wait for its result.

        Raises:
            ServerUnavailableError: If the process is not running or exits
                before answering.
            RemoteError: If the server answered with an error.
        """
        engine = self._require_engine()
        return await engine.send_request(method, params)

    async def send_notification(self, method: str, params: Any = None) -> None:
        engine = self._require_engine()
        await engine.send_notification(method, params)

    async def send_copilot_notification(
        self, notification: messages.CopilotClientNotification
    ) -> None:
        """Send a provider-specific client notification."""
        engine = self._require_engine()
        await engine.send_notification(
            notification.method, notification.params_dict()
        )

    async def cancel_task(self, request_id: RequestId) -> None:
        """Ask the server to cancel one request. No-op if not running."""
        engine = self._engine
        if engine is None or not self.is_running:
            return
        try:
            await engine.send_notification(messages.CANCEL_REQUEST, {"id": request_id})
        except ServerUnavailableError:
            logger.debug("Cancel not delivered", extra={"id": request_id})

    async def cancel_ongoing_tasks(self) -> None:
        """Cancel every tracked completion cycling request, then forget them."""
        await self.tracker.cancel_completions(self.cancel_task)

    async def cancel_ongoing_task(self, work_done_token: str) -> None:
        """Cancel the request started for a conversation workflow token."""
        request_id = await self.tracker.lookup(work_done_token)
        if request_id is None:
            return
        await self.cancel_task(request_id)

    async def terminate(self) -> None:
        """Stop the child process and fail every pending request."""
        process = self._process
        if process is not None and process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(
                    process.wait(), timeout=_TERMINATE_TIMEOUT_SECONDS
                )
            except TimeoutError:
                logger.warning("Language server did not exit, killing it")
                process.kill()
                await process.wait()
        self._process_terminated()
        for watcher in self._watchers:
            if watcher is not asyncio.current_task():
                watcher.cancel()
        self._watchers.clear()

    def _require_engine(self) -> JSONRPCEngine:
        engine = self._engine
        if engine is None or not self.is_running:
            raise ServerUnavailableError()
        return engine

    def _process_terminated(self) -> None:
        if self._terminated:
            return
        self._terminated = True
        returncode = self._process.returncode if self._process is not None else None
        logger.info("Language server terminated", extra={"returncode": returncode})

        if self._transport is not None:
            self._transport.close()
        # Releasing the engine fails pending requests now instead of leaving
        # them waiting on a reader that will never deliver.
        if self._engine is not None:
            self._engine.close(ServerUnavailableError())
            self._engine = None

        if self._owns_status:
            self.status.close()

        handler = self.termination_handler
        if handler is not None:
            try:
                handler()
            except Exception:
                logger.exception("Termination handler failed")

    async def _watch_process(self) -> None:
        assert self._process is not None
        await self._process.wait()
        self._process_terminated()

    async def _log_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                logger.debug("[language-server] %s", text)

    async def _handle_notification(self, notification: RPCNotification) -> bool:
        if await self.router.handle_notification(notification):
            return True
        handler = self.notification_handler
        if handler is None:
            return False
        return await handler(notification)

    async def _handle_request(self, request: RPCRequest, reply: Reply) -> bool:
        if await self.router.handle_request(request, reply):
            return True
        handler = self.request_handler
        if handler is None:
            return False
        return await handler(request, reply)
