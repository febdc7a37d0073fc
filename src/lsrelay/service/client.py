"""Connection manager for the extension service.

ExtensionServiceClient hides launching, connecting and reconnecting behind
plain async methods. It holds at most one live connection. When there is
none, the next call launches (or attaches to) the service, connects and
retries once. Interruption or invalidation drops the connection so the
following call starts over.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any, ClassVar

from pydantic import BaseModel, ValidationError

from lsrelay.continuation import Continuation, ServiceCall, with_service_connected
from lsrelay.errors import (
    ConnectionCreationError,
    ContinuationAlreadyResolvedError,
    DecodeError,
    EndpointUnavailableError,
    ExtensionServiceCallError,
    NoDataError,
    ServiceUnavailableError,
)
from lsrelay.service.connection import RemoteExtensionService, ServiceConnection
from lsrelay.service.interface import DataReply, ErrorReply, Method
from lsrelay.service.launcher import ServiceLauncher

logger = logging.getLogger(__name__)


class ExtensionServiceRequest(BaseModel):
    """Typed request for the generic ``send`` operation.

    Subclasses name the service endpoint and the model their response body
    decodes into:

        class ListModels(ExtensionServiceRequest):
            endpoint: ClassVar[str] = "models/list"
            response_model: ClassVar[type[BaseModel]] = ModelList

            scope: str = "chat"
    """

    endpoint: ClassVar[str]
    response_model: ClassVar[type[BaseModel]]


def _encode_json(value: Any) -> bytes:
    return json.dumps(value).encode()


def _decode_json(data: bytes) -> Any:
    try:
        return json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"Invalid JSON payload: {e}") from None


def _settle_void(continuation: Continuation[None]) -> ErrorReply:
    def reply(error: BaseException | None) -> None:
        if error is not None:
            continuation.reject(error)
        else:
            continuation.resume(None)

    return reply


def _settle_json(
    continuation: Continuation[Any], *, require_data: bool = False
) -> DataReply:
    def reply(data: bytes | None, error: BaseException | None) -> None:
        if error is not None:
            continuation.reject(error)
            return
        if data is None:
            if require_data:
                continuation.reject(NoDataError())
            else:
                continuation.resume(None)
            return
        try:
            value = _decode_json(data)
        except DecodeError as e:
            continuation.reject(e)
            return
        continuation.resume(value)

    return reply


def _settle_value(
    continuation: Continuation[Any],
) -> Callable[[Any, BaseException | None], None]:
    def reply(value: Any, error: BaseException | None) -> None:
        if error is not None:
            continuation.reject(error)
        else:
            continuation.resume(value)

    return reply


class ExtensionServiceClient:
    """Async client for the extension service.

    State changes (launching, connecting, dropping the connection) run under
    one lock. The lock is released before a call waits for its reply, so
    several calls can be in flight on the same connection.

    Errors:
        EndpointUnavailableError: the service could not be launched.
        ConnectionCreationError: no connection could be made to the endpoint.
        ConnectionInvalidatedError: the connection went away mid-call.
        ExtensionServiceCallError: the service answered with an error, or its
            answer could not be decoded. The original error is ``.error``.
    """

    def __init__(self, launcher: ServiceLauncher) -> None:
        self._launcher = launcher
        self._lock = asyncio.Lock()
        self._connection: ServiceConnection | None = None

    @property
    def connection(self) -> ServiceConnection | None:
        return self._connection

    @property
    def remote_service(self) -> RemoteExtensionService | None:
        connection = self._connection
        return connection.remote_service if connection is not None else None

    async def close(self) -> None:
        async with self._lock:
            connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()

    # ConnectionDelegate

    def connection_did_interrupt(self, connection: ServiceConnection) -> None:
        self._drop(connection)

    def connection_did_invalidate(self, connection: ServiceConnection) -> None:
        self._drop(connection)

    def _drop(self, connection: ServiceConnection) -> None:
        if self._connection is connection:
            self._connection = None

    # Connection management

    async def launch_if_needed(self) -> bool:
        """Launch the service unless it is running.

        Returns True once the service accepts connections.
        """
        async with self._lock:
            return await self._launcher.launch_if_needed() is not None

    async def _connect(self, *, launch: bool) -> ServiceConnection:
        async with self._lock:
            connection = self._live_connection()
            if connection is not None:
                return connection
            if not launch:
                raise ConnectionCreationError()

            endpoint = await self._launcher.launch_if_needed()
            if endpoint is None:
                raise EndpointUnavailableError()
            self._connection = await ServiceConnection.open(endpoint, self)

            connection = self._live_connection()
            if connection is None:
                raise ConnectionCreationError()
            return connection

    def _live_connection(self) -> ServiceConnection | None:
        connection = self._connection
        if connection is not None and not connection.is_valid:
            self._connection = None
            return None
        return connection

    async def _with_service_connected(
        self, fn: ServiceCall, *, launch: bool = True
    ) -> Any:
        connection = await self._connect(launch=launch)
        try:
            return await with_service_connected(connection, fn)
        except (ServiceUnavailableError, ContinuationAlreadyResolvedError):
            raise
        except Exception as e:
            raise ExtensionServiceCallError(e) from e

    async def _with_service_connected_without_launching(
        self, fn: ServiceCall
    ) -> Any:
        return await self._with_service_connected(fn, launch=False)

    # Operations

    async def get_service_version(self) -> tuple[str, str]:
        """Get the service's (version, build)."""
        return await self._with_service_connected(
            lambda service, c: service.get_service_version(_settle_value(c))
        )

    async def get_language_server_version(self) -> str | None:
        return await self._with_service_connected(
            lambda service, c: service.get_language_server_version(_settle_value(c))
        )

    async def get_extension_permission(self) -> str:
        return await self._with_service_connected(
            lambda service, c: service.get_extension_permission(_settle_value(c))
        )

    async def get_suggested_code(
        self, editor_content: dict[str, Any]
    ) -> dict[str, Any] | None:
        return await self._suggestion_request(Method.GET_SUGGESTED_CODE, editor_content)

    async def get_next_suggested_code(
        self, editor_content: dict[str, Any]
    ) -> dict[str, Any] | None:
        return await self._suggestion_request(
            Method.GET_NEXT_SUGGESTED_CODE, editor_content
        )

    async def get_previous_suggested_code(
        self, editor_content: dict[str, Any]
    ) -> dict[str, Any] | None:
        return await self._suggestion_request(
            Method.GET_PREVIOUS_SUGGESTED_CODE, editor_content
        )

    async def get_suggestion_accepted_code(
        self, editor_content: dict[str, Any]
    ) -> dict[str, Any] | None:
        return await self._suggestion_request(
            Method.GET_SUGGESTION_ACCEPTED_CODE, editor_content
        )

    async def get_suggestion_rejected_code(
        self, editor_content: dict[str, Any]
    ) -> dict[str, Any] | None:
        return await self._suggestion_request(
            Method.GET_SUGGESTION_REJECTED_CODE, editor_content
        )

    async def get_realtime_suggested_code(
        self, editor_content: dict[str, Any]
    ) -> dict[str, Any] | None:
        return await self._suggestion_request(
            Method.GET_REALTIME_SUGGESTED_CODE, editor_content
        )

    async def get_prompt_to_code_accepted_code(
        self, editor_content: dict[str, Any]
    ) -> dict[str, Any] | None:
        return await self._suggestion_request(
            Method.GET_PROMPT_TO_CODE_ACCEPTED_CODE, editor_content
        )

    async def prompt_to_code(
        self, editor_content: dict[str, Any]
    ) -> dict[str, Any] | None:
        return await self._suggestion_request(Method.PROMPT_TO_CODE, editor_content)

    async def custom_command(
        self, command_id: str, editor_content: dict[str, Any]
    ) -> dict[str, Any] | None:
        data = _encode_json(editor_content)
        return await self._with_service_connected(
            lambda service, c: service.custom_command(
                command_id, data, _settle_json(c)
            )
        )

    async def toggle_realtime_suggestion(self) -> None:
        await self._with_service_connected(
            lambda service, c: service.toggle_realtime_suggestion(_settle_void(c))
        )

    async def prefetch_realtime_suggestions(
        self, editor_content: dict[str, Any]
    ) -> None:
        """Best effort; failures are logged and dropped."""
        try:
            data = _encode_json(editor_content)
        except (TypeError, ValueError):
            logger.debug("Editor content not serializable, skipping prefetch")
            return
        try:
            await self._with_service_connected(
                lambda service, c: service.prefetch_realtime_suggestions(
                    data, _settle_void(c)
                )
            )
        except (ServiceUnavailableError, ExtensionServiceCallError) as e:
            logger.debug("Prefetch failed: %s", e)

    async def open_chat(self) -> None:
        await self._with_service_connected(
            lambda service, c: service.open_chat(_settle_void(c))
        )

    async def quit_service(self) -> None:
        """Ask a running service to exit. Never launches one."""
        await self._with_service_connected_without_launching(
            lambda service, c: service.quit(_settle_void(c))
        )

    async def post_notification(self, name: str) -> None:
        await self._with_service_connected(
            lambda service, c: service.post_notification(name, _settle_void(c))
        )

    async def send(self, request: ExtensionServiceRequest) -> BaseModel:
        """Send a typed request to one of the service's endpoints.

        Raises:
            ExtensionServiceCallError: Wrapping NoDataError when the service
                answered without a body, or DecodeError when the body does
                not match ``request.response_model``.
        """
        body = request.model_dump_json(by_alias=True).encode()
        response_model = request.response_model

        def call(
            service: RemoteExtensionService, continuation: Continuation[Any]
        ) -> None:
            def reply(data: bytes | None, error: BaseException | None) -> None:
                if error is not None:
                    continuation.reject(error)
                    return
                if data is None:
                    continuation.reject(NoDataError())
                    return
                try:
                    response = response_model.model_validate_json(data)
                except ValidationError as e:
                    continuation.reject(DecodeError(str(e)))
                    return
                continuation.resume(response)

            service.send(request.endpoint, body, reply)

        return await self._with_service_connected(call)

    async def get_inspector_data(self) -> dict[str, Any]:
        return await self._with_service_connected(
            lambda service, c: service.get_inspector_data(
                _settle_json(c, require_data=True)
            )
        )

    async def get_mcp_tools_collections(self) -> list[dict[str, Any]] | None:
        return await self._with_service_connected(
            lambda service, c: service.get_mcp_tools_collections(_settle_json(c))
        )

    async def update_mcp_tools_status(self, update: list[dict[str, Any]]) -> None:
        data = _encode_json(update)

        def call(
            service: RemoteExtensionService, continuation: Continuation[None]
        ) -> None:
            service.update_mcp_tools_status(data)
            if not continuation.is_resolved:
                continuation.resume(None)

        await self._with_service_connected(call)

    async def sign_out_all(self) -> None:
        def call(
            service: RemoteExtensionService, continuation: Continuation[None]
        ) -> None:
            service.sign_out_all()
            if not continuation.is_resolved:
                continuation.resume(None)

        await self._with_service_connected(call)

    async def get_auth_status(self) -> dict[str, Any] | None:
        return await self._with_service_connected(
            lambda service, c: service.get_auth_status(_settle_json(c))
        )

    async def _suggestion_request(
        self, method: str, editor_content: dict[str, Any]
    ) -> dict[str, Any] | None:
        data = _encode_json(editor_content)
        return await self._with_service_connected(
            lambda service, c: service.suggestion_request(
                method, data, _settle_json(c)
            )
        )
