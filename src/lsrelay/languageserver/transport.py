"""Message transport over a child process's standard I/O.

The framing codec is pluggable; HeaderFraming is the ``Content-Length`` header
framing language servers speak.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from lsrelay.protocol import (
    MAX_MESSAGE_SIZE,
    RequestId,
    RPCRequest,
    is_request_id,
)

logger = logging.getLogger(__name__)


class MessageFraming(Protocol):
    """Splits a byte stream into discrete messages."""

    def encode(self, payload: bytes) -> bytes: ...

    async def read(self, reader: asyncio.StreamReader) -> bytes | None:
        """Read one message body. Returns None at end of stream."""
        ...


class HeaderFraming:
    """``Content-Length: N\\r\\n\\r\\n<body>`` framing."""

    def encode(self, payload: bytes) -> bytes:
        header = f"Content-Length: {len(payload)}\r\n\r\n".encode("ascii")
        return header + payload

    async def read(self, reader: asyncio.StreamReader) -> bytes | None:
        length: int | None = None
        while True:
            try:
                line = await reader.readuntil(b"\r\n")
            except asyncio.IncompleteReadError:
                return None
            if line == b"\r\n":
                break
            name, _, value = line.decode("ascii", errors="replace").partition(":")
            if name.strip().lower() == "content-length":
                try:
                    length = int(value.strip())
                except ValueError:
                    raise ValueError(
                        f"Invalid Content-Length: {value.strip()!r}"
                    ) from None

        if length is None:
            raise ValueError("Missing Content-Length header")
        if length > MAX_MESSAGE_SIZE:
            raise ValueError(f"Message too large: {length}")

        try:
            return await reader.readexactly(length)
        except asyncio.IncompleteReadError:
            return None


class MessageTransport(Protocol):
    """Ordered, reliable, message-delimited duplex channel."""

    @property
    def is_closed(self) -> bool: ...

    async def write_message(self, message: dict[str, Any]) -> None: ...

    async def read_message(self) -> dict[str, Any] | None: ...

    def close(self) -> None: ...


class StdioTransport:
    """JSON messages over a reader/writer pair bound to a child's stdio."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        framing: MessageFraming | None = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._framing = framing or HeaderFraming()
        self._write_lock = asyncio.Lock()
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def write_message(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionError("Transport is closed")
        data = self._framing.encode(json.dumps(message).encode("utf-8"))
        # Single writer keeps messages whole and in submission order.
        async with self._write_lock:
            self._writer.write(data)
            await self._writer.drain()

    async def read_message(self) -> dict[str, Any] | None:
        while not self._closed:
            body = await self._framing.read(self._reader)
            if body is None:
                return None
            try:
                payload = json.loads(body)
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.warning("Dropping invalid JSON message: %s", body[:200])
                continue
            if not isinstance(payload, dict):
                logger.warning("Dropping non-object JSON message")
                continue
            return payload
        return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._writer.is_closing():
            self._writer.close()


WriteRequestHook = Callable[[RPCRequest], Awaitable[None]]
ReadResponseHook = Callable[[RequestId], Awaitable[None]]


class InspectingTransport:
    """Transport wrapper that exposes outgoing requests before they are written.

    The JSON-RPC engine assigns request ids internally; this is the one place
    where an id can be observed together with the request payload.
    """

    def __init__(self, next_transport: MessageTransport) -> None:
        self._next = next_transport
        self.on_write_request: WriteRequestHook | None = None
        self.on_read_response: ReadResponseHook | None = None

    @property
    def is_closed(self) -> bool:
        return self._next.is_closed

    async def write_message(self, message: dict[str, Any]) -> None:
        if (
            self.on_write_request is not None
            and "method" in message
            and is_request_id(message.get("id"))
        ):
            await self.on_write_request(RPCRequest.from_dict(message))
        await self._next.write_message(message)

    async def read_message(self) -> dict[str, Any] | None:
        message = await self._next.read_message()
        if (
            message is not None
            and self.on_read_response is not None
            and "method" not in message
            and is_request_id(message.get("id"))
        ):
            await self.on_read_response(message["id"])
        return message

    def close(self) -> None:
        self._next.close()
