"""JSON-RPC 2.0 message types shared by both relay hops.

The extension service hop frames each message with a 4-byte big-endian length
prefix. The language server hop uses header framing (see
``lsrelay.languageserver.transport``) but the same message types.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import struct
from dataclasses import dataclass, field
from typing import Any

MAX_MESSAGE_SIZE = 10 * 1024 * 1024

# Wire-level request identifier: numeric or string form.
RequestId = int | str


class ErrorCode:
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    # Language server protocol extensions
    SERVER_NOT_INITIALIZED = -32002
    REQUEST_CANCELLED = -32800


@dataclass
class RPCRequest:
    """JSON-RPC 2.0 request."""

    method: str
    params: Any = field(default_factory=dict)
    id: RequestId = 1
    jsonrpc: str = "2.0"

    def to_dict(self) -> dict[str, Any]:
        return {
            "jsonrpc": self.jsonrpc,
            "method": self.method,
            "params": self.params,
            "id": self.id,
        }

    def to_bytes(self) -> bytes:
        """Serialize to length-prefixed bytes."""
        return encode_frame(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RPCRequest:
        return cls(
            method=data.get("method", ""),
            params=data.get("params", {}),
            id=data.get("id", 1),
            jsonrpc=data.get("jsonrpc", "2.0"),
        )


@dataclass
class RPCNotification:
    """JSON-RPC 2.0 notification (a request without an id)."""

    method: str
    params: Any = None
    jsonrpc: str = "2.0"

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"jsonrpc": self.jsonrpc, "method": self.method}
        if self.params is not None:
            d["params"] = self.params
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RPCNotification:
        return cls(
            method=data.get("method", ""),
            params=data.get("params"),
            jsonrpc=data.get("jsonrpc", "2.0"),
        )


@dataclass
class RPCError:
    """JSON-RPC 2.0 error."""

    code: int
    message: str
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        d = {"code": self.code, "message": self.message}
        if self.data is not None:
            d["data"] = self.data
        return d


@dataclass
class RPCResponse:
    """JSON-RPC 2.0 response."""

    id: RequestId | None
    result: Any = None
    error: RPCError | None = None
    jsonrpc: str = "2.0"

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            d["error"] = self.error.to_dict()
        else:
            d["result"] = self.result
        return d

    def to_bytes(self) -> bytes:
        """Serialize to length-prefixed bytes."""
        return encode_frame(self.to_dict())

    @classmethod
    def success(cls, id: RequestId | None, result: Any) -> RPCResponse:
        return cls(id=id, result=result)

    @classmethod
    def error_response(
        cls, id: RequestId | None, code: int, message: str, data: Any = None
    ) -> RPCResponse:
        return cls(id=id, error=RPCError(code=code, message=message, data=data))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RPCResponse:
        error = None
        if data.get("error") is not None:
            err = data["error"]
            error = RPCError(
                code=err.get("code", ErrorCode.INTERNAL_ERROR),
                message=err.get("message", "Unknown error"),
                data=err.get("data"),
            )
        return cls(
            id=data.get("id"),
            result=data.get("result"),
            error=error,
            jsonrpc=data.get("jsonrpc", "2.0"),
        )


RPCMessage = RPCRequest | RPCNotification | RPCResponse


def parse_message(payload: dict[str, Any]) -> RPCMessage:
    """Classify a decoded JSON object as request, notification or response.

    Raises:
        ValueError: If the object is none of the three.
    """
    if not isinstance(payload, dict):
        raise ValueError("JSON-RPC message must be an object")
    if "method" in payload:
        if payload.get("id") is None:
            return RPCNotification.from_dict(payload)
        return RPCRequest.from_dict(payload)
    if "id" in payload and ("result" in payload or "error" in payload):
        return RPCResponse.from_dict(payload)
    raise ValueError("Not a JSON-RPC request, notification or response")


def is_request_id(value: Any) -> bool:
    """Check the value is a usable wire id (bool is not a number here)."""
    return isinstance(value, str) or (
        isinstance(value, int) and not isinstance(value, bool)
    )


# =============================================================================
# Opaque payloads
# =============================================================================


def encode_data(data: bytes | None) -> str | None:
    """Encode opaque payload bytes for a JSON frame."""
    if data is None:
        return None
    return base64.b64encode(data).decode("ascii")


def decode_data(text: Any) -> bytes | None:
    """Decode opaque payload bytes from a JSON frame.

    Raises:
        ValueError: If the value is not valid base64 text.
    """
    if text is None:
        return None
    if not isinstance(text, str):
        raise ValueError("payload data must be a base64 string")
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"invalid payload data: {e}") from None


# =============================================================================
# Length-prefixed framing
# =============================================================================


def encode_frame(message: dict[str, Any]) -> bytes:
    """Serialize a message to length-prefixed bytes."""
    payload = json.dumps(message).encode()
    return struct.pack("!I", len(payload)) + payload


async def read_message(reader: asyncio.StreamReader) -> bytes | None:
    """Read a length-prefixed message from an async reader.

    Returns None if connection closed.
    """
    try:
        length_bytes = await reader.readexactly(4)
    except asyncio.IncompleteReadError:
        return None

    length = struct.unpack("!I", length_bytes)[0]
    if length > MAX_MESSAGE_SIZE:
        raise ValueError(f"Message too large: {length}")

    try:
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError:
        return None
