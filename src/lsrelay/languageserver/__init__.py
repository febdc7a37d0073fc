"""Language server hop: a JSON-RPC client bound to a child process.

Public API:
- LocalProcessServer: owns the child process and its JSON-RPC engine
- MessageRouter: local interception of inbound notifications and requests
- RequestTracker: request id correlation for cancellation

Transport:
- StdioTransport, InspectingTransport, HeaderFraming
"""

from lsrelay.languageserver.jsonrpc import JSONRPCEngine
from lsrelay.languageserver.process import LocalProcessServer, RequestTracker
from lsrelay.languageserver.router import MessageRouter
from lsrelay.languageserver.transport import (
    HeaderFraming,
    InspectingTransport,
    MessageFraming,
    MessageTransport,
    StdioTransport,
)

__all__ = [
    "HeaderFraming",
    "InspectingTransport",
    "JSONRPCEngine",
    "LocalProcessServer",
    "MessageFraming",
    "MessageRouter",
    "MessageTransport",
    "RequestTracker",
    "StdioTransport",
]
